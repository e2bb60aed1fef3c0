from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import yaml

from jobservice.src.errors import ConfigStoreError

LOGGER = logging.getLogger(__name__)

DEFAULTS_PRIORITY = 0
DEFAULT_PRIORITY = 10
ENV_PRIORITY = 20

ENV_PREFIX = "JOBSERVICE_"
CONFIG_FILE_ENV = "JOBSERVICE_CONFIG_FILE"

RECONCILIATION_KEY = "max-concurrent-reconciliation"
CLASSNAME_KEY = "classname"

DEFAULT_REGISTRY = "docker.io/"

BUILTIN_DEFAULTS: dict[str, Any] = {
    RECONCILIATION_KEY: 1,
}


@dataclass(frozen=True)
class Item:
    """A single configuration value; the highest ``priority`` wins per key."""

    key: str
    value: Any
    priority: int


class ConfigStore:
    """Prioritised key/value configuration fed by named sources.

    Every source (defaults, YAML file, environment, reloaded files) owns a list
    of items and is replaced as a whole.  Lookups are safe from any thread.  A
    source that failed to load puts the store in an error state: lookups raise
    :class:`ConfigStoreError` instead of silently answering from the remaining
    sources.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sources: dict[str, list[Item]] = {}
        self._errors: dict[str, Exception] = {}

    def set_source(self, name: str, items: Iterable[Item]) -> None:
        materialized = list(items)
        with self._lock:
            self._sources[name] = materialized
            self._errors.pop(name, None)

    def load_provider(self, name: str, provider: Callable[[], Iterable[Item]]) -> None:
        try:
            items = list(provider())
        except Exception as exc:
            LOGGER.error("Configuration source %s failed to load: %s", name, exc)
            with self._lock:
                self._errors[name] = exc
            return
        self.set_source(name, items)

    def _lookup(self, key: str) -> Item | None:
        with self._lock:
            if self._errors:
                name, exc = next(iter(self._errors.items()))
                raise ConfigStoreError(f"configuration source {name} is unavailable: {exc}")
            best: Item | None = None
            for items in self._sources.values():
                for item in items:
                    if item.key != key:
                        continue
                    if best is None or item.priority > best.priority:
                        best = item
            return best

    def get_string(self, key: str, default: str) -> str:
        """Return the string value for *key*, or *default* when no source sets it."""
        item = self._lookup(key)
        if item is None:
            return default
        if isinstance(item.value, str):
            return item.value
        if isinstance(item.value, (int, float)) and not isinstance(item.value, bool):
            return str(item.value)
        raise ConfigStoreError(f"{key}: expected a string, got {type(item.value).__name__}")

    def get_int(self, key: str) -> int:
        item = self._lookup(key)
        if item is None:
            raise ConfigStoreError(f"{key}: item not found")
        value = item.value
        if isinstance(value, bool):
            raise ConfigStoreError(f"{key}: expected an integer, got a boolean")
        if isinstance(value, int):
            return value
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError as exc:
                raise ConfigStoreError(f"{key}: {value!r} is not an integer") from exc
        raise ConfigStoreError(f"{key}: expected an integer, got {type(value).__name__}")

    def register_file_reload(
        self, path: str, handler: Callable[[bytes], Iterable[Item]]
    ) -> Callable[[bytes], None]:
        """Bind *path* to a reload source and return its refresh callback.

        Calling the returned function with the file content runs *handler* and
        replaces every item previously produced for *path*.  Handler errors
        propagate to the caller and leave the previous items in place.
        """
        source = f"file:{path}"

        def refresh(data: bytes) -> None:
            self.set_source(source, handler(data))

        return refresh


def defaults_provider(values: Mapping[str, Any]) -> Callable[[], list[Item]]:
    def provide() -> list[Item]:
        return [Item(key, value, DEFAULTS_PRIORITY) for key, value in values.items()]

    return provide


def yaml_file_provider(path: str) -> Callable[[], list[Item]]:
    """Load a flat YAML mapping of configuration keys from *path*."""

    def provide() -> list[Item]:
        with open(path, encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
        if document is None:
            return []
        if not isinstance(document, dict):
            raise ConfigStoreError(f"{path}: top-level YAML value must be a mapping")
        return [Item(str(key), value, DEFAULT_PRIORITY) for key, value in document.items()]

    return provide


def environment_provider(
    env: Mapping[str, str] | None = None, prefix: str = ENV_PREFIX
) -> Callable[[], list[Item]]:
    """Expose ``JOBSERVICE_TEMPLATE_PATH`` as ``template-path`` and so on."""

    def provide() -> list[Item]:
        values = env if env is not None else os.environ
        items = []
        for name, value in values.items():
            if not name.startswith(prefix) or len(name) == len(prefix):
                continue
            key = name[len(prefix):].lower().replace("_", "-")
            items.append(Item(key, value, ENV_PRIORITY))
        return items

    return provide


def build_store_from_env(env: Mapping[str, str] | None = None) -> ConfigStore:
    """Build the controller configuration store.

    Sources, lowest priority first:
        built-in defaults, the YAML file named by ``JOBSERVICE_CONFIG_FILE``
        (when set), and ``JOBSERVICE_*`` environment variables.
    """
    values = env if env is not None else os.environ
    store = ConfigStore()
    store.load_provider("defaults", defaults_provider(BUILTIN_DEFAULTS))
    config_file = values.get(CONFIG_FILE_ENV)
    if config_file:
        store.load_provider(f"yaml:{config_file}", yaml_file_provider(config_file))
    store.load_provider("environment", environment_provider(values))
    return store


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    return value
