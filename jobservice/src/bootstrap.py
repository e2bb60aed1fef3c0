from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from jobservice.src.config import DEFAULT_PRIORITY, RECONCILIATION_KEY, ConfigStore, Item
from jobservice.src.engine import (
    JOBSERVICE,
    OWNED_KINDS,
    ClassFilter,
    ReconciliationEngine,
    ResourceKind,
    WatchSpecification,
)
from jobservice.src.errors import (
    ConfigResolutionError,
    ConfigStoreError,
    ProbeRegistrationError,
    TemplateWatchError,
    WatchSetupError,
)
from jobservice.src.gate import ConfigGate
from jobservice.src.probes import ProbeRegistry
from jobservice.src.reconciler import (
    CONFIG_TEMPLATE_KEY,
    CONFIG_TEMPLATE_PATH_KEY,
    DEFAULT_CONFIG_TEMPLATE_PATH,
)
from jobservice.src.watcher import TemplateWatcher

PROBE_COMPONENT = "template"


@dataclass(frozen=True)
class BootstrapDependencies:
    store: ConfigStore
    probes: ProbeRegistry
    engine: ReconciliationEngine


@dataclass(frozen=True)
class BootstrapResult:
    """Everything a successful bootstrap created, kept for shutdown and inspection."""

    gate: ConfigGate
    watcher: TemplateWatcher
    spec: WatchSpecification
    template_path: str


def template_items(data: bytes) -> list[Item]:
    """Turn the raw template file into the ``template-content`` item.

    The content is opaque: bytes that are not valid UTF-8 survive as
    surrogate escapes and encode back to the original file.
    """
    return [Item(CONFIG_TEMPLATE_KEY, data.decode("utf-8", "surrogateescape"), DEFAULT_PRIORITY)]


class ControllerBootstrap:
    """Wires the JobService controller together before any reconcile runs.

    ``build`` resolves the template path, starts the template hot reload,
    resolves the class name and worker count, registers the ``template``
    readiness and health checks and finally hands the watch specification to
    the engine.  The first failing step raises a :class:`BootstrapError`
    naming it, and later steps never run.
    """

    def __init__(
        self,
        *,
        controller: str = "jobservice",
        primary_kind: ResourceKind = JOBSERVICE,
        owned_kinds: frozenset[ResourceKind] = OWNED_KINDS,
        watcher_factory: Callable[[ConfigGate], TemplateWatcher] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.controller = controller
        self.primary_kind = primary_kind
        self.owned_kinds = owned_kinds
        self.watcher_factory = watcher_factory or (
            lambda gate: TemplateWatcher(gate, controller=controller)
        )
        self.logger = logger or logging.getLogger(__name__)

    def build(self, deps: BootstrapDependencies) -> BootstrapResult:
        try:
            template_path = deps.store.get_string(
                CONFIG_TEMPLATE_PATH_KEY, DEFAULT_CONFIG_TEMPLATE_PATH
            )
        except ConfigStoreError as exc:
            raise ConfigResolutionError("template path", str(exc)) from exc

        gate = ConfigGate()
        watcher = self.watcher_factory(gate)
        refresh = deps.store.register_file_reload(template_path, template_items)
        try:
            watcher.start(template_path, refresh)
        except TemplateWatchError as exc:
            raise ConfigResolutionError("template watch", str(exc)) from exc

        try:
            spec = self._register(deps, gate)
        except Exception:
            watcher.stop()
            raise

        self.logger.info(
            "Controller %s set up", self.controller, extra={"controller": self.controller}
        )
        return BootstrapResult(gate=gate, watcher=watcher, spec=spec, template_path=template_path)

    def _register(self, deps: BootstrapDependencies, gate: ConfigGate) -> WatchSpecification:
        try:
            class_name = deps.engine.resolve_class_name()
        except Exception as exc:
            raise ConfigResolutionError("classname", str(exc)) from exc

        concurrent_reconcile = self._resolve_concurrency(deps.store)

        try:
            probe_name = deps.engine.normalize_probe_name(PROBE_COMPONENT)
        except Exception as exc:
            raise ProbeRegistrationError("probe name", str(exc)) from exc
        try:
            deps.probes.add_readyz_check(probe_name, gate.get)
        except Exception as exc:
            raise ProbeRegistrationError("template ready check", str(exc)) from exc
        try:
            deps.probes.add_healthz_check(probe_name, gate.get)
        except Exception as exc:
            raise ProbeRegistrationError("template health check", str(exc)) from exc

        spec = WatchSpecification(
            primary_kind=self.primary_kind,
            owned_kinds=self.owned_kinds,
            class_filter=ClassFilter(class_name=class_name),
            max_concurrent_reconciles=concurrent_reconcile,
        )
        try:
            deps.engine.setup_watches(spec)
        except Exception as exc:
            raise WatchSetupError("watch setup", str(exc)) from exc
        return spec

    @staticmethod
    def _resolve_concurrency(store: ConfigStore) -> int:
        try:
            value = store.get_int(RECONCILIATION_KEY)
        except ConfigStoreError as exc:
            raise ConfigResolutionError(
                "concurrent reconcile", f"cannot get concurrent reconcile: {exc}"
            ) from exc
        if value < 1:
            raise ConfigResolutionError(
                "concurrent reconcile", f"{RECONCILIATION_KEY} must be >= 1, got: {value}"
            )
        return value
