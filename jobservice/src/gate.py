from __future__ import annotations

import threading
from dataclasses import dataclass

from jobservice.src.errors import CONFIG_NOT_READY


@dataclass(frozen=True)
class ConfigState:
    """Point-in-time view of the configuration readiness."""

    ready: bool
    last_error: Exception | None


class ConfigGate:
    """Thread-safe cell holding the current configuration readiness error.

    Written by the template reload thread only, read by any number of probe
    handlers.  ``get()`` returns ``None`` once the configuration is ready.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._error: Exception | None = CONFIG_NOT_READY

    def get(self) -> Exception | None:
        with self._lock:
            return self._error

    def set_ready(self) -> None:
        with self._lock:
            self._error = None

    def set_error(self, error: Exception) -> None:
        with self._lock:
            self._error = error

    def snapshot(self) -> ConfigState:
        error = self.get()
        return ConfigState(ready=error is None, last_error=error)
