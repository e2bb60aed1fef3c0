from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from hashlib import sha256

from jobservice.src.errors import TemplateReloadError, TemplateWatchError
from jobservice.src.gate import ConfigGate
from jobservice.src.metrics import METRICS

DEFAULT_POLL_SECONDS = 1.0


def _read_file(path: str) -> bytes:
    with open(path, "rb") as handle:
        return handle.read()


def _digest(content: bytes) -> str:
    return sha256(content).hexdigest()


class TemplateSource:
    """The watched template file and the content last read from it."""

    def __init__(self, path: str, content: bytes) -> None:
        self.path = path
        self.last_content = content

    @property
    def digest(self) -> str:
        return _digest(self.last_content)


class TemplateSubscription:
    """Sequence of template contents, one item per observed change.

    The first item is the content read when the watch was established.  The
    file is polled every ``poll_interval`` seconds and its content compared by
    SHA-256 digest, so metadata-only touches do not produce reloads.  When
    ``debounce_seconds`` is positive a change is only emitted once the content
    stayed identical for a full window.

    The sequence ends for good when the file disappears or *stop* is set.
    """

    def __init__(
        self,
        source: TemplateSource,
        stop: threading.Event,
        poll_interval: float = DEFAULT_POLL_SECONDS,
        debounce_seconds: float = 0.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.source = source
        self._stop = stop
        self._poll_interval = poll_interval
        self._debounce = debounce_seconds
        self.logger = logger or logging.getLogger(__name__)

    def _poll(self) -> bytes | None:
        """Return the current file content, or ``None`` once the file is gone."""
        try:
            return _read_file(self.source.path)
        except FileNotFoundError:
            self.logger.warning(
                "Template %s was removed; hot reload stopped", self.source.path
            )
            return None

    def _settle(self, content: bytes) -> bytes | None:
        while True:
            if self._stop.wait(timeout=self._debounce):
                return None
            latest = self._poll()
            if latest is None or latest == content:
                return latest
            content = latest

    def __iter__(self) -> Iterator[bytes]:
        last_digest = self.source.digest
        yield self.source.last_content

        while not self._stop.wait(timeout=self._poll_interval):
            try:
                content = self._poll()
            except OSError:
                self.logger.exception("Failed to read template %s", self.source.path)
                continue
            if content is None:
                return

            if _digest(content) == last_digest:
                continue

            if self._debounce > 0:
                try:
                    content = self._settle(content)
                except OSError:
                    self.logger.exception("Failed to read template %s", self.source.path)
                    continue
                if content is None:
                    return

            last_digest = _digest(content)
            self.source.last_content = content
            yield content


class TemplateWatcher:
    """Hot-reloads a configuration template and flips the :class:`ConfigGate`.

    A single daemon thread consumes the :class:`TemplateSubscription`, so
    reloads never overlap and are applied in the order they were observed.
    A successful ``on_reload`` marks the gate ready.  A failing one is logged
    and counted but leaves the gate untouched: once ready, readiness does not
    regress on a bad template.
    """

    def __init__(
        self,
        gate: ConfigGate,
        *,
        controller: str = "jobservice",
        poll_interval: float = DEFAULT_POLL_SECONDS,
        debounce_seconds: float = 0.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.gate = gate
        self.controller = controller
        self.poll_interval = poll_interval
        self.debounce_seconds = debounce_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.source: TemplateSource | None = None
        self.last_error: TemplateReloadError | None = None

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._processed = 0
        self._processed_cond = threading.Condition()

    @property
    def running(self) -> bool:
        """Whether the reload thread is alive; used by tests."""
        return self._thread is not None and self._thread.is_alive()

    def start(self, path: str, on_reload: Callable[[bytes], None]) -> None:
        """Start watching *path*; raises :class:`TemplateWatchError` if it is unreadable."""
        if self._thread is not None:
            raise TemplateWatchError("template watcher already started")
        try:
            content = _read_file(path)
        except OSError as exc:
            raise TemplateWatchError(f"cannot watch template {path}: {exc}") from exc

        self.source = TemplateSource(path, content)
        subscription = TemplateSubscription(
            self.source,
            self._stop,
            poll_interval=self.poll_interval,
            debounce_seconds=self.debounce_seconds,
            logger=self.logger,
        )
        self._thread = threading.Thread(
            target=self._run,
            args=(subscription, on_reload),
            name=f"{self.controller}-template-watcher",
            daemon=True,
        )
        self._thread.start()
        self.logger.info("Watching configuration template %s", path)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def wait_for_reloads(self, count: int, timeout: float) -> bool:
        """Block until *count* reload events were processed (successful or not).

        Synchronisation hook for tests; the controller itself only reads the gate.
        """
        with self._processed_cond:
            return self._processed_cond.wait_for(lambda: self._processed >= count, timeout)

    def _run(
        self, subscription: TemplateSubscription, on_reload: Callable[[bytes], None]
    ) -> None:
        for content in subscription:
            try:
                self._reload(subscription.source.path, content, on_reload)
            finally:
                with self._processed_cond:
                    self._processed += 1
                    self._processed_cond.notify_all()
        self.logger.info("Template watcher for %s exited", subscription.source.path)

    def _reload(self, path: str, content: bytes, on_reload: Callable[[bytes], None]) -> None:
        try:
            on_reload(content)
        except Exception as exc:
            self.last_error = TemplateReloadError(f"reload of {path} failed: {exc}")
            METRICS.template_reload_errors_total.inc()
            self.logger.exception("Template reload rejected for %s", path)
            return

        self.gate.set_ready()
        METRICS.template_reloads_total.inc()
        METRICS.config_ready.set(1)
        self.logger.info(
            "config reloaded",
            extra={"controller": self.controller, "path": path},
        )
