from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from jobservice.src.errors import ProbeNameError

Check = Callable[[], "Exception | None"]

LOGGER = logging.getLogger(__name__)


class ProbeRegistry:
    """Named health and readiness checks, served by :func:`start_probe_server`.

    A check returns ``None`` when healthy and an exception describing the
    failure otherwise.  Names are unique per probe type.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._checks: dict[str, dict[str, Check]] = {"healthz": {}, "readyz": {}}

    def _add(self, probe: str, name: str, check: Check) -> None:
        if not name:
            raise ProbeNameError(f"{probe} check name must not be empty")
        with self._lock:
            checks = self._checks[probe]
            if name in checks:
                raise ProbeNameError(f"{probe} check {name!r} is already registered")
            checks[name] = check

    def add_healthz_check(self, name: str, check: Check) -> None:
        self._add("healthz", name, check)

    def add_readyz_check(self, name: str, check: Check) -> None:
        self._add("readyz", name, check)

    def names(self, probe: str) -> list[str]:
        with self._lock:
            return sorted(self._checks[probe])

    def run(self, probe: str, only: str | None = None) -> dict[str, Exception | None] | None:
        """Run the checks of *probe* and return ``{name: error}``.

        Returns ``None`` when *only* names a check that does not exist.  A
        check that raises counts as failed with the raised exception.
        """
        with self._lock:
            checks = dict(self._checks[probe])
        if only is not None:
            if only not in checks:
                return None
            checks = {only: checks[only]}

        results: dict[str, Exception | None] = {}
        for name, check in sorted(checks.items()):
            try:
                results[name] = check()
            except Exception as exc:
                results[name] = exc
        return results


def render_results(results: dict[str, Exception | None]) -> tuple[int, bytes]:
    failed = {name: err for name, err in results.items() if err is not None}
    if not failed:
        return 200, b"ok"
    lines = []
    for name, err in results.items():
        if err is None:
            lines.append(f"[+]{name} ok")
        else:
            lines.append(f"[-]{name} failed: {err}")
    lines.append(f"{len(failed)} check(s) failed")
    return 500, "\n".join(lines).encode()


class _ProbeHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    registry: ProbeRegistry

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0].rstrip("/")
        probe, _, only = path.lstrip("/").partition("/")

        if probe in {"healthz", "readyz"}:
            results = self.registry.run(probe, only=only or None)
            if results is None:
                self._respond(404)
                return
            status, body = render_results(results)
            if status != 200:
                LOGGER.info("%s probe failed: %s", probe, body.decode().replace("\n", "; "))
            self._respond(status, body)
        elif path == "/metrics":
            from prometheus_client import generate_latest

            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("jobservice.probes").debug(fmt, *args)


def make_probe_handler(registry: ProbeRegistry) -> type[_ProbeHandler]:
    """Return a handler class bound to *registry*.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundProbeHandler(_ProbeHandler):
        pass

    _BoundProbeHandler.registry = registry
    return _BoundProbeHandler


def start_probe_server(
    registry: ProbeRegistry, port: int, host: str = "0.0.0.0"  # noqa: S104
) -> ThreadingHTTPServer:
    """Start the probe/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer((host, port), make_probe_handler(registry))
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    LOGGER.info("Probe server listening on :%d", server.server_address[1])
    return server
