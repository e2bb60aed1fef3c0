from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from jobservice.src.bootstrap import BootstrapDependencies, ControllerBootstrap
from jobservice.src.config import build_store_from_env, env_float, env_int
from jobservice.src.engine import KubeEngine
from jobservice.src.errors import BootstrapError
from jobservice.src.kube import build_clients, load_kube_configuration
from jobservice.src.metrics import METRICS
from jobservice.src.probes import ProbeRegistry, start_probe_server
from jobservice.src.reconciler import JobServiceReconciler
from jobservice.src.watcher import DEFAULT_POLL_SECONDS, TemplateWatcher

RUNTIME_VERSION = "0.1.0"
CONTROLLER_NAME = "jobservice"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)
# Structured fields passed through ``extra=`` that end up in the JSON line.
_EXTRA_FIELDS = ("controller", "path")


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = str(value)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Controller entrypoint: bootstrap the JobService controller and run it until signalled."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    METRICS.config_ready.set(0)

    store = build_store_from_env()
    probe_port = env_int("PROBE_PORT", 8081, minimum=1, maximum=65535)
    poll_seconds = env_float("TEMPLATE_POLL_SECONDS", DEFAULT_POLL_SECONDS, minimum=0.1)

    load_kube_configuration()
    engine = KubeEngine(
        build_clients(),
        store,
        JobServiceReconciler(store),
        controller=CONTROLLER_NAME,
    )
    probes = ProbeRegistry()
    bootstrap = ControllerBootstrap(
        controller=CONTROLLER_NAME,
        watcher_factory=lambda gate: TemplateWatcher(
            gate, controller=CONTROLLER_NAME, poll_interval=poll_seconds
        ),
    )

    try:
        result = bootstrap.build(BootstrapDependencies(store=store, probes=probes, engine=engine))
    except BootstrapError as exc:
        logger.error("Cannot set up controller %s: %s", CONTROLLER_NAME, exc)
        sys.exit(1)

    probe_server = start_probe_server(probes, port=probe_port)
    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        engine.run(shutdown_event=shutdown_event)
    finally:
        result.watcher.stop()
        probe_server.shutdown()
        logger.info("Controller stopped")


if __name__ == "__main__":
    main()
