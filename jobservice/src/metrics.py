from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the jobservice controller on ``/metrics``.

    Watch-related series carry a ``kind`` label so a stuck informer for one
    owned resource type can be told apart from the others.
    """

    template_reloads_total: Counter = field(
        default_factory=lambda: Counter(
            "jobservice_template_reloads_total",
            "Total successful configuration template reloads",
        )
    )
    template_reload_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "jobservice_template_reload_errors_total",
            "Total configuration template reloads rejected by the reload handler",
        )
    )
    config_ready: Gauge = field(
        default_factory=lambda: Gauge(
            "jobservice_config_ready",
            "Whether the configuration template has been loaded (1=yes, 0=no)",
        )
    )
    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "jobservice_reconcile_total",
            "Total reconcile passes by outcome",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "jobservice_reconcile_duration_seconds",
            "Seconds spent in a single reconcile pass",
            buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, float("inf")),
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "jobservice_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "jobservice_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    filtered_events_total: Counter = field(
        default_factory=lambda: Counter(
            "jobservice_filtered_events_total",
            "Total watch events dropped by the class filter",
            ["kind"],
        )
    )
    workqueue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "jobservice_workqueue_depth",
            "Current number of reconcile requests waiting for a worker",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "jobservice_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
