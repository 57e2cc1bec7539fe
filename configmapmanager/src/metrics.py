from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``."""

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "configmapmanager_reconciles_total",
            "Total reconciliation passes by outcome",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "configmapmanager_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation pass",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    configmap_writes_total: Counter = field(
        default_factory=lambda: Counter(
            "configmapmanager_configmap_writes_total",
            "Total ConfigMap writes issued",
            ["operation"],
        )
    )
    workload_restarts_total: Counter = field(
        default_factory=lambda: Counter(
            "configmapmanager_workload_restarts_total",
            "Total deployment rolling restarts triggered by ConfigMap changes",
        )
    )
    requeues_total: Counter = field(
        default_factory=lambda: Counter(
            "configmapmanager_requeues_total",
            "Total reconciliations scheduled for retry",
            ["reason"],
        )
    )
    pending_requeues: Gauge = field(
        default_factory=lambda: Gauge(
            "configmapmanager_pending_requeues",
            "Current number of ConfigMapManager objects waiting to be retried",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "configmapmanager_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "configmapmanager_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "configmapmanager",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
