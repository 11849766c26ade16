from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the restore controller on ``/metrics``.

    ``sync_total`` is labelled by outcome (``scheduled``, ``invalid``,
    ``skipped``, ``error``) so alerts can separate user mistakes from
    infrastructure trouble.
    """

    sync_total: Counter = field(
        default_factory=lambda: Counter(
            "restore_controller_sync_total",
            "Total Restore sync attempts by outcome",
            ["result"],
        )
    )
    sync_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "restore_controller_sync_duration_seconds",
            "Seconds spent in a single Restore sync",
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    admission_skipped_total: Counter = field(
        default_factory=lambda: Counter(
            "restore_controller_admission_skipped_total",
            "Total Restore add notifications not enqueued",
            ["reason"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "restore_controller_queue_depth",
            "Current number of keys ready in the work queue",
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "restore_controller_queue_adds_total",
            "Total keys added to the work queue",
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "restore_controller_queue_retries_total",
            "Total keys re-queued with rate limiting after a failed sync",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "restore_controller_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    cache_synced: Gauge = field(
        default_factory=lambda: Gauge(
            "restore_controller_cache_synced",
            "Whether the informer cache for a kind has completed a list (1=yes, 0=no)",
            ["kind"],
        )
    )
    events_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "restore_controller_events_dropped_total",
            "Total Kubernetes Events that could not be recorded",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "restore_controller",
            "Build information for the restore controller",
        )
    )


METRICS = ControllerMetrics()
