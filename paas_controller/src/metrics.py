from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller manager on ``/metrics``.

    Per-controller series carry a ``controller`` label so one noisy pipeline
    (builds, say) can be alerted on without drowning the others.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "paas_controller_reconcile_total",
            "Total reconcile passes by controller and result",
            ["controller", "result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "paas_controller_reconcile_duration_seconds",
            "Seconds spent in a single reconcile pass",
            ["controller"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "paas_controller_queue_depth",
            "Keys currently waiting in a controller work queue",
            ["controller"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "paas_controller_queue_adds_total",
            "Total keys added to a controller work queue",
            ["controller"],
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "paas_controller_queue_retries_total",
            "Total rate-limited requeues after failed reconciles",
            ["controller"],
        )
    )
    queue_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "paas_controller_queue_dropped_total",
            "Total keys dropped after exhausting their retries",
            ["controller"],
        )
    )
    informer_events_total: Counter = field(
        default_factory=lambda: Counter(
            "paas_controller_informer_events_total",
            "Total watch events applied to an informer cache",
            ["kind", "type"],
        )
    )
    informer_resyncs_total: Counter = field(
        default_factory=lambda: Counter(
            "paas_controller_informer_resyncs_total",
            "Total periodic resyncs delivered by an informer",
            ["kind"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "paas_controller_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "paas_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "paas_controller_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "paas_controller_leader_state",
            "Whether this replica is currently leader (1=yes, 0=no)",
        )
    )
    leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "paas_controller_leader_acquire_latency_seconds",
            "Seconds spent waiting to acquire leadership",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    builds_started_total: Counter = field(
        default_factory=lambda: Counter(
            "paas_controller_builds_started_total",
            "Total build pods created",
        )
    )
    builds_failed_total: Counter = field(
        default_factory=lambda: Counter(
            "paas_controller_builds_failed_total",
            "Total build pods observed failed",
        )
    )
    deploys_total: Counter = field(
        default_factory=lambda: Counter(
            "paas_controller_deploys_total",
            "Total releases rolled out to their deployment",
        )
    )
    secrets_rotated_total: Counter = field(
        default_factory=lambda: Counter(
            "paas_controller_secrets_rotated_total",
            "Total system token secrets minted or refreshed",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "paas_controller",
            "Build information for the controller manager",
        )
    )


METRICS = ControllerMetrics()
