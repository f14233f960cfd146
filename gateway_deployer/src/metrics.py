from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Queue items are dropped silently after the retry ceiling, so
    ``gateway_deployer_queue_dropped_total`` together with the error log is the
    only signal that a Gateway has stopped converging.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_deployer_reconciles_total",
            "Total Gateway reconciliation passes by outcome",
            ["outcome"],
        )
    )
    reconcile_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_deployer_reconcile_errors_total",
            "Total failed reconciliation passes by failing stage",
            ["stage"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "gateway_deployer_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation pass",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    applies_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_deployer_applies_total",
            "Total successful server-side applies by kind",
            ["kind"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "gateway_deployer_queue_depth",
            "Current number of Gateway keys waiting to be reconciled",
        )
    )
    queue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_deployer_queue_retries_total",
            "Total reconciliation retries scheduled after a failed pass",
        )
    )
    queue_dropped_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_deployer_queue_dropped_total",
            "Total Gateway keys dropped after exhausting retry attempts",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_deployer_watch_errors_total",
            "Total Kubernetes list/watch errors",
            ["informer"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_deployer_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["informer"],
        )
    )
    injection_reloads_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_deployer_injection_reloads_total",
            "Total injection configuration reloads by result",
            ["result"],
        )
    )
    injection_template_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_deployer_injection_template_errors_total",
            "Total injector templates skipped because they failed to compile",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "gateway_deployer",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
