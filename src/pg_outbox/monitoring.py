"""
Prometheus metrics for the outbox writer, guard and dispatcher.

Pass a dedicated CollectorRegistry when more than one OutboxMetrics instance
lives in the same process (tests, several outboxes), otherwise the metric
names collide in the default registry.
"""

from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram


class OutboxMetrics:
    """Counters and histograms describing outbox throughput and failures."""

    def __init__(self, registry: CollectorRegistry = REGISTRY) -> None:
        self.events_enqueued = Counter(
            "outbox_events_enqueued_total",
            "Events written to the outbox",
            ["event_type"],
            registry=registry,
        )
        self.events_claimed = Counter(
            "outbox_events_claimed_total",
            "Events claimed by a dispatcher",
            ["event_type"],
            registry=registry,
        )
        self.events_sent = Counter(
            "outbox_events_sent_total",
            "Events delivered successfully",
            ["event_type"],
            registry=registry,
        )
        self.events_retried = Counter(
            "outbox_events_retried_total",
            "Failed deliveries scheduled for retry",
            ["event_type"],
            registry=registry,
        )
        self.events_failed = Counter(
            "outbox_events_failed_total",
            "Events that exhausted their retries",
            ["event_type"],
            registry=registry,
        )
        self.events_recovered = Counter(
            "outbox_events_recovered_total",
            "Expired claims released by crash recovery",
            ["outcome"],
            registry=registry,
        )
        self.reconcile_skipped = Counter(
            "outbox_reconcile_skipped_total",
            "Delivery outcomes discarded because the claim had been recovered",
            ["event_type"],
            registry=registry,
        )
        self.idempotency_skips = Counter(
            "outbox_idempotency_skips_total",
            "Guarded operations skipped because their key was already recorded",
            registry=registry,
        )
        self.handler_duration = Histogram(
            "outbox_handler_duration_seconds",
            "Time spent inside event handlers",
            ["event_type"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=registry,
        )
