# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the mail scheduler.

All metrics use the ``msched_`` prefix.

Metrics exposed:
    - ``msched_delivered_total``: Counter of delivered emails per owner.
    - ``msched_failed_total``: Counter of terminal failures per owner.
    - ``msched_deferred_total``: Counter of transient deferrals per owner.
    - ``msched_rate_limited_total``: Counter of rate limit hits per owner.
    - ``msched_recovered_total``: Counter of jobs re-armed by restart recovery.
    - ``msched_pending_items``: Gauge of non-terminal work items.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class DispatchMetrics:
    """Prometheus metrics collector for the dispatch engine.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        delivered: Counter of successful deliveries.
        failed: Counter of terminal failures.
        deferred: Counter of transient-failure retries.
        rate_limited: Counter of rate limit deferrals.
        recovered: Counter of jobs enqueued by restart recovery.
        pending: Gauge of work items not yet terminal.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.delivered = Counter(
            "msched_delivered_total",
            "Total delivered emails",
            ["owner_id"],
            registry=self.registry,
        )
        self.failed = Counter(
            "msched_failed_total",
            "Total emails failed permanently",
            ["owner_id"],
            registry=self.registry,
        )
        self.deferred = Counter(
            "msched_deferred_total",
            "Total deliveries deferred after a transient failure",
            ["owner_id"],
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "msched_rate_limited_total",
            "Total rate limited attempts",
            ["owner_id"],
            registry=self.registry,
        )
        self.recovered = Counter(
            "msched_recovered_total",
            "Total jobs re-armed by restart recovery",
            registry=self.registry,
        )
        self.pending = Gauge(
            "msched_pending_items",
            "Work items not yet terminal",
            registry=self.registry,
        )

    def inc_delivered(self, owner_id: str) -> None:
        self.delivered.labels(owner_id=owner_id or "default").inc()

    def inc_failed(self, owner_id: str) -> None:
        self.failed.labels(owner_id=owner_id or "default").inc()

    def inc_deferred(self, owner_id: str) -> None:
        self.deferred.labels(owner_id=owner_id or "default").inc()

    def inc_rate_limited(self, owner_id: str) -> None:
        self.rate_limited.labels(owner_id=owner_id or "default").inc()

    def inc_recovered(self, count: int = 1) -> None:
        if count:
            self.recovered.inc(count)

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
