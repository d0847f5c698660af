# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the email scheduler.

All metrics use the ``pms_`` prefix and live in a dedicated registry.

Metrics exposed:
    - ``pms_sent_total``: Emails delivered, per tenant.
    - ``pms_failed_total``: Terminal failures, per tenant.
    - ``pms_retried_total``: Failures scheduled for retry, per tenant.
    - ``pms_deferred_total``: Jobs deferred by rate limiting or an open
      circuit without charging the retry budget, per tenant.
    - ``pms_suppressed_total``: Suppression entries written, per tenant and type.
    - ``pms_blocked_total``: Jobs blocked by the suppression list, per tenant.
    - ``pms_bounces_total`` / ``pms_complaints_total``: Webhook outcomes.
    - ``pms_webhook_events_total``: Accepted webhook events, per event type.
    - ``pms_queue_depth``: Jobs per status.
    - ``pms_circuit_open``: 1 when a dispatcher resource's circuit is open.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class SchedulerMetrics:
    """Prometheus metrics collector for the scheduler.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A new one is
                created when omitted, so several instances can coexist.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("pms_sent_total", "Total sent emails", ["tenant_id"], registry=self.registry)
        self.failed = Counter(
            "pms_failed_total", "Total emails failed permanently", ["tenant_id"], registry=self.registry
        )
        self.retried = Counter(
            "pms_retried_total", "Total failures scheduled for retry", ["tenant_id"], registry=self.registry
        )
        self.deferred = Counter(
            "pms_deferred_total", "Total jobs deferred by throttling", ["tenant_id"], registry=self.registry
        )
        self.suppressed = Counter(
            "pms_suppressed_total",
            "Total suppression entries written",
            ["tenant_id", "suppression_type"],
            registry=self.registry,
        )
        self.blocked = Counter(
            "pms_blocked_total", "Total jobs blocked by suppression", ["tenant_id"], registry=self.registry
        )
        self.bounces = Counter(
            "pms_bounces_total", "Total bounces", ["tenant_id", "bounce_type"], registry=self.registry
        )
        self.complaints = Counter(
            "pms_complaints_total", "Total spam complaints", ["tenant_id"], registry=self.registry
        )
        self.webhook_events = Counter(
            "pms_webhook_events_total", "Total webhook events", ["event_type"], registry=self.registry
        )
        self.webhook_errors = Counter(
            "pms_webhook_errors_total",
            "Webhook events whose bounce or complaint handling failed",
            ["event_type"],
            registry=self.registry,
        )
        self.queue_depth = Gauge(
            "pms_queue_depth", "Scheduled emails per status", ["status"], registry=self.registry
        )
        self.circuit_open = Gauge(
            "pms_circuit_open", "Dispatcher circuit state (1 = open)", ["resource"], registry=self.registry
        )

    def inc_sent(self, tenant_id: str) -> None:
        self.sent.labels(tenant_id=tenant_id or "default").inc()

    def inc_failed(self, tenant_id: str) -> None:
        self.failed.labels(tenant_id=tenant_id or "default").inc()

    def inc_retried(self, tenant_id: str) -> None:
        self.retried.labels(tenant_id=tenant_id or "default").inc()

    def inc_deferred(self, tenant_id: str) -> None:
        self.deferred.labels(tenant_id=tenant_id or "default").inc()

    def inc_suppressed(self, tenant_id: str, suppression_type: str = "manual") -> None:
        self.suppressed.labels(tenant_id=tenant_id or "default", suppression_type=suppression_type).inc()

    def inc_blocked(self, tenant_id: str) -> None:
        self.blocked.labels(tenant_id=tenant_id or "default").inc()

    def inc_bounce(self, tenant_id: str, bounce_type: str) -> None:
        self.bounces.labels(tenant_id=tenant_id or "default", bounce_type=bounce_type or "unknown").inc()

    def inc_complaint(self, tenant_id: str) -> None:
        self.complaints.labels(tenant_id=tenant_id or "default").inc()

    def inc_webhook_event(self, event_type: str) -> None:
        self.webhook_events.labels(event_type=event_type).inc()

    def inc_webhook_error(self, event_type: str) -> None:
        self.webhook_errors.labels(event_type=event_type).inc()

    def set_queue_depth(self, counts: dict[str, int]) -> None:
        """Set the queue depth gauge from a ``{status: count}`` mapping."""
        for status, value in counts.items():
            self.queue_depth.labels(status=status).set(value)

    def set_circuit_states(self, health: dict[str, dict]) -> None:
        for resource, info in health.items():
            self.circuit_open.labels(resource=resource).set(1 if info.get("circuit_state") == "open" else 0)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
