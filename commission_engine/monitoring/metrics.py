"""
Prometheus metrics for commission settlement monitoring.

Tracks:
- API request counts and latency by route
- Ledger recordings by outcome (recorded, duplicate, failed)
- Commission amounts credited
- Failures of the derived-aggregate phase (healed by reconciliation)
- Withdrawal state transitions
- Notification delivery
- Reconciliation drift
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# API metrics
api_requests_total = Counter(
    "api_requests_total",
    "API requests by route template and status class",
    ["method", "route", "status"],
)

api_request_duration_seconds = Histogram(
    "api_request_duration_seconds",
    "API request latency in seconds",
    ["route"],
    buckets=(0.005, 0.025, 0.1, 0.25, 0.5, 1, 2.5, 5),
)

# Ledger metrics
payments_recorded_total = Counter(
    "payments_recorded_total",
    "Total payment confirmations processed by the ledger",
    ["outcome"],  # recorded, duplicate, failed
)

commission_credited_cents = Histogram(
    "commission_credited_cents",
    "Creator commission credited per payment in cents",
    buckets=(0, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

aggregate_update_failures_total = Counter(
    "aggregate_update_failures_total",
    "Derived aggregate updates that failed after the ledger write",
    ["stage"],
)

# Withdrawal metrics
withdrawal_transitions_total = Counter(
    "withdrawal_transitions_total",
    "Total withdrawal state machine transitions",
    ["transition", "outcome"],  # outcome: success, conflict, replay, rejected
)

withdrawal_amount_cents = Histogram(
    "withdrawal_amount_cents",
    "Requested withdrawal amounts in cents",
    buckets=(1000000, 2500000, 5000000, 10000000, 25000000, 50000000),
)

# Notification metrics
notifications_total = Counter(
    "notifications_total",
    "Best-effort notifications by status",
    ["status"],  # queued, failed
)

# Reconciliation metrics
reconciliation_drifted_creators = Gauge(
    "reconciliation_drifted_creators",
    "Creators whose aggregates drifted from the ledger in the last run",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation job duration in seconds",
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type", "status"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_request(method: str, route: str, status_code: int, duration_seconds: float) -> None:
        """Record a served API request."""
        api_requests_total.labels(method=method, route=route, status=f"{status_code // 100}xx").inc()
        api_request_duration_seconds.labels(route=route).observe(duration_seconds)

    @staticmethod
    def record_payment(outcome: str, commission_cents: int = 0) -> None:
        """Record a ledger recording outcome."""
        payments_recorded_total.labels(outcome=outcome).inc()
        if outcome == "recorded":
            commission_credited_cents.observe(commission_cents)

    @staticmethod
    def record_aggregate_failure(stage: str) -> None:
        """Record a failed derived-aggregate update."""
        aggregate_update_failures_total.labels(stage=stage).inc()

    @staticmethod
    def record_withdrawal_transition(transition: str, outcome: str) -> None:
        """Record a withdrawal state transition attempt."""
        withdrawal_transitions_total.labels(transition=transition, outcome=outcome).inc()

    @staticmethod
    def record_withdrawal_amount(amount_cents: int) -> None:
        """Record a requested withdrawal amount."""
        withdrawal_amount_cents.observe(amount_cents)

    @staticmethod
    def record_notification(status: str) -> None:
        """Record a notification outcome."""
        notifications_total.labels(status=status).inc()

    @staticmethod
    def set_reconciliation_metrics(drifted_creators: int, duration_seconds: float) -> None:
        """Set reconciliation metrics."""
        reconciliation_drifted_creators.set(drifted_creators)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, status: str) -> None:
        """Record outbox event delivery."""
        outbox_events_published_total.labels(event_type=event_type, status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
