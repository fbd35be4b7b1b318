"""
Prometheus metrics for payment orchestration.

Tracks:
- Payment initializations by gateway and outcome
- Verifications by outcome
- Gateway request counts and latency
- Refunds
- Critical inconsistencies (settled payment, order not updated)
- Outbox queue depth
- Sweeper activity
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payment_initializations_total = Counter(
    "payment_initializations_total",
    "Total number of payment initializations",
    ["gateway", "outcome"],  # outcome: processing, rejected, transport_error
)

payment_amount = Histogram(
    "payment_amount",
    "Initialized payment amounts in the integral currency unit",
    buckets=(10_000, 50_000, 100_000, 500_000, 1_000_000, 5_000_000, 10_000_000, 50_000_000),
)

payment_verifications_total = Counter(
    "payment_verifications_total",
    "Total number of callback verifications",
    ["gateway", "outcome"],  # settled, already_settled, failed, indeterminate
)

payment_refunds_total = Counter(
    "payment_refunds_total",
    "Total number of refund attempts",
    ["gateway", "outcome"],
)

payment_operation_duration_seconds = Histogram(
    "payment_operation_duration_seconds",
    "Orchestrator operation duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total gateway API requests",
    ["gateway", "operation", "status"],  # status: success, failure, transport_error
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Gateway API call duration in seconds",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Consistency metrics
critical_inconsistencies_total = Counter(
    "payment_critical_inconsistencies_total",
    "Settled payments whose order could not be reconciled",
    ["kind"],  # mark_paid_failed, mark_refunded_failed, superseded_settlement
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Sweeper metrics
sweeper_records_total = Counter(
    "payment_sweeper_records_total",
    "Records handled by the payment sweeper",
    ["task", "outcome"],
)

sweeper_last_run_timestamp = Gauge(
    "payment_sweeper_last_run_timestamp",
    "Timestamp of last sweeper run",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_initialization(gateway: str, outcome: str, amount: int) -> None:
        """Record a payment initialization."""
        payment_initializations_total.labels(gateway=gateway, outcome=outcome).inc()
        payment_amount.observe(amount)

    @staticmethod
    def record_verification(gateway: str, outcome: str) -> None:
        """Record a callback verification outcome."""
        payment_verifications_total.labels(gateway=gateway, outcome=outcome).inc()

    @staticmethod
    def record_refund(gateway: str, outcome: str) -> None:
        """Record a refund attempt."""
        payment_refunds_total.labels(gateway=gateway, outcome=outcome).inc()

    @staticmethod
    def record_operation_duration(operation: str, duration_seconds: float) -> None:
        """Record orchestrator operation duration."""
        payment_operation_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_call(
        gateway: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a gateway API call."""
        gateway_requests_total.labels(gateway=gateway, operation=operation, status=status).inc()
        gateway_request_duration_seconds.labels(gateway=gateway, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_critical_inconsistency(kind: str) -> None:
        """Record a settlement that could not be reconciled."""
        critical_inconsistencies_total.labels(kind=kind).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_sweep(task: str, outcome: str) -> None:
        """Record one record handled by the sweeper."""
        sweeper_records_total.labels(task=task, outcome=outcome).inc()

    @staticmethod
    def mark_sweep_run() -> None:
        """Stamp the last sweeper run."""
        sweeper_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
