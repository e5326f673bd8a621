"""
Prometheus metrics for registration and payment monitoring.

Tracks:
- Price quotes and order creations by outcome
- Inventory reservation conflicts
- Processor API calls, errors and latency
- Webhook notifications
- Reconciliation transitions and sweep runs
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Pricing and order metrics
quotes_total = Counter(
    "registration_quotes_total",
    "Total number of price quotes",
    ["coupon"],  # applied, rejected, none
)

orders_created_total = Counter(
    "registration_orders_created_total",
    "Total order creation attempts",
    ["outcome"],  # created, validation_error, conflict, not_found
)

order_creation_duration_seconds = Histogram(
    "registration_order_creation_duration_seconds",
    "Order creation duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

reservation_conflicts_total = Counter(
    "registration_reservation_conflicts_total",
    "Reservations refused because capacity was exhausted",
    ["resource"],  # size, slot, batch, coupon, duplicate
)

# Processor API metrics
processor_api_requests_total = Counter(
    "processor_api_requests_total",
    "Total payment processor API requests",
    ["operation", "status"],
)

processor_api_errors_total = Counter(
    "processor_api_errors_total",
    "Total payment processor API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

processor_api_duration_seconds = Histogram(
    "processor_api_duration_seconds",
    "Payment processor API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

processor_circuit_breaker_state = Gauge(
    "processor_circuit_breaker_state",
    "Processor circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_notifications_total = Counter(
    "webhook_notifications_total",
    "Total payment notifications received",
    ["topic", "status"],  # processed, duplicate, ignored, invalid_signature, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["topic"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Reconciliation metrics
reconciliation_outcomes_total = Counter(
    "reconciliation_outcomes_total",
    "Reconciliation results per order",
    ["trigger", "outcome"],  # trigger: webhook, sync, sweep
)

sweep_duration_seconds = Histogram(
    "reconciliation_sweep_duration_seconds",
    "Pending order sweep duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300),
)

sweep_last_run_timestamp = Gauge(
    "reconciliation_sweep_last_run_timestamp",
    "Timestamp of last pending order sweep",
)

sweep_orders_checked = Gauge(
    "reconciliation_sweep_orders_checked",
    "Orders checked by the last sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_quote(coupon: str) -> None:
        """Record a price quote."""
        quotes_total.labels(coupon=coupon).inc()

    @staticmethod
    def record_order_creation(outcome: str, duration_seconds: float, count: int = 1) -> None:
        """Record an order creation attempt."""
        orders_created_total.labels(outcome=outcome).inc(count)
        order_creation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_reservation_conflict(resource: str) -> None:
        """Record a refused reservation."""
        reservation_conflicts_total.labels(resource=resource).inc()

    @staticmethod
    def record_processor_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record processor API call."""
        processor_api_requests_total.labels(operation=operation, status=status).inc()
        processor_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_processor_api_error(error_type: str) -> None:
        """Record processor API error."""
        processor_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        processor_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_notification(topic: str, status: str, duration_seconds: float) -> None:
        """Record webhook notification processing."""
        webhook_notifications_total.labels(topic=topic, status=status).inc()
        webhook_processing_duration_seconds.labels(topic=topic).observe(duration_seconds)

    @staticmethod
    def record_reconciliation(trigger: str, outcome: str) -> None:
        """Record the result of reconciling one order."""
        reconciliation_outcomes_total.labels(trigger=trigger, outcome=outcome).inc()

    @staticmethod
    def set_sweep_metrics(checked: int, duration_seconds: float) -> None:
        """Set sweep metrics."""
        sweep_orders_checked.set(checked)
        sweep_duration_seconds.observe(duration_seconds)
        sweep_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
