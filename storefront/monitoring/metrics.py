"""
Prometheus metrics for the storefront pipeline.

Tracks:
- Checkout outcomes and duration
- Gateway API calls, errors and circuit breaker state
- Webhook outcomes per gateway
- Payment state transitions (and rejected ones)
- Provisioning attempts
- Status poll results
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Checkout metrics
checkout_requests_total = Counter(
    "checkout_requests_total",
    "Total number of checkout submissions",
    ["settlement", "status"],
)

checkout_duration_seconds = Histogram(
    "checkout_duration_seconds",
    "Checkout processing duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

orders_created_total = Counter(
    "orders_created_total",
    "Total orders created",
    ["settlement"],
)

# Idempotency metrics
idempotency_cache_hits_total = Counter(
    "idempotency_cache_hits_total",
    "Total checkout idempotency hits",
    ["source"],  # redis, database, miss
)

# Balance ledger metrics
balance_operations_total = Counter(
    "balance_operations_total",
    "Total balance ledger operations",
    ["type", "status"],
)

# Gateway API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total gateway API requests",
    ["gateway", "operation", "status"],
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total gateway API errors",
    ["gateway", "error_type"],  # retryable, permanent, circuit_open
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Gateway API call duration in seconds",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["gateway"],
)

# Webhook metrics
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook deliveries by outcome",
    ["gateway", "outcome"],  # processed, duplicate, malformed, rejected, unmatched
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["gateway"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# State machine metrics
payment_transitions_total = Counter(
    "payment_transitions_total",
    "Applied payment intent transitions",
    ["from_status", "to_status", "source"],
)

illegal_transitions_total = Counter(
    "illegal_transitions_total",
    "Rejected payment intent transitions",
    ["gateway", "source"],
)

# Provisioning metrics
provisioning_attempts_total = Counter(
    "provisioning_attempts_total",
    "Credential issuance attempts per line item",
    ["status"],  # succeeded, failed
)

orders_confirmed_total = Counter(
    "orders_confirmed_total",
    "Orders that reached confirmed",
)

# Status poller metrics
status_poll_results_total = Counter(
    "status_poll_results_total",
    "Status poll results per intent",
    ["gateway", "outcome"],  # changed, unchanged, error, skipped
)

status_poll_last_run_timestamp = Gauge(
    "status_poll_last_run_timestamp",
    "Timestamp of last status poll pass",
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


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_checkout(settlement: str, status: str, duration_seconds: float) -> None:
        """Record a checkout submission outcome."""
        checkout_requests_total.labels(settlement=settlement, status=status).inc()
        checkout_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_order_created(settlement: str) -> None:
        orders_created_total.labels(settlement=settlement).inc()

    @staticmethod
    def record_idempotency_cache_hit(source: str) -> None:
        """Record idempotency cache hit."""
        idempotency_cache_hits_total.labels(source=source).inc()

    @staticmethod
    def record_balance_operation(op_type: str, status: str) -> None:
        balance_operations_total.labels(type=op_type, status=status).inc()

    @staticmethod
    def record_gateway_api_call(
        gateway: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record gateway API call."""
        gateway_api_requests_total.labels(
            gateway=gateway, operation=operation, status=status
        ).inc()
        gateway_api_duration_seconds.labels(gateway=gateway, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_gateway_api_error(gateway: str, error_type: str) -> None:
        """Record gateway API error."""
        gateway_api_errors_total.labels(gateway=gateway, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(gateway: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(gateway=gateway).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook(gateway: str, outcome: str, duration_seconds: float) -> None:
        """Record webhook delivery processing."""
        webhook_events_total.labels(gateway=gateway, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(gateway=gateway).observe(duration_seconds)

    @staticmethod
    def record_transition(from_status: str, to_status: str, source: str) -> None:
        payment_transitions_total.labels(
            from_status=from_status, to_status=to_status, source=source
        ).inc()

    @staticmethod
    def record_illegal_transition(gateway: str, source: str) -> None:
        illegal_transitions_total.labels(gateway=gateway, source=source).inc()

    @staticmethod
    def record_provisioning_attempt(status: str) -> None:
        provisioning_attempts_total.labels(status=status).inc()

    @staticmethod
    def record_order_confirmed() -> None:
        orders_confirmed_total.inc()

    @staticmethod
    def record_status_poll(gateway: str, outcome: str) -> None:
        status_poll_results_total.labels(gateway=gateway, outcome=outcome).inc()

    @staticmethod
    def mark_status_poll_run() -> None:
        status_poll_last_run_timestamp.set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()


# Export singleton instance
metrics = MetricsCollector()
