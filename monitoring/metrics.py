"""
Prometheus metrics for payment system monitoring.

Tracks:
- Payment initiations by outcome
- Gateway call counts, errors and duration
- Settlement poll ticks
- Settlements and failures by driver (poll / webhook)
- Webhook deliveries
- Withdrawals
- Loan releases
"""
from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Total number of STK push initiations",
    ["outcome"],  # pending, failed, error
)

payment_amount_shillings = Histogram(
    "payment_amount_shillings",
    "Service fee amounts in shillings",
    buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total PayNecta API requests",
    ["operation", "status"],  # operation: initiate, query_status
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total PayNecta API errors",
    ["error_type"],  # transient, permanent
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "PayNecta API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Settlement metrics
settlement_poll_ticks_total = Counter(
    "settlement_poll_ticks_total",
    "Total settlement status polls",
    ["result"],  # settle, fail, cancel, ignore, error
)

settlement_transitions_total = Counter(
    "settlement_transitions_total",
    "Settlement state transitions applied",
    ["source", "outcome"],  # source: poll, webhook
)

active_settlement_polls = Gauge(
    "active_settlement_polls",
    "Number of transactions currently being polled",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook deliveries received",
    ["outcome"],  # settle, fail, cancel, ignore, unknown_reference
)

# Withdrawal metrics
withdrawal_requests_total = Counter(
    "withdrawal_requests_total",
    "Total withdrawal requests",
    ["status"],  # accepted, rejected
)

# Loan release metrics
loans_released_total = Counter(
    "loans_released_total",
    "Total loan disbursements released",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_initiation(outcome: str, amount: int) -> None:
        """Record an STK push initiation."""
        payment_initiations_total.labels(outcome=outcome).inc()
        payment_amount_shillings.observe(amount)

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a PayNecta API call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record a PayNecta API error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_poll_tick(result: str) -> None:
        settlement_poll_ticks_total.labels(result=result).inc()

    @staticmethod
    def record_settlement(source: str, outcome: str) -> None:
        settlement_transitions_total.labels(source=source, outcome=outcome).inc()

    @staticmethod
    def set_active_polls(count: int) -> None:
        active_settlement_polls.set(count)

    @staticmethod
    def record_webhook_event(outcome: str) -> None:
        webhook_events_received_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_withdrawal(status: str) -> None:
        withdrawal_requests_total.labels(status=status).inc()

    @staticmethod
    def record_loans_released(count: int) -> None:
        if count:
            loans_released_total.inc(count)


# Export singleton instance
metrics = MetricsCollector()
