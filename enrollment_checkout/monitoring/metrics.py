"""
Prometheus metrics for checkout monitoring.

Tracks:
- Orders created and checkout attempts by outcome
- Confirmations by outcome, with replays counted apart
- Refunds and expired payments
- Gateway calls, errors and circuit breaker state
- View cache hits, misses and invalidations
- Per-order lock acquisitions
"""
from prometheus_client import Counter, Gauge, Histogram

# Order lifecycle metrics
orders_created_total = Counter(
    "checkout_orders_created_total",
    "Total orders created",
    ["currency"],
)

order_total_cents = Histogram(
    "checkout_order_total_cents",
    "Order totals in cents",
    buckets=(500, 1000, 5000, 10000, 25000, 50000, 100000, 500000),
)

checkout_attempts_total = Counter(
    "checkout_attempts_total",
    "Total checkout initiations",
    ["outcome"],  # created, not_payable, gateway_unavailable, busy
)

payment_confirmations_total = Counter(
    "checkout_payment_confirmations_total",
    "Total payment confirmations",
    ["outcome", "replay"],  # outcome: succeeded, failed, pending
)

refunds_total = Counter(
    "checkout_refunds_total",
    "Total refund requests",
    ["outcome"],  # refunded, declined, gateway_unavailable
)

expired_payments_total = Counter(
    "checkout_expired_payments_total",
    "Pending payments closed by the expiry sweep",
    ["resolution"],  # expired, succeeded, failed
)

operation_duration_seconds = Histogram(
    "checkout_operation_duration_seconds",
    "Orchestrator operation duration in seconds",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Gateway metrics
gateway_requests_total = Counter(
    "checkout_gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],
)

gateway_errors_total = Counter(
    "checkout_gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "checkout_gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "checkout_gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# View cache metrics
view_cache_requests_total = Counter(
    "checkout_view_cache_requests_total",
    "View cache lookups",
    ["result"],  # hit, miss
)

view_cache_invalidations_total = Counter(
    "checkout_view_cache_invalidations_total",
    "View cache invalidations by triggering operation",
    ["operation", "status"],  # status: ok, failed
)

# Lock metrics
order_lock_acquisitions_total = Counter(
    "checkout_order_lock_acquisitions_total",
    "Per-order lock acquisitions",
    ["status"],  # acquired, timeout
)

order_lock_wait_seconds = Histogram(
    "checkout_order_lock_wait_seconds",
    "Time spent waiting for a per-order lock",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(currency: str, total_cents: int) -> None:
        orders_created_total.labels(currency=currency).inc()
        order_total_cents.observe(total_cents)

    @staticmethod
    def record_checkout_attempt(outcome: str) -> None:
        checkout_attempts_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_confirmation(outcome: str, replay: bool) -> None:
        payment_confirmations_total.labels(
            outcome=outcome, replay="true" if replay else "false"
        ).inc()

    @staticmethod
    def record_refund(outcome: str) -> None:
        refunds_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_expired_payment(resolution: str) -> None:
        expired_payments_total.labels(resolution=resolution).inc()

    @staticmethod
    def record_operation_duration(operation: str, duration_seconds: float) -> None:
        operation_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a payment gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_cache_lookup(hit: bool) -> None:
        view_cache_requests_total.labels(result="hit" if hit else "miss").inc()

    @staticmethod
    def record_invalidation(operation: str, status: str) -> None:
        view_cache_invalidations_total.labels(operation=operation, status=status).inc()

    @staticmethod
    def record_lock(status: str, wait_seconds: float = 0) -> None:
        """Record per-order lock acquisition."""
        order_lock_acquisitions_total.labels(status=status).inc()
        if wait_seconds > 0:
            order_lock_wait_seconds.observe(wait_seconds)


# Export singleton instance
metrics = MetricsCollector()
