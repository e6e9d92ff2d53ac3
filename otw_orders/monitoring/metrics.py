"""
Prometheus metrics for order and payment monitoring.

Tracks:
- Orders created by service type and payment method
- Checkout sessions issued
- Payment verification outcomes
- Stripe API calls, errors and latency
- Webhook events
- Index mirror writes and backlog
- Session reconciliation sweeps
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "otw_orders_created_total",
    "Total number of orders created",
    ["service_type", "payment_method", "owner"],  # owner: authenticated, guest
)

order_creation_duration_seconds = Histogram(
    "otw_order_creation_duration_seconds",
    "Order creation duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Checkout metrics
checkout_sessions_total = Counter(
    "otw_checkout_sessions_total",
    "Total checkout session requests",
    ["status"],  # created, gateway_error, rejected
)

checkout_amount_cents = Histogram(
    "otw_checkout_amount_cents",
    "Checkout session amounts in cents",
    buckets=(100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000),
)

# Verification metrics
payment_verifications_total = Counter(
    "otw_payment_verifications_total",
    "Total payment verification attempts",
    ["outcome"],  # confirmed, already_paid, pending, expired, mismatch, not_found
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "otw_stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],
)

stripe_api_errors_total = Counter(
    "otw_stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

stripe_api_duration_seconds = Histogram(
    "otw_stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

stripe_circuit_breaker_state = Gauge(
    "otw_stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "otw_webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # success, duplicate, no_handler, failed
)

webhook_processing_duration_seconds = Histogram(
    "otw_webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Index mirror metrics
index_mirror_writes_total = Counter(
    "otw_index_mirror_writes_total",
    "Per-identity index mirror writes",
    ["status"],  # applied, failed
)

index_mirror_backlog = Gauge(
    "otw_index_mirror_backlog",
    "Number of pending index mirror rows",
)

# Reconciliation metrics
reconciliation_orders_checked_total = Counter(
    "otw_reconciliation_orders_checked_total",
    "Orders checked by the session reconciliation sweep",
    ["outcome"],
)

reconciliation_last_run_timestamp = Gauge(
    "otw_reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(
        service_type: str, payment_method: str, authenticated: bool, duration_seconds: float
    ) -> None:
        """Record a created order."""
        orders_created_total.labels(
            service_type=service_type,
            payment_method=payment_method,
            owner="authenticated" if authenticated else "guest",
        ).inc()
        order_creation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_checkout_session(status: str, amount_cents: int = 0) -> None:
        """Record a checkout session request."""
        checkout_sessions_total.labels(status=status).inc()
        if amount_cents > 0:
            checkout_amount_cents.observe(amount_cents)

    @staticmethod
    def record_verification(outcome: str) -> None:
        """Record a payment verification outcome."""
        payment_verifications_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_stripe_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_index_mirror_write(status: str) -> None:
        index_mirror_writes_total.labels(status=status).inc()

    @staticmethod
    def set_index_mirror_backlog(depth: int) -> None:
        index_mirror_backlog.set(depth)

    @staticmethod
    def record_reconciliation(outcomes: dict) -> None:
        """Record one reconciliation sweep."""
        for outcome, count in outcomes.items():
            reconciliation_orders_checked_total.labels(outcome=outcome).inc(count)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
