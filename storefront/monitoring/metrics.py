"""
Prometheus metrics for payment and cache monitoring.

Tracks:
- Payment intents, checkout sessions and refunds
- Stripe API calls and errors
- Webhook events, dead letters and stale deliveries
- Cache operations and background write failures
"""
from prometheus_client import Counter, Histogram

# Payment metrics
payment_intents_created_total = Counter(
    "payment_intents_created_total",
    "Total payment intents created",
    ["currency"],
)

checkout_sessions_created_total = Counter(
    "checkout_sessions_created_total",
    "Total checkout sessions created",
)

payment_amount_cents = Histogram(
    "payment_amount_cents",
    "Requested payment amounts in minor units",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

refunds_total = Counter(
    "refunds_total",
    "Total refunds issued",
    ["status"],  # succeeded, pending, failed, ...
)

payment_transitions_total = Counter(
    "payment_transitions_total",
    "Order payment status transitions applied",
    ["source", "target"],
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],  # operation: create_payment_intent, create_refund, etc.
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # processed, ignored, duplicate, stale, dead_lettered, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_dead_letters_total = Counter(
    "webhook_dead_letters_total",
    "Verified webhook events that could not be matched to an order",
    ["event_type", "reason"],
)

# Cache metrics
cache_operations_total = Counter(
    "cache_operations_total",
    "Cache operations by outcome",
    ["operation", "result"],  # result: hit, miss, ok, error
)

cache_background_write_failures_total = Counter(
    "cache_background_write_failures_total",
    "Background cache writes from get_or_set that failed or timed out",
    ["reason"],  # timeout, rejected
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_intent(currency: str, amount_cents: int) -> None:
        """Record a created payment intent."""
        payment_intents_created_total.labels(currency=currency.lower()).inc()
        payment_amount_cents.observe(amount_cents)

    @staticmethod
    def record_checkout_session(amount_cents: int) -> None:
        """Record a created checkout session."""
        checkout_sessions_created_total.inc()
        payment_amount_cents.observe(amount_cents)

    @staticmethod
    def record_refund(status: str) -> None:
        """Record a refund returned by the gateway."""
        refunds_total.labels(status=status).inc()

    @staticmethod
    def record_transition(source: str, target: str) -> None:
        """Record an applied payment status transition."""
        payment_transitions_total.labels(source=source, target=target).inc()

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
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_dead_letter(event_type: str, reason: str) -> None:
        """Record a dead-lettered webhook event."""
        webhook_dead_letters_total.labels(event_type=event_type, reason=reason).inc()

    @staticmethod
    def record_cache_operation(operation: str, result: str) -> None:
        """Record a cache operation outcome."""
        cache_operations_total.labels(operation=operation, result=result).inc()

    @staticmethod
    def record_cache_write_failure(reason: str) -> None:
        """Record a failed background cache write."""
        cache_background_write_failures_total.labels(reason=reason).inc()


# Export singleton instance
metrics = MetricsCollector()
