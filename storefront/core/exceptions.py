"""
Exception classes for the payment core.

Every payment exception carries the HTTP status the API layer responds
with, so routes translate them without per-type branching.
"""
from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    http_status = 500
    error_code = "payment_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
            }
        }


class PaymentNotConfiguredError(PaymentError):
    """Raised when a gateway operation is requested without Stripe credentials."""

    http_status = 503
    error_code = "payment_not_configured"

    def __init__(self, message: str = "Payment service not configured", **context: Any):
        super().__init__(message, **context)


class PaymentValidationError(PaymentError):
    """Raised when payment input validation fails."""

    http_status = 400
    error_code = "validation_error"


class NotFoundError(PaymentError):
    """Base class for missing orders, products, users and intents."""

    http_status = 404
    error_code = "not_found"


class OrderNotFoundError(NotFoundError):
    """Referenced order does not exist."""

    error_code = "order_not_found"

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found", order_id=order_id)
        self.order_id = order_id


class ProductNotFoundError(NotFoundError):
    """Referenced product does not exist."""

    error_code = "product_not_found"

    def __init__(self, product_id: str):
        super().__init__(f"Product {product_id} not found", product_id=product_id)
        self.product_id = product_id


class UserNotFoundError(NotFoundError):
    """Referenced user does not exist."""

    error_code = "user_not_found"

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found", user_id=user_id)
        self.user_id = user_id


class PaymentIntentNotFoundError(NotFoundError):
    """Order has no recorded payment intent to refund."""

    error_code = "payment_intent_not_found"

    def __init__(self, order_id: str):
        super().__init__(f"No payment intent found for order {order_id}", order_id=order_id)
        self.order_id = order_id


class InvalidSignatureError(PaymentError):
    """Webhook signature verification failed."""

    http_status = 400
    error_code = "invalid_signature"


class InvalidPayloadError(PaymentError):
    """Webhook body is not a well-formed event."""

    http_status = 400
    error_code = "invalid_payload"


class InvalidPaymentTransitionError(PaymentError):
    """Requested operation is not allowed in the order's current payment state."""

    http_status = 409
    error_code = "invalid_payment_transition"


class ConcurrentUpdateError(PaymentError):
    """Order changed between read and conditional write."""

    http_status = 409
    error_code = "concurrent_update"

    def __init__(self, order_id: str, expected_version: int):
        super().__init__(
            f"Order {order_id} was modified concurrently (expected version {expected_version})",
            order_id=order_id,
            expected_version=expected_version,
        )
        self.order_id = order_id
        self.expected_version = expected_version


class PaymentGatewayError(PaymentError):
    """Stripe call failed; wraps the classified gateway error."""

    http_status = 502
    error_code = "gateway_error"

    def __init__(self, message: str, original_error: Optional[Exception] = None, **context: Any):
        super().__init__(message, **context)
        self.original_error = original_error


class PaymentPersistenceError(PaymentError):
    """Writing a verified gateway outcome to the database failed."""

    http_status = 500
    error_code = "persistence_error"
