"""Order payment states and the transitions the payment core may perform."""
from enum import Enum
from typing import Dict, FrozenSet, Optional


class PaymentStatus(str, Enum):
    """Order.payment_status values."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"
    REFUND_PENDING = "REFUND_PENDING"


class OrderStatus(str, Enum):
    """Order.status (fulfillment) values."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# Gateway-confirmed transitions. Starting a new payment attempt (PENDING) is
# handled separately because it is not driven by a gateway confirmation.
# A declined or expired attempt can still be followed by a successful retry
# on the same payment intent, so both may move to COMPLETED.
ALLOWED_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.EXPIRED}
    ),
    PaymentStatus.COMPLETED: frozenset(
        {PaymentStatus.REFUND_PENDING, PaymentStatus.REFUNDED}
    ),
    PaymentStatus.REFUND_PENDING: frozenset(
        {PaymentStatus.REFUNDED, PaymentStatus.COMPLETED}
    ),
    PaymentStatus.FAILED: frozenset({PaymentStatus.COMPLETED}),
    PaymentStatus.EXPIRED: frozenset({PaymentStatus.COMPLETED}),
    PaymentStatus.REFUNDED: frozenset(),
}

# A new intent or checkout session may be opened for orders that have not
# been paid yet, including retries after a failed or expired attempt.
RESTARTABLE_STATES: FrozenSet[PaymentStatus] = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.FAILED, PaymentStatus.EXPIRED}
)

REFUNDABLE_STATES: FrozenSet[PaymentStatus] = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.REFUND_PENDING}
)


def coerce_status(value: Optional[str]) -> PaymentStatus:
    """Read a stored payment status, treating unknown or empty values as PENDING."""
    try:
        return PaymentStatus(value)
    except ValueError:
        return PaymentStatus.PENDING


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    """
    Check whether a gateway-confirmed event may move an order to target.

    Re-applying the current state is allowed so redelivered events stay
    harmless.
    """
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())
