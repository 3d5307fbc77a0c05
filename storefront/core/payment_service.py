"""
Payment service bridging marketplace orders and Stripe.

Orchestrates:
1. Payment intent and checkout session creation
2. Webhook verification, deduplication and dispatch
3. Order payment state transitions (version-checked, ordered by event time)
4. Refunds and asynchronous refund confirmation

An order only becomes COMPLETED from a verified webhook; the create_*
calls leave it PENDING.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from storefront.core.cache import CacheStore
from storefront.core.exceptions import (
    ConcurrentUpdateError,
    InvalidPaymentTransitionError,
    OrderNotFoundError,
    PaymentGatewayError,
    PaymentIntentNotFoundError,
    PaymentNotConfiguredError,
    PaymentPersistenceError,
    PaymentValidationError,
    ProductNotFoundError,
    UserNotFoundError,
)
from storefront.core.notifications import DeadLetterSink, LoggingNotifier
from storefront.core.states import (
    REFUNDABLE_STATES,
    RESTARTABLE_STATES,
    OrderStatus,
    PaymentStatus,
    can_transition,
    coerce_status,
)
from storefront.database.models import Order
from storefront.database.repositories import (
    OrderRepository,
    ProductRepository,
    UserRepository,
)
from storefront.integrations.stripe_client import GatewayError, StripeGateway
from storefront.integrations.webhook_handler import WebhookHandler
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SUPPORTED_METHODS = ["card"]
SUPPORTED_CURRENCIES = ["usd", "eur", "gbp"]

# Stripe refund.status -> order.refund_status
REFUND_STATUSES: Dict[str, PaymentStatus] = {
    "succeeded": PaymentStatus.REFUNDED,
    "pending": PaymentStatus.REFUND_PENDING,
    "requires_action": PaymentStatus.REFUND_PENDING,
    "failed": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
}

OUTSTANDING_REFUND_STATUSES = ("pending", "requires_action")

# Webhook targets that mean money moved; rejecting one is escalated
MONEY_MOVEMENT_STATES = (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)

REFUND_RECORD_ATTEMPTS = 3


def to_minor_units(amount: Any) -> int:
    """
    Convert a major-unit amount to Stripe's integer minor units.

    Rounds half up, so 49.99 -> 4999 and 0.125 -> 13.
    """
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: Optional[int]) -> float:
    """Convert Stripe minor units back to a major-unit amount."""
    return (amount or 0) / 100


def captured_cents(order: Order) -> Optional[int]:
    """Amount paid for an order in minor units, or None when unknown."""
    amount = (order.payment_details or {}).get("amount")
    if amount is None:
        amount = order.total_amount
    if amount is None:
        return None
    cents = to_minor_units(amount)
    return cents if cents > 0 else None


def refund_position(
    order: Order, refunds: Dict[str, Dict[str, Any]]
) -> Tuple[PaymentStatus, int]:
    """
    Work out the payment status implied by the refunds recorded on an order.

    The order only leaves COMPLETED once refunds cover the captured amount.
    Smaller refunds are tracked through refund_status and refund_details, so
    further partial refunds stay possible. When the captured amount is
    unknown, any refund counts as covering it.

    Args:
        order: The order being refunded
        refunds: Refund ledger keyed by Stripe refund id

    Returns:
        Tuple of the payment status and the settled refund total in minor units
    """
    captured = captured_cents(order)
    settled = sum(
        r["amount_cents"] for r in refunds.values() if r["status"] == "succeeded"
    )
    outstanding = sum(
        r["amount_cents"]
        for r in refunds.values()
        if r["status"] in OUTSTANDING_REFUND_STATUSES
    )

    def covers(cents: int) -> bool:
        return cents > 0 if captured is None else cents >= captured

    if covers(settled):
        return PaymentStatus.REFUNDED, settled
    if covers(settled + outstanding):
        return PaymentStatus.REFUND_PENDING, settled
    return PaymentStatus.COMPLETED, settled


@dataclass(frozen=True)
class RefundRecord:
    """Outcome of a refund request."""

    order_id: str
    refund_id: str
    status: str
    amount: float
    reason: Optional[str]
    refund_status: str


class PaymentService:
    """
    Payment gateway adapter for marketplace orders.

    All collaborators are injected; ``gateway`` is None when Stripe is not
    configured, in which case gateway operations raise
    PaymentNotConfiguredError.
    """

    def __init__(
        self,
        gateway: Optional[StripeGateway],
        orders: OrderRepository,
        products: ProductRepository,
        users: UserRepository,
        cache: CacheStore,
        dead_letters: DeadLetterSink,
        notifier: Optional[LoggingNotifier] = None,
        frontend_url: str = "http://localhost:3000",
        publishable_key: Optional[str] = None,
        webhook_dedup_ttl: int = 86400 * 7,
    ):
        """
        Initialize payment service.

        Args:
            gateway: Stripe gateway, or None when payments are disabled
            orders: Order repository
            products: Product repository
            users: User repository
            cache: Cache store (webhook deduplication)
            dead_letters: Sink for uncorrelated webhook events
            notifier: Receives committed transitions
            frontend_url: Base URL for default checkout redirects
            publishable_key: Stripe publishable key exposed to the storefront
            webhook_dedup_ttl: How long processed webhook ids are remembered
        """
        self.gateway = gateway
        self.orders = orders
        self.products = products
        self.users = users
        self.dead_letters = dead_letters
        self.notifier = notifier or LoggingNotifier()
        self.frontend_url = frontend_url.rstrip("/")
        self.publishable_key = publishable_key

        self.webhooks = WebhookHandler(gateway, cache, dedup_ttl=webhook_dedup_ttl)
        self.webhooks.register_handler(
            "payment_intent.succeeded", self.handle_payment_intent_succeeded
        )
        self.webhooks.register_handler(
            "payment_intent.payment_failed", self.handle_payment_intent_failed
        )
        self.webhooks.register_handler(
            "checkout.session.completed", self.handle_checkout_session_completed
        )
        self.webhooks.register_handler(
            "checkout.session.expired", self.handle_checkout_session_expired
        )
        self.webhooks.register_handler("refund.updated", self.handle_refund_updated)
        self.webhooks.register_handler("charge.refund.updated", self.handle_refund_updated)
        self.webhooks.register_handler("charge.refunded", self.handle_charge_refunded)

        logger.info("payment_service_initialized", configured=self.is_configured())

    def is_configured(self) -> bool:
        """True iff a Stripe secret key was supplied at startup."""
        return self.gateway is not None

    def _require_gateway(self) -> StripeGateway:
        if self.gateway is None:
            raise PaymentNotConfiguredError()
        return self.gateway

    def get_public_config(self) -> Dict[str, Any]:
        """Payment settings the storefront needs to render checkout."""
        return {
            "enabled": self.is_configured(),
            "publishable_key": self.publishable_key,
            "supported_methods": SUPPORTED_METHODS,
            "supported_currencies": SUPPORTED_CURRENCIES,
        }

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _get_order(self, order_id: str) -> Order:
        order = await self.orders.find_by_id(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def _write(self, order: Order, fields: Dict[str, Any]) -> int:
        """Conditionally write order fields; database errors are logged and re-raised."""
        try:
            return await self.orders.update_fields(order.id, order.version, fields)
        except SQLAlchemyError as e:
            logger.error(
                "order_persistence_failed",
                order_id=order.id,
                fields=sorted(fields),
                error=str(e),
            )
            raise PaymentPersistenceError(
                f"Failed to update order {order.id}", order_id=order.id
            ) from e

    async def _notify(
        self, order: Order, status: PaymentStatus, details: Optional[Dict[str, Any]] = None
    ) -> None:
        try:
            await self.notifier.payment_status_changed(
                order.id, order.user_id, status.value, details
            )
        except Exception as e:
            # Transition already committed; notifications are best-effort
            logger.warning("order_notification_failed", order_id=order.id, error=str(e))

    # ------------------------------------------------------------------
    # Payment creation
    # ------------------------------------------------------------------

    async def create_payment_intent(
        self,
        amount: Any,
        order_id: str,
        user_id: str,
        currency: str = "usd",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        """
        Create a Stripe PaymentIntent for an order.

        Args:
            amount: Amount in major units (e.g. 49.99)
            order_id: Order identifier
            user_id: Paying user
            currency: Currency code
            metadata: Extra metadata forwarded to Stripe

        Returns:
            Dict[str, str]: ``client_secret`` and ``payment_intent_id``

        Raises:
            PaymentNotConfiguredError: If Stripe is not configured
            PaymentValidationError: If amount is not positive
            OrderNotFoundError: If the order does not exist
            PaymentGatewayError: If Stripe rejects the call
        """
        gateway = self._require_gateway()

        if amount is None or Decimal(str(amount)) <= 0:
            raise PaymentValidationError("Amount must be positive")

        amount_cents = to_minor_units(amount)
        if amount_cents <= 0:
            raise PaymentValidationError("Amount must be at least one minor unit")

        order = await self._get_order(order_id)
        self._ensure_payable(order)

        stripe_metadata = {str(k): str(v) for k, v in (metadata or {}).items()}
        stripe_metadata.update({"orderId": order_id, "userId": user_id})

        try:
            payment_intent = await gateway.create_payment_intent(
                amount_cents=amount_cents,
                currency=currency,
                metadata=stripe_metadata,
                idempotency_key=f"pi:{order_id}:{order.version}:{amount_cents}:{currency.lower()}",
            )
        except GatewayError as e:
            raise PaymentGatewayError(
                "Failed to create payment intent", original_error=e, order_id=order_id
            ) from e

        await self._write(
            order,
            {
                "payment_intent_id": payment_intent.id,
                "payment_status": PaymentStatus.PENDING.value,
            },
        )
        metrics.record_payment_intent(currency, amount_cents)

        logger.info(
            "payment_intent_created",
            payment_intent_id=payment_intent.id,
            order_id=order_id,
            amount_cents=amount_cents,
        )

        return {
            "client_secret": payment_intent.client_secret,
            "payment_intent_id": payment_intent.id,
        }

    async def create_checkout_session(
        self,
        order_id: str,
        user_id: str,
        items: List[Dict[str, Any]],
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Dict[str, str]:
        """
        Create a hosted Stripe Checkout Session for an order.

        Line items are priced from the catalog; each item needs
        ``product_id`` and optionally ``quantity`` (default 1).

        Returns:
            Dict[str, str]: ``session_id`` and ``url``

        Raises:
            ProductNotFoundError: If any product does not exist
        """
        gateway = self._require_gateway()

        if not items:
            raise PaymentValidationError("Checkout requires at least one item")

        order = await self._get_order(order_id)
        self._ensure_payable(order)

        line_items = []
        total_cents = 0
        for item in items:
            product = await self.products.find_by_id(item["product_id"])
            if product is None:
                raise ProductNotFoundError(item["product_id"])

            quantity = int(item.get("quantity") or 1)
            if quantity < 1:
                raise PaymentValidationError("Quantity must be at least 1")

            unit_amount = to_minor_units(product.price)
            quoted = item.get("price")
            if quoted is not None and to_minor_units(quoted) != unit_amount:
                logger.warning(
                    "checkout_price_mismatch",
                    product_id=product.id,
                    quoted_cents=to_minor_units(quoted),
                    catalog_cents=unit_amount,
                )

            product_data: Dict[str, Any] = {"name": product.name}
            if product.description:
                product_data["description"] = product.description
            if product.images:
                product_data["images"] = list(product.images)

            line_items.append(
                {
                    "price_data": {
                        "currency": "usd",
                        "product_data": product_data,
                        "unit_amount": unit_amount,
                    },
                    "quantity": quantity,
                }
            )
            total_cents += unit_amount * quantity

        try:
            session = await gateway.create_checkout_session(
                line_items=line_items,
                success_url=success_url or f"{self.frontend_url}/orders/{order_id}/success",
                cancel_url=cancel_url or f"{self.frontend_url}/orders/{order_id}/cancel",
                metadata={"orderId": order_id, "userId": user_id},
            )
        except GatewayError as e:
            raise PaymentGatewayError(
                "Failed to create checkout session", original_error=e, order_id=order_id
            ) from e

        await self._write(
            order,
            {
                "checkout_session_id": session.id,
                "payment_status": PaymentStatus.PENDING.value,
            },
        )
        metrics.record_checkout_session(total_cents)

        logger.info("checkout_session_created", session_id=session.id, order_id=order_id)

        return {"session_id": session.id, "url": session.url}

    @staticmethod
    def _ensure_payable(order: Order) -> None:
        current = coerce_status(order.payment_status)
        if current not in RESTARTABLE_STATES:
            raise InvalidPaymentTransitionError(
                f"Order {order.id} cannot start a payment in state {current.value}",
                order_id=order.id,
            )

    async def get_payment_details(self, payment_intent_id: str) -> Dict[str, Any]:
        """Fetch a PaymentIntent from Stripe."""
        gateway = self._require_gateway()
        try:
            payment_intent = await gateway.retrieve_payment_intent(payment_intent_id)
        except GatewayError as e:
            raise PaymentGatewayError(
                "Failed to retrieve payment details", original_error=e
            ) from e

        return {
            "id": payment_intent.id,
            "status": payment_intent.status,
            "amount": from_minor_units(payment_intent.amount),
            "currency": payment_intent.currency,
            "created": payment_intent.created,
        }

    async def create_customer(
        self, user_id: str, email: Optional[str] = None, name: Optional[str] = None
    ) -> Dict[str, str]:
        """
        Create (or return the existing) Stripe customer for a user.

        Raises:
            UserNotFoundError: If the user does not exist
        """
        gateway = self._require_gateway()

        user = await self.users.find_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        if user.stripe_customer_id:
            return {"customer_id": user.stripe_customer_id, "user_id": user_id}

        try:
            customer = await gateway.create_customer(
                email=email or user.email,
                name=name or user.name,
                metadata={"userId": user_id},
            )
        except GatewayError as e:
            raise PaymentGatewayError(
                "Failed to create customer", original_error=e, user_id=user_id
            ) from e

        await self.users.update_fields(user_id, {"stripe_customer_id": customer.id})
        logger.info("stripe_customer_created", customer_id=customer.id, user_id=user_id)
        return {"customer_id": customer.id, "user_id": user_id}

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def refund_payment(
        self,
        order_id: str,
        amount: Any = None,
        reason: Optional[str] = None,
    ) -> RefundRecord:
        """
        Refund an order's payment, fully or partially.

        Args:
            order_id: Order identifier
            amount: Major-unit amount for a partial refund; full refund when None
            reason: Stripe refund reason

        Raises:
            OrderNotFoundError: If the order does not exist
            PaymentIntentNotFoundError: If no payment intent is recorded
            InvalidPaymentTransitionError: If the order was not paid
            PaymentGatewayError: If Stripe rejects the refund
            ConcurrentUpdateError: If the issued refund could not be recorded
        """
        gateway = self._require_gateway()

        order = await self._get_order(order_id)
        payment_intent_id = order.payment_intent_id or (order.payment_details or {}).get(
            "payment_intent_id"
        )
        if not payment_intent_id:
            raise PaymentIntentNotFoundError(order_id)

        current = coerce_status(order.payment_status)
        if current not in REFUNDABLE_STATES:
            raise InvalidPaymentTransitionError(
                f"Order {order_id} cannot be refunded in state {current.value}",
                order_id=order_id,
            )

        amount_cents = to_minor_units(amount) if amount is not None else None
        if amount_cents is not None and amount_cents <= 0:
            raise PaymentValidationError("Refund amount must be positive")

        # Keyed on recorded refunds, not the order version
        recorded = (order.refund_details or {}).get("refunds") or {}
        try:
            refund = await gateway.create_refund(
                payment_intent_id=payment_intent_id,
                amount_cents=amount_cents,
                reason=reason,
                metadata={"orderId": order_id},
                idempotency_key=f"refund:{order_id}:{amount_cents or 'full'}:{len(recorded)}",
            )
        except GatewayError as e:
            raise PaymentGatewayError(
                "Failed to create refund", original_error=e, order_id=order_id
            ) from e

        metrics.record_refund(refund.status)
        order, target, fields = await self._record_refund(order, refund)
        refund_details = fields["refund_details"]
        await self._notify(order, target, refund_details)

        logger.info(
            "refund_created",
            refund_id=refund.id,
            order_id=order_id,
            status=refund.status,
            payment_status=target.value,
            total_refunded=refund_details["total_refunded"],
        )

        return RefundRecord(
            order_id=order_id,
            refund_id=refund.id,
            status=refund.status,
            amount=refund_details["amount"],
            reason=refund.reason,
            refund_status=fields["refund_status"],
        )

    def _refund_fields(
        self,
        order: Order,
        refund_id: str,
        amount_cents: Optional[int],
        status: str,
        reason: Optional[str],
    ) -> Tuple[PaymentStatus, Dict[str, Any]]:
        """Merge one refund into the order's refund ledger."""
        refunds = dict((order.refund_details or {}).get("refunds") or {})
        refunds[refund_id] = {"amount_cents": amount_cents or 0, "status": status}
        target, settled = refund_position(order, refunds)

        return target, {
            "refund_status": REFUND_STATUSES[status].value,
            "refund_details": {
                "refund_id": refund_id,
                "amount": from_minor_units(amount_cents),
                "reason": reason,
                "status": status,
                "total_refunded": from_minor_units(settled),
                "refunds": refunds,
            },
        }

    async def _record_refund(
        self, order: Order, refund: Any
    ) -> Tuple[Order, PaymentStatus, Dict[str, Any]]:
        """
        Store a refund the gateway has already issued.

        The money has moved by now, so a concurrent order write is retried
        against a fresh read instead of being surfaced to the caller.
        """
        attempt = 1
        while True:
            current = coerce_status(order.payment_status)
            target, fields = self._refund_fields(
                order, refund.id, refund.amount, refund.status, refund.reason
            )
            try:
                await self._write(order, dict(fields, payment_status=target.value))
                break
            except ConcurrentUpdateError:
                if attempt >= REFUND_RECORD_ATTEMPTS:
                    logger.error(
                        "refund_record_failed",
                        order_id=order.id,
                        refund_id=refund.id,
                        attempts=attempt,
                    )
                    raise
                logger.warning(
                    "refund_record_conflict",
                    order_id=order.id,
                    refund_id=refund.id,
                    attempt=attempt,
                )
                attempt += 1
                order = await self._get_order(order.id)

        metrics.record_transition(current.value, target.value)
        return order, target, fields

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_webhook(self, signature: str, payload: bytes | str) -> Dict[str, bool]:
        """
        Verify and apply a Stripe webhook delivery.

        Args:
            signature: Stripe-Signature header value
            payload: Raw request body

        Returns:
            Dict[str, bool]: ``{"received": True}``

        Raises:
            InvalidSignatureError: If the signature does not verify
            PaymentPersistenceError: If the verified outcome could not be stored
        """
        event = self.webhooks.verify(payload, signature)
        logger.info("stripe_webhook_received", event_id=event.get("id"), event_type=event["type"])
        await self.webhooks.process_event(event)
        return {"received": True}

    async def _order_from_metadata(self, event: Dict[str, Any]) -> Optional[Order]:
        """Resolve ``metadata.orderId``; uncorrelated events are dead-lettered."""
        obj = event["data"]["object"]
        order_id = (obj.get("metadata") or {}).get("orderId")
        if not order_id:
            await self.dead_letters.record(event, "missing_order_id")
            return None

        order = await self.orders.find_by_id(order_id)
        if order is None:
            await self.dead_letters.record(event, "order_not_found")
        return order

    async def _transition(
        self,
        event: Dict[str, Any],
        order: Order,
        target: PaymentStatus,
        fields: Dict[str, Any],
    ) -> str:
        """
        Apply a webhook-driven transition unless the event is stale.

        Stale means older than the newest event already applied, or not a
        legal move from the order's current state.
        """
        current = coerce_status(order.payment_status)
        created = event.get("created")

        last_event_at = order.last_event_at
        if created is not None and last_event_at is not None and created < last_event_at:
            logger.warning(
                "webhook_event_stale",
                event_id=event.get("id"),
                order_id=order.id,
                event_created=created,
                last_event_at=last_event_at,
            )
            return "stale"

        if not can_transition(current, target):
            logger.warning(
                "webhook_transition_rejected",
                event_id=event.get("id"),
                order_id=order.id,
                current=current.value,
                target=target.value,
            )
            if target in MONEY_MOVEMENT_STATES:
                await self.dead_letters.record(event, "illegal_transition")
            return "stale"

        values = dict(fields, payment_status=target.value)
        if created is not None:
            values["last_event_at"] = created

        await self._write(order, values)
        metrics.record_transition(current.value, target.value)
        details = fields.get("payment_details") or fields.get("refund_details")
        await self._notify(order, target, details)
        return "processed"

    async def handle_payment_intent_succeeded(self, event: Dict[str, Any]) -> str:
        """Handle payment_intent.succeeded."""
        payment_intent = event["data"]["object"]
        order = await self._order_from_metadata(event)
        if order is None:
            return "dead_lettered"

        methods = payment_intent.get("payment_method_types") or []
        outcome = await self._transition(
            event,
            order,
            PaymentStatus.COMPLETED,
            {
                "status": OrderStatus.PROCESSING.value,
                "payment_method": methods[0] if methods else None,
                "payment_details": {
                    "payment_intent_id": payment_intent["id"],
                    "amount": from_minor_units(payment_intent.get("amount")),
                    "currency": payment_intent.get("currency"),
                },
            },
        )
        logger.info("payment_completed", order_id=order.id, outcome=outcome)
        return outcome

    async def handle_payment_intent_failed(self, event: Dict[str, Any]) -> str:
        """Handle payment_intent.payment_failed."""
        payment_intent = event["data"]["object"]
        order = await self._order_from_metadata(event)
        if order is None:
            return "dead_lettered"

        error = (payment_intent.get("last_payment_error") or {}).get("message")
        outcome = await self._transition(
            event,
            order,
            PaymentStatus.FAILED,
            {
                "payment_details": {
                    "payment_intent_id": payment_intent["id"],
                    "error": error,
                },
            },
        )
        logger.info("payment_failed", order_id=order.id, error=error, outcome=outcome)
        return outcome

    async def handle_checkout_session_completed(self, event: Dict[str, Any]) -> str:
        """Handle checkout.session.completed."""
        session = event["data"]["object"]
        order = await self._order_from_metadata(event)
        if order is None:
            return "dead_lettered"

        fields: Dict[str, Any] = {
            "status": OrderStatus.PROCESSING.value,
            "payment_method": "card",
            "payment_details": {
                "checkout_session_id": session["id"],
                "payment_intent_id": session.get("payment_intent"),
                "amount": from_minor_units(session.get("amount_total")),
                "currency": session.get("currency"),
            },
        }
        if session.get("payment_intent"):
            fields["payment_intent_id"] = session["payment_intent"]

        outcome = await self._transition(event, order, PaymentStatus.COMPLETED, fields)
        logger.info("checkout_completed", order_id=order.id, outcome=outcome)
        return outcome

    async def handle_checkout_session_expired(self, event: Dict[str, Any]) -> str:
        """Handle checkout.session.expired."""
        order = await self._order_from_metadata(event)
        if order is None:
            return "dead_lettered"

        outcome = await self._transition(event, order, PaymentStatus.EXPIRED, {})
        logger.info("checkout_expired", order_id=order.id, outcome=outcome)
        return outcome

    async def _order_for_refund(self, event: Dict[str, Any]) -> Optional[Order]:
        """Resolve a refund/charge event by metadata, then by payment intent."""
        obj = event["data"]["object"]
        order_id = (obj.get("metadata") or {}).get("orderId")
        if order_id:
            order = await self.orders.find_by_id(order_id)
            if order is None:
                await self.dead_letters.record(event, "order_not_found")
            return order

        payment_intent_id = obj.get("payment_intent")
        if not payment_intent_id:
            await self.dead_letters.record(event, "missing_order_id")
            return None

        order = await self.orders.find_by_payment_intent(payment_intent_id)
        if order is None:
            await self.dead_letters.record(event, "order_not_found")
        return order

    async def handle_refund_updated(self, event: Dict[str, Any]) -> str:
        """Handle refund.updated / charge.refund.updated."""
        refund = event["data"]["object"]
        order = await self._order_for_refund(event)
        if order is None:
            return "dead_lettered"

        if refund.get("status") not in REFUND_STATUSES:
            logger.info(
                "refund_status_unhandled",
                order_id=order.id,
                refund_status=refund.get("status"),
            )
            return "ignored"

        target, fields = self._refund_fields(
            order,
            refund["id"],
            refund.get("amount"),
            refund["status"],
            refund.get("reason"),
        )
        result = await self._transition(event, order, target, fields)
        logger.info(
            "refund_reconciled",
            order_id=order.id,
            payment_status=target.value,
            refund_status=fields["refund_status"],
            outcome=result,
        )
        return result

    async def handle_charge_refunded(self, event: Dict[str, Any]) -> str:
        """Handle charge.refunded."""
        charge = event["data"]["object"]
        order = await self._order_for_refund(event)
        if order is None:
            return "dead_lettered"

        if not charge.get("amount_refunded"):
            return "ignored"

        # A partially refunded charge keeps the order's payment status
        fully_refunded = bool(charge.get("refunded"))
        target = (
            PaymentStatus.REFUNDED if fully_refunded else coerce_status(order.payment_status)
        )
        previous = order.refund_details or {}
        result = await self._transition(
            event,
            order,
            target,
            {
                "refund_status": PaymentStatus.REFUNDED.value,
                "refund_details": {
                    "charge_id": charge["id"],
                    "amount": from_minor_units(charge.get("amount_refunded")),
                    "status": "succeeded",
                    "fully_refunded": fully_refunded,
                    "total_refunded": from_minor_units(charge.get("amount_refunded")),
                    "refunds": previous.get("refunds") or {},
                },
            },
        )
        logger.info(
            "charge_refunded",
            order_id=order.id,
            fully_refunded=fully_refunded,
            outcome=result,
        )
        return result
