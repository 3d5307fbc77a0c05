"""
Stripe API gateway with error classification and webhook verification.

Wraps an explicitly constructed ``stripe.StripeClient`` so no global API key
is set on the ``stripe`` module. Network retries are left to the Stripe
client's own ``max_network_retries`` policy.
"""
import json
import time
from enum import Enum
from typing import Any, Dict, List, Optional

import stripe
import structlog

from storefront.config import Settings
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class StripeErrorType(Enum):
    """Classification of Stripe errors."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RATE_LIMIT = "rate_limit"


class GatewayError(Exception):
    """Raised when a Stripe API call fails."""

    def __init__(
        self,
        message: str,
        error_type: StripeErrorType,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            original_error: Original Stripe exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


class WebhookVerificationError(Exception):
    """Raised when a webhook signature or payload cannot be trusted."""

    def __init__(self, message: str, signature_valid: bool = False):
        super().__init__(message)
        self.signature_valid = signature_valid


class StripeGateway:
    """
    Thin async wrapper over the Stripe API used by the payment service.

    Every call is timed, counted and has its Stripe exception classified
    into a GatewayError.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        api_version: Optional[str] = None,
        max_network_retries: int = 2,
        webhook_tolerance: int = 300,
        client: Optional[Any] = None,
    ) -> None:
        """
        Initialize the gateway.

        Args:
            api_key: Stripe secret key
            webhook_secret: Webhook signing secret (webhooks rejected without it)
            api_version: Stripe API version pin
            max_network_retries: Retries performed by the Stripe client
            webhook_tolerance: Accepted webhook timestamp skew in seconds
            client: Pre-built StripeClient (tests inject a mock)
        """
        self.webhook_secret = webhook_secret
        self.webhook_tolerance = webhook_tolerance
        self.client = client or stripe.StripeClient(
            api_key,
            stripe_version=api_version,
            max_network_retries=max_network_retries,
        )

        logger.info(
            "stripe_gateway_initialized",
            api_version=api_version,
            test_mode=api_key.startswith("sk_test_"),
            webhooks_enabled=webhook_secret is not None,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["StripeGateway"]:
        """Build a gateway, or return None when no secret key is configured."""
        if not settings.stripe_secret_key:
            logger.warning("stripe_not_configured")
            return None
        return cls(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            api_version=settings.stripe_api_version,
            max_network_retries=settings.stripe_max_network_retries,
            webhook_tolerance=settings.stripe_webhook_tolerance,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    async def _call(self, operation: str, coro: Any) -> Any:
        """Await a Stripe coroutine, recording metrics and translating errors."""
        start_time = time.time()
        try:
            result = await coro
        except stripe.StripeError as e:
            error_type = self._classify_error(e)
            metrics.record_stripe_api_call(operation, "error", time.time() - start_time)
            metrics.record_stripe_api_error(error_type.value)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise GatewayError(str(e), error_type=error_type, original_error=e) from e

        metrics.record_stripe_api_call(operation, "success", time.time() - start_time)
        return result

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """
        Create a Stripe PaymentIntent.

        Args:
            amount_cents: Amount in minor units
            currency: Currency code (e.g., 'usd')
            metadata: Correlation metadata (orderId, userId, ...)
            idempotency_key: Optional idempotency key

        Returns:
            stripe.PaymentIntent: Created payment intent
        """
        logger.info(
            "creating_payment_intent",
            amount_cents=amount_cents,
            currency=currency,
            order_id=metadata.get("orderId"),
        )
        params = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        return await self._call(
            "create_payment_intent",
            self.client.v1.payment_intents.create_async(params=params, options=options),
        )

    async def create_checkout_session(
        self,
        line_items: List[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> Any:
        """
        Create a hosted Checkout Session in payment mode.

        Returns:
            stripe.checkout.Session: Created session
        """
        logger.info(
            "creating_checkout_session",
            line_items=len(line_items),
            order_id=metadata.get("orderId"),
        )
        params = {
            "payment_method_types": ["card"],
            "line_items": line_items,
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        return await self._call(
            "create_checkout_session",
            self.client.v1.checkout.sessions.create_async(params=params),
        )

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Any:
        """Retrieve a PaymentIntent by ID."""
        logger.info("retrieving_payment_intent", payment_intent_id=payment_intent_id)
        return await self._call(
            "retrieve_payment_intent",
            self.client.v1.payment_intents.retrieve_async(payment_intent_id),
        )

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        """
        Create a refund for a payment.

        Args:
            payment_intent_id: Stripe PaymentIntent ID
            amount_cents: Partial refund amount; full refund when omitted
            reason: Optional refund reason
            metadata: Correlation metadata
            idempotency_key: Optional idempotency key

        Returns:
            stripe.Refund: Created refund
        """
        logger.info(
            "creating_refund",
            payment_intent_id=payment_intent_id,
            amount_cents=amount_cents,
        )
        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount_cents:
            params["amount"] = amount_cents
        if reason:
            params["reason"] = reason
        if metadata:
            params["metadata"] = metadata
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        return await self._call(
            "create_refund",
            self.client.v1.refunds.create_async(params=params, options=options),
        )

    async def create_customer(
        self, email: str, name: Optional[str], metadata: Dict[str, str]
    ) -> Any:
        """Create a Stripe customer."""
        logger.info("creating_customer", user_id=metadata.get("userId"))
        params: Dict[str, Any] = {"email": email, "metadata": metadata}
        if name:
            params["name"] = name
        return await self._call(
            "create_customer",
            self.client.v1.customers.create_async(params=params),
        )

    def construct_event(self, payload: bytes | str, signature: str) -> Dict[str, Any]:
        """
        Verify a webhook signature and decode the event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header value

        Returns:
            Dict[str, Any]: Decoded event

        Raises:
            WebhookVerificationError: If the signature or body is invalid
        """
        if not self.webhook_secret:
            raise WebhookVerificationError("Webhook signing secret not configured")

        try:
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, self.webhook_tolerance
            )
        except UnicodeDecodeError as e:
            logger.error("webhook_payload_not_utf8", error=str(e))
            raise WebhookVerificationError(f"Webhook body is not UTF-8: {str(e)}") from e
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise WebhookVerificationError(f"Invalid webhook signature: {str(e)}") from e

        try:
            event = json.loads(body)
        except ValueError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise WebhookVerificationError(
                f"Invalid webhook payload: {str(e)}", signature_valid=True
            ) from e

        if not isinstance(event, dict) or "type" not in event or "data" not in event:
            raise WebhookVerificationError(
                "Webhook payload is not a Stripe event", signature_valid=True
            )

        logger.info(
            "webhook_signature_verified",
            event_id=event.get("id"),
            event_type=event["type"],
        )
        return event
