"""
Stripe webhook handler with signature verification and event deduplication.

Implements:
- Webhook signature verification through the Stripe gateway
- Event deduplication using the cache store
- Event type routing to registered handlers
"""
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from storefront.core.cache import CacheStore
from storefront.core.exceptions import (
    InvalidPayloadError,
    InvalidSignatureError,
    PaymentNotConfiguredError,
)
from storefront.integrations.stripe_client import StripeGateway, WebhookVerificationError
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[str]]


class WebhookHandler:
    """
    Routes verified Stripe events to registered handlers.

    Handlers receive the whole decoded event and return an outcome label
    (``processed``, ``stale``, ``dead_lettered``) used for metrics. Events
    without a handler are acknowledged and ignored.
    """

    def __init__(
        self,
        gateway: Optional[StripeGateway],
        cache: CacheStore,
        dedup_ttl: int = 86400 * 7,  # 7 days
    ):
        """
        Initialize webhook handler.

        Args:
            gateway: Stripe gateway used for signature verification
            cache: Cache store remembering processed event ids
            dedup_ttl: How long processed event ids are remembered
        """
        self.gateway = gateway
        self.cache = cache
        self.dedup_ttl = dedup_ttl
        self.event_handlers: Dict[str, EventHandler] = {}

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Stripe event type (e.g., 'payment_intent.succeeded')
            handler: Async callable taking the decoded event
        """
        self.event_handlers[event_type] = handler
        logger.debug("webhook_handler_registered", event_type=event_type)

    def verify(self, payload: bytes | str, signature: str) -> Dict[str, Any]:
        """
        Verify webhook signature and decode the event.

        Raises:
            PaymentNotConfiguredError: If Stripe is not configured
            InvalidSignatureError: If the signature does not match
            InvalidPayloadError: If a correctly signed body is not an event
        """
        if self.gateway is None:
            raise PaymentNotConfiguredError()

        try:
            return self.gateway.construct_event(payload, signature)
        except WebhookVerificationError as e:
            if e.signature_valid:
                raise InvalidPayloadError(str(e)) from e
            raise InvalidSignatureError(str(e)) from e

    @staticmethod
    def _dedup_key(event_id: str) -> str:
        return f"webhook:processed:{event_id}"

    async def is_event_processed(self, event_id: str) -> bool:
        """Check whether the event was already applied. False when the cache is off."""
        return await self.cache.get(self._dedup_key(event_id)) is not None

    async def mark_event_processed(self, event_id: str) -> None:
        """Remember a processed event id."""
        await self.cache.set(self._dedup_key(event_id), True, ttl=self.dedup_ttl)

    async def process_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process a verified webhook event.

        Handler exceptions are logged and re-raised so the caller answers
        with a non-2xx status and Stripe redelivers the event.

        Returns:
            Dict[str, Any]: Processing result
        """
        event_id = event.get("id", "")
        event_type = event["type"]
        start_time = time.time()

        if event_id and await self.is_event_processed(event_id):
            logger.info(
                "webhook_event_already_processed",
                event_id=event_id,
                event_type=event_type,
            )
            metrics.record_webhook_event(event_type, "duplicate", time.time() - start_time)
            return {"status": "duplicate", "event_id": event_id, "event_type": event_type}

        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.debug("webhook_event_ignored", event_id=event_id, event_type=event_type)
            metrics.record_webhook_event(event_type, "ignored", time.time() - start_time)
            return {"status": "ignored", "event_id": event_id, "event_type": event_type}

        try:
            outcome = await handler(event)
        except Exception as e:
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
            )
            metrics.record_webhook_event(event_type, "failed", time.time() - start_time)
            raise

        if event_id:
            await self.mark_event_processed(event_id)

        logger.info(
            "webhook_event_processed",
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
        )
        metrics.record_webhook_event(event_type, outcome, time.time() - start_time)
        return {"status": outcome, "event_id": event_id, "event_type": event_type}
