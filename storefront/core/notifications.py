"""
Notification fan-out and dead-letter sink used after webhook processing.

The marketplace delivers user-facing notifications (email, WebSocket)
elsewhere; the payment core only needs something to hand transitions to.
"""
from typing import Any, Dict, Optional

import structlog

from storefront.database.repositories import DeadLetterRepository
from storefront.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class LoggingNotifier:
    """Default notifier: emits one structured log line per transition."""

    async def payment_status_changed(
        self,
        order_id: str,
        user_id: str,
        payment_status: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Announce a committed payment or refund transition."""
        logger.info(
            "order_payment_notification",
            order_id=order_id,
            user_id=user_id,
            payment_status=payment_status,
            details=details or {},
        )


class DeadLetterSink:
    """
    Records verified webhook events that cannot be applied to any order.

    Each event is stored, counted and logged at error level so a missing
    correlation id never disappears into an info log.
    """

    def __init__(self, repository: DeadLetterRepository):
        self.repository = repository

    async def record(self, event: Dict[str, Any], reason: str) -> None:
        """
        Dead-letter an event.

        Args:
            event: Decoded Stripe event
            reason: Why it could not be applied (missing_order_id, order_not_found)
        """
        event_id = event.get("id") or "unknown"
        event_type = event.get("type") or "unknown"

        await self.repository.add(
            event_id=event_id,
            event_type=event_type,
            reason=reason,
            payload=event,
        )
        metrics.record_dead_letter(event_type, reason)
        logger.error(
            "webhook_event_dead_lettered",
            event_id=event_id,
            event_type=event_type,
            reason=reason,
        )
