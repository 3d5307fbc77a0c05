"""
Repositories over the order ledger and its neighbouring tables.

Each method runs in its own short transaction. Order writes are
conditional on the version read by the caller.
"""
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.exceptions import ConcurrentUpdateError
from storefront.database.models import Order, Product, User, WebhookDeadLetter

logger = structlog.get_logger(__name__)


class OrderRepository:
    """Reads and conditionally updates Order rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_by_id(self, order_id: str) -> Optional[Order]:
        """Load an order by primary key."""
        async with self.session_factory() as session:
            return await session.get(Order, order_id)

    async def find_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        """Load the order correlated with a Stripe PaymentIntent."""
        async with self.session_factory() as session:
            stmt = select(Order).where(Order.payment_intent_id == payment_intent_id).limit(1)
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def update_fields(
        self, order_id: str, expected_version: int, fields: Dict[str, Any]
    ) -> int:
        """
        Write fields if the order is still at ``expected_version``.

        Args:
            order_id: Order identifier
            expected_version: Version observed when the order was read
            fields: Column values to write

        Returns:
            int: The order's new version

        Raises:
            ConcurrentUpdateError: If another writer got there first
        """
        new_version = expected_version + 1
        stmt = (
            update(Order)
            .where(Order.id == order_id, Order.version == expected_version)
            .values(**fields, version=new_version)
        )

        async with self.session_factory.begin() as session:
            result = await session.execute(stmt)

        if result.rowcount == 0:
            logger.warning(
                "order_version_conflict",
                order_id=order_id,
                expected_version=expected_version,
            )
            raise ConcurrentUpdateError(order_id, expected_version)

        logger.debug(
            "order_updated",
            order_id=order_id,
            version=new_version,
            fields=sorted(fields),
        )
        return new_version


class ProductRepository:
    """Read-only product catalog access."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_by_id(self, product_id: str) -> Optional[Product]:
        """Load a product by primary key."""
        async with self.session_factory() as session:
            return await session.get(Product, product_id)


class UserRepository:
    """User lookups and Stripe customer linkage."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def find_by_id(self, user_id: str) -> Optional[User]:
        """Load a user by primary key."""
        async with self.session_factory() as session:
            return await session.get(User, user_id)

    async def update_fields(self, user_id: str, fields: Dict[str, Any]) -> None:
        """Write user columns."""
        stmt = update(User).where(User.id == user_id).values(**fields)
        async with self.session_factory.begin() as session:
            await session.execute(stmt)


class DeadLetterRepository:
    """Append-only store for webhook events that could not be applied."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(
        self,
        event_id: str,
        event_type: str,
        reason: str,
        payload: Dict[str, Any],
    ) -> WebhookDeadLetter:
        """Persist a dead-lettered event."""
        record = WebhookDeadLetter(
            event_id=event_id,
            event_type=event_type,
            reason=reason,
            payload=payload,
        )
        async with self.session_factory.begin() as session:
            session.add(record)
        return record

    async def list_recent(self, limit: int = 50) -> List[WebhookDeadLetter]:
        """Newest dead letters first."""
        async with self.session_factory() as session:
            stmt = (
                select(WebhookDeadLetter)
                .order_by(WebhookDeadLetter.id.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())
