"""SQLAlchemy database models for the marketplace payment core."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests and local runs)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Orders table.

    Rows are created by the order placement flow. The payment core only
    touches the payment, refund and concurrency columns.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    total_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    payment_status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="PENDING", index=True
    )
    payment_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    checkout_session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    refund_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    refund_details: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_event_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("idx_orders_user_payment_status", "user_id", "payment_status"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, payment_status={self.payment_status}, "
            f"status={self.status}, version={self.version})>"
        )


class Product(Base):
    """Catalog products. Read-only from the payment core."""

    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    images: Mapped[List[str] | None] = mapped_column(JSONType, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    def __repr__(self) -> str:
        """String representation of Product."""
        return f"<Product(id={self.id}, name={self.name}, price={self.price})>"


class User(Base):
    """Marketplace users. Only the Stripe customer link is written here."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        """String representation of User."""
        return f"<User(id={self.id}, email={self.email})>"


class WebhookDeadLetter(Base):
    """
    Verified webhook events that could not be applied to an order.

    Immutable once written; reviewed by operators.
    """

    __tablename__ = "webhook_dead_letters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    def __repr__(self) -> str:
        """String representation of WebhookDeadLetter."""
        return (
            f"<WebhookDeadLetter(id={self.id}, event_id={self.event_id}, "
            f"reason={self.reason})>"
        )
