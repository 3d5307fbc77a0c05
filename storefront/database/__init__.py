"""Database package for the storefront payment core."""
from .connection import Database
from .models import Base, Order, Product, User, WebhookDeadLetter
from .repositories import (
    DeadLetterRepository,
    OrderRepository,
    ProductRepository,
    UserRepository,
)

__all__ = [
    "Base",
    "Database",
    "DeadLetterRepository",
    "Order",
    "OrderRepository",
    "Product",
    "ProductRepository",
    "User",
    "UserRepository",
    "WebhookDeadLetter",
]
