"""Core payment reconciliation and cache logic."""
from .exceptions import PaymentError
from .states import OrderStatus, PaymentStatus

__all__ = ["OrderStatus", "PaymentError", "PaymentStatus"]
