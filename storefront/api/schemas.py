"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from storefront.core.payment_service import SUPPORTED_CURRENCIES


class PaymentConfigResponse(BaseModel):
    """Public payment configuration for the storefront."""

    enabled: bool = Field(..., description="Whether Stripe is configured")
    publishable_key: Optional[str] = Field(default=None, description="Stripe publishable key")
    supported_methods: List[str] = Field(..., description="Accepted payment method types")
    supported_currencies: List[str] = Field(..., description="Accepted currency codes")


class CreatePaymentIntentRequest(BaseModel):
    """Request schema for creating a payment intent."""

    order_id: str = Field(..., min_length=1, description="Order identifier")
    user_id: str = Field(..., min_length=1, description="Paying user")
    amount: Decimal = Field(..., gt=0, description="Amount in major units (e.g. 49.99)")
    currency: str = Field(default="usd", min_length=3, max_length=3, description="Currency code")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Extra Stripe metadata")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency against the supported list."""
        v = v.lower()
        if v not in SUPPORTED_CURRENCIES:
            raise ValueError(f"Unsupported currency. Must be one of: {SUPPORTED_CURRENCIES}")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "order_id": "ORD-42",
                    "user_id": "user_7",
                    "amount": "49.99",
                    "currency": "usd",
                }
            ]
        }
    }


class CreatePaymentIntentResponse(BaseModel):
    """Response schema for payment intent creation."""

    client_secret: str = Field(..., description="Client secret for Stripe.js")
    payment_intent_id: str = Field(..., description="Stripe PaymentIntent ID")


class CheckoutItem(BaseModel):
    """A line item to price from the catalog."""

    product_id: str = Field(..., min_length=1, description="Catalog product ID")
    quantity: int = Field(default=1, ge=1, description="Units purchased")
    price: Optional[Decimal] = Field(
        default=None, description="Price shown to the shopper (informational)"
    )


class CreateCheckoutSessionRequest(BaseModel):
    """Request schema for creating a hosted checkout session."""

    order_id: str = Field(..., min_length=1, description="Order identifier")
    user_id: str = Field(..., min_length=1, description="Paying user")
    items: List[CheckoutItem] = Field(..., min_length=1, description="Items to purchase")
    success_url: Optional[str] = Field(default=None, description="Redirect after payment")
    cancel_url: Optional[str] = Field(default=None, description="Redirect on cancel")


class CreateCheckoutSessionResponse(BaseModel):
    """Response schema for checkout session creation."""

    session_id: str = Field(..., description="Stripe Checkout Session ID")
    url: Optional[str] = Field(default=None, description="Hosted checkout URL")


class PaymentDetailsResponse(BaseModel):
    """Response schema for a retrieved payment intent."""

    id: str = Field(..., description="Stripe PaymentIntent ID")
    status: str = Field(..., description="Stripe PaymentIntent status")
    amount: float = Field(..., description="Amount in major units")
    currency: str = Field(..., description="Currency code")
    created: int = Field(..., description="Creation time (unix seconds)")


class CreateCustomerRequest(BaseModel):
    """Request schema for linking a user to a Stripe customer."""

    user_id: str = Field(..., min_length=1, description="User identifier")
    email: Optional[str] = Field(default=None, description="Overrides the stored email")
    name: Optional[str] = Field(default=None, description="Overrides the stored name")


class CreateCustomerResponse(BaseModel):
    """Response schema for customer creation."""

    customer_id: str = Field(..., description="Stripe Customer ID")
    user_id: str = Field(..., description="User identifier")


class RefundRequest(BaseModel):
    """Request schema for refunding an order."""

    amount: Optional[Decimal] = Field(
        default=None, gt=0, description="Partial refund amount (full refund if not specified)"
    )
    reason: Optional[str] = Field(
        default=None, description="Refund reason (requested_by_customer, duplicate, fraudulent)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"amount": "10.00", "reason": "requested_by_customer"},
                {"reason": "duplicate"},
            ]
        }
    }


class RefundResponse(BaseModel):
    """Response schema for refund."""

    order_id: str = Field(..., description="Order identifier")
    refund_id: str = Field(..., description="Stripe Refund ID")
    status: str = Field(..., description="Stripe refund status")
    amount: float = Field(..., description="Refunded amount in major units")
    reason: Optional[str] = Field(default=None, description="Refund reason")
    refund_status: str = Field(..., description="Order refund status after the request")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    received: bool = Field(..., description="Delivery acknowledged")


class CacheClearRequest(BaseModel):
    """Request schema for clearing cache entries."""

    tag: Optional[str] = Field(default=None, description="Invalidate every key with this tag")
    all: bool = Field(default=False, description="Flush the whole cache")


class CacheClearResponse(BaseModel):
    """Response schema for cache clearing."""

    cleared: bool = Field(..., description="Whether the backend accepted the request")
    tag: Optional[str] = Field(default=None, description="Invalidated tag, if any")


class CacheEntryResponse(BaseModel):
    """Response schema for a single cache entry."""

    key: str = Field(..., description="Cache key (without prefix)")
    value: Any = Field(default=None, description="Decoded cached value")


class DeadLetterResponse(BaseModel):
    """A dead-lettered webhook event."""

    id: int
    event_id: str
    event_type: str
    reason: str
    payload: Dict[str, Any]
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/degraded/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
