"""
API routes for order payments, Stripe webhooks and cache administration.

Services are built once in the application lifespan and read from
``app.state``. PaymentError subclasses propagate to the handler registered
in ``storefront.api.main``, which maps them to their HTTP status.
"""
import secrets
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from storefront.config import Settings
from storefront.core.cache import CacheStore
from storefront.core.payment_service import PaymentService
from storefront.database.repositories import DeadLetterRepository
from storefront.monitoring.health import HealthCheck

from .schemas import (
    CacheClearRequest,
    CacheClearResponse,
    CacheEntryResponse,
    CreateCheckoutSessionRequest,
    CreateCheckoutSessionResponse,
    CreateCustomerRequest,
    CreateCustomerResponse,
    CreatePaymentIntentRequest,
    CreatePaymentIntentResponse,
    DeadLetterResponse,
    HealthCheckResponse,
    PaymentConfigResponse,
    PaymentDetailsResponse,
    RefundRequest,
    RefundResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_payment_service(request: Request) -> PaymentService:
    return request.app.state.payment_service


def get_cache(request: Request) -> CacheStore:
    return request.app.state.cache


def get_dead_letters(request: Request) -> DeadLetterRepository:
    return request.app.state.dead_letter_repository


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


def require_admin_key(request: Request) -> None:
    """Reject admin calls without the configured API key."""
    settings: Settings = request.app.state.settings
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Admin API is disabled"
        )

    supplied = request.headers.get(settings.api_key_header)
    if not supplied or not secrets.compare_digest(supplied, settings.admin_api_key):
        logger.warning("admin_api_key_rejected", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key"
        )


# ----------------------------------------------------------------------
# Payments
# ----------------------------------------------------------------------


@payment_router.get(
    "/config",
    response_model=PaymentConfigResponse,
    summary="Payment configuration",
    description="Publishable key and supported methods for the storefront",
)
async def get_payment_config(
    service: PaymentService = Depends(get_payment_service),
) -> Dict[str, Any]:
    """Public payment configuration."""
    return service.get_public_config()


@payment_router.post(
    "/intents",
    response_model=CreatePaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment intent",
    description="Create a Stripe PaymentIntent for an order; the order stays PENDING",
)
async def create_payment_intent(
    request: CreatePaymentIntentRequest,
    service: PaymentService = Depends(get_payment_service),
) -> Dict[str, Any]:
    """Create a payment intent for an order."""
    logger.info(
        "api_create_payment_intent_request",
        order_id=request.order_id,
        user_id=request.user_id,
        currency=request.currency,
    )
    return await service.create_payment_intent(
        amount=request.amount,
        order_id=request.order_id,
        user_id=request.user_id,
        currency=request.currency,
        metadata=request.metadata,
    )


@payment_router.post(
    "/checkout-sessions",
    response_model=CreateCheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a checkout session",
    description="Create a hosted Stripe Checkout Session priced from the catalog",
)
async def create_checkout_session(
    request: CreateCheckoutSessionRequest,
    service: PaymentService = Depends(get_payment_service),
) -> Dict[str, Any]:
    """Create a hosted checkout session for an order."""
    logger.info(
        "api_create_checkout_session_request",
        order_id=request.order_id,
        items=len(request.items),
    )
    return await service.create_checkout_session(
        order_id=request.order_id,
        user_id=request.user_id,
        items=[item.model_dump(exclude_none=True) for item in request.items],
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )


@payment_router.get(
    "/intents/{payment_intent_id}",
    response_model=PaymentDetailsResponse,
    summary="Get payment details",
    description="Retrieve a PaymentIntent from Stripe",
)
async def get_payment_details(
    payment_intent_id: str,
    service: PaymentService = Depends(get_payment_service),
) -> Dict[str, Any]:
    """Get payment intent details."""
    return await service.get_payment_details(payment_intent_id)


@payment_router.post(
    "/customers",
    response_model=CreateCustomerResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a customer",
    description="Create or return the Stripe customer linked to a user",
)
async def create_customer(
    request: CreateCustomerRequest,
    service: PaymentService = Depends(get_payment_service),
) -> Dict[str, Any]:
    """Link a user to a Stripe customer."""
    return await service.create_customer(
        user_id=request.user_id, email=request.email, name=request.name
    )


@payment_router.post(
    "/orders/{order_id}/refund",
    response_model=RefundResponse,
    summary="Refund an order",
    description="Create a full or partial refund for an order's payment",
)
async def refund_order(
    order_id: str,
    request: RefundRequest,
    service: PaymentService = Depends(get_payment_service),
) -> Dict[str, Any]:
    """Refund an order."""
    logger.info(
        "api_refund_request",
        order_id=order_id,
        amount=str(request.amount) if request.amount is not None else None,
        reason=request.reason,
    )
    refund = await service.refund_payment(
        order_id=order_id, amount=request.amount, reason=request.reason
    )
    return {
        "order_id": refund.order_id,
        "refund_id": refund.refund_id,
        "status": refund.status,
        "amount": refund.amount,
        "reason": refund.reason,
        "refund_status": refund.refund_status,
    }


# ----------------------------------------------------------------------
# Webhooks
# ----------------------------------------------------------------------


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify and apply Stripe webhook events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    service: PaymentService = Depends(get_payment_service),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Verification and processing errors surface as non-2xx responses so
    Stripe redelivers; events that cannot be matched to an order are
    dead-lettered and acknowledged.
    """
    if not stripe_signature:
        logger.warning("api_webhook_missing_signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Missing Stripe-Signature header"
        )

    # Signature verification needs the exact bytes Stripe sent
    body = await request.body()
    return await service.handle_webhook(stripe_signature, body)


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------


@admin_router.get(
    "/cache/stats",
    summary="Cache statistics",
    dependencies=[Depends(require_admin_key)],
)
async def cache_stats(cache: CacheStore = Depends(get_cache)) -> Dict[str, Any]:
    """Summarize the cache backend."""
    return await cache.get_stats()


@admin_router.post(
    "/cache/clear",
    response_model=CacheClearResponse,
    summary="Clear cache",
    description="Invalidate a tag, or flush everything with ``all``",
    dependencies=[Depends(require_admin_key)],
)
async def clear_cache(
    request: CacheClearRequest,
    cache: CacheStore = Depends(get_cache),
) -> Dict[str, Any]:
    """Invalidate a tag or flush the cache."""
    if request.tag:
        cleared = await cache.invalidate_tag(request.tag)
        logger.info("api_cache_tag_cleared", tag=request.tag, cleared=cleared)
        return {"cleared": cleared, "tag": request.tag}

    if request.all:
        cleared = await cache.clear()
        logger.warning("api_cache_flushed", cleared=cleared)
        return {"cleared": cleared, "tag": None}

    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail="Provide a tag or set all to true",
    )


@admin_router.get(
    "/cache/entries/{key:path}",
    response_model=CacheEntryResponse,
    summary="Read a cache entry",
    dependencies=[Depends(require_admin_key)],
)
async def get_cache_entry(key: str, cache: CacheStore = Depends(get_cache)) -> Dict[str, Any]:
    """Read one cached value."""
    value = await cache.get(key)
    if value is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cache entry not found")
    return {"key": key, "value": value}


@admin_router.delete(
    "/cache/entries/{key:path}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a cache entry",
    dependencies=[Depends(require_admin_key)],
)
async def delete_cache_entry(key: str, cache: CacheStore = Depends(get_cache)) -> Response:
    """Delete one cached value."""
    await cache.delete(key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@admin_router.get(
    "/webhooks/dead-letters",
    response_model=List[DeadLetterResponse],
    summary="List dead-lettered webhook events",
    dependencies=[Depends(require_admin_key)],
)
async def list_dead_letters(
    limit: int = Query(default=50, ge=1, le=500),
    repository: DeadLetterRepository = Depends(get_dead_letters),
) -> List[DeadLetterResponse]:
    """Newest dead-lettered events first."""
    records = await repository.list_recent(limit=limit)
    return [DeadLetterResponse.model_validate(record) for record in records]


# ----------------------------------------------------------------------
# Monitoring
# ----------------------------------------------------------------------


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
