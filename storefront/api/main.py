"""
Main FastAPI application.

Order payment API with:
- CORS configuration
- Error handling mapped from the payment exception hierarchy
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront import __version__
from storefront.config import Settings, get_settings
from storefront.core.cache import CacheStore
from storefront.core.exceptions import PaymentError
from storefront.core.notifications import DeadLetterSink, LoggingNotifier
from storefront.core.payment_service import PaymentService
from storefront.database.connection import Database
from storefront.database.repositories import (
    DeadLetterRepository,
    OrderRepository,
    ProductRepository,
    UserRepository,
)
from storefront.integrations.stripe_client import StripeGateway
from storefront.monitoring.health import HealthCheck
from storefront.monitoring.logging import setup_logging

from .routes import admin_router, monitoring_router, payment_router, webhook_router

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[StripeGateway] = None,
    cache: Optional[CacheStore] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Application settings (defaults to the environment)
        gateway: Pre-built Stripe gateway; built from settings when omitted
        cache: Pre-built cache store; built from settings when omitted

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Constructs every client and service once and tears them down on
        shutdown.
        """
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            payments_enabled=settings.payments_enabled,
            cache_enabled=settings.cache_enabled,
            test_mode=settings.is_test_mode,
        )

        database = Database.from_settings(settings)
        try:
            await database.create_all()
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

        cache_store = cache if cache is not None else CacheStore.from_settings(settings)
        stripe_gateway = gateway if gateway is not None else StripeGateway.from_settings(settings)

        dead_letter_repository = DeadLetterRepository(database.session_factory)
        payment_service = PaymentService(
            gateway=stripe_gateway,
            orders=OrderRepository(database.session_factory),
            products=ProductRepository(database.session_factory),
            users=UserRepository(database.session_factory),
            cache=cache_store,
            dead_letters=DeadLetterSink(dead_letter_repository),
            notifier=LoggingNotifier(),
            frontend_url=settings.frontend_url,
            publishable_key=settings.stripe_publishable_key,
            webhook_dedup_ttl=settings.webhook_dedup_ttl,
        )

        app.state.settings = settings
        app.state.database = database
        app.state.cache = cache_store
        app.state.dead_letter_repository = dead_letter_repository
        app.state.payment_service = payment_service
        app.state.health_check = HealthCheck(database, cache_store, payment_service)

        yield

        logger.info("application_shutdown")
        try:
            await cache_store.close()
            await database.close()
            logger.info("connections_closed")
        except Exception as e:
            logger.error("shutdown_error", error=str(e))

    app = FastAPI(
        title="Storefront Payments",
        description=(
            "Order payment adapter over Stripe with webhook reconciliation, "
            "refunds and a tag-invalidated Redis cache."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PaymentError)
    async def payment_exception_handler(request: Request, exc: PaymentError) -> JSONResponse:
        """Translate payment exceptions to their HTTP status."""
        log = logger.error if exc.http_status >= 500 else logger.warning
        log(
            "payment_error",
            error=exc.message,
            error_type=type(exc).__name__,
            http_status=exc.http_status,
            path=request.url.path,
            **exc.context,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled exceptions.
        """
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.include_router(payment_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "payments_enabled": settings.payments_enabled,
            "cache_enabled": settings.cache_enabled,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "storefront.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
