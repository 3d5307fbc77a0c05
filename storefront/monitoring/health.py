"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Cache connectivity (or that it is deliberately disabled)
- Whether payments are configured
"""
from typing import Any, Dict

import structlog
from sqlalchemy import text

from storefront.core.cache import CacheStore
from storefront.core.payment_service import PaymentService
from storefront.database.connection import Database

logger = structlog.get_logger(__name__)


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Only the database is required for readiness; a missing cache or
    payment gateway is reported but does not make the service unready.
    """

    def __init__(
        self, database: Database, cache: CacheStore, payment_service: PaymentService
    ) -> None:
        self.database = database
        self.cache = cache
        self.payment_service = payment_service

    async def check_database(self) -> Dict[str, Any]:
        """Run ``SELECT 1`` against the database."""
        try:
            async with self.database.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
            return {"status": "healthy", "message": "Database connection successful"}
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            return {"status": "unhealthy", "message": f"Database check failed: {str(e)}"}

    async def check_cache(self) -> Dict[str, Any]:
        """Ping Redis, or report that caching is disabled."""
        if not self.cache.enabled:
            return {"status": "disabled", "message": "Redis URL not configured"}
        if await self.cache.ping():
            return {"status": "healthy", "message": "Redis connection successful"}
        return {"status": "unhealthy", "message": "Redis ping failed"}

    def check_payments(self) -> Dict[str, Any]:
        """Report whether the Stripe gateway is configured."""
        if self.payment_service.is_configured():
            return {"status": "healthy", "message": "Stripe configured"}
        return {"status": "disabled", "message": "Stripe secret key not configured"}

    async def check_all(self) -> Dict[str, Any]:
        """
        Check every dependency.

        Returns:
            Dict[str, Any]: ``degraded`` when an optional dependency is down
        """
        checks = {
            "database": await self.check_database(),
            "cache": await self.check_cache(),
            "payments": self.check_payments(),
        }

        if checks["database"]["status"] != "healthy":
            overall = "unhealthy"
        elif any(c["status"] == "unhealthy" for c in checks.values()):
            overall = "degraded"
        else:
            overall = "healthy"

        return {"status": overall, "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Liveness only confirms the process is serving requests."""
        return {"status": "healthy", "message": "Service is alive"}

    async def readiness(self) -> Dict[str, Any]:
        """Readiness requires the database."""
        database = await self.check_database()
        return {
            "status": database["status"],
            "checks": {"database": database},
        }
