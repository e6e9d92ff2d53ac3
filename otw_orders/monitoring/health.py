"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Redis connectivity (webhook deduplication)
- Stripe API reachability
"""
import asyncio
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import stripe
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from otw_orders.config import Settings, get_settings
from otw_orders.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Redis is reported but does not make the service unready: webhook
    deduplication degrades to processing every delivery.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        redis_client: aioredis.Redis | None = None
        try:
            redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await redis_client.ping()
        except Exception as e:
            logger.warning("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")
        finally:
            if redis_client is not None:
                await redis_client.aclose()

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_stripe(self) -> Dict[str, Any]:
        """
        Check Stripe API reachability.

        Raises:
            HealthCheckError: If Stripe is not configured or unreachable
        """
        if not self.settings.stripe_secret_key:
            raise HealthCheckError("Stripe secret key is not configured")

        try:
            loop = asyncio.get_running_loop()
            await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    lambda: stripe.checkout.Session.list(
                        limit=1, api_key=self.settings.stripe_secret_key
                    ),
                ),
                timeout=self.settings.stripe_timeout_seconds,
            )
        except Exception as e:
            logger.error("stripe_health_check_failed", error=str(e))
            raise HealthCheckError(f"Stripe health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "stripe",
            "message": "Stripe API connection successful",
            "test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check, required in (
            ("database", self.check_database, True),
            ("redis", self.check_redis, False),
            ("stripe", self.check_stripe, True),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy" if required else "degraded",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = all_healthy and not required

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all required dependencies are available."""
        return await self.check_all()
