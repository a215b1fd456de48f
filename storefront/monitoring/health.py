"""
Health check endpoints for Kubernetes readiness and liveness checks.

Checks:
- Database connectivity
- Redis connectivity (only when REDIS_URL is configured)
- Loaded payment gateways
"""
from typing import Any, Callable, Dict, Iterable, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from storefront.config import get_settings
from storefront.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Args:
        gateway_codes: Callable returning the codes of loaded gateways
    """

    def __init__(self, gateway_codes: Optional[Callable[[], Iterable[str]]] = None) -> None:
        self.settings = get_settings()
        self.gateway_codes = gateway_codes

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except (SQLAlchemyError, OSError) as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e

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
        if not self.settings.redis_url:
            return {"status": "skipped", "service": "redis", "message": "Redis not configured"}

        redis_client = aioredis.from_url(
            self.settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await redis_client.ping()
        except (RedisError, OSError) as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}") from e
        finally:
            await redis_client.aclose()

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_gateways(self) -> Dict[str, Any]:
        """
        Report loaded gateways.

        No gateway loaded means gateway checkout is impossible; balance
        checkout still works, so this degrades rather than fails readiness.
        """
        codes = sorted(self.gateway_codes()) if self.gateway_codes else []
        return {
            "status": "healthy" if codes else "degraded",
            "service": "gateways",
            "gateways": codes,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("redis", self.check_redis)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        checks["gateways"] = await self.check_gateways()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness endpoint: all dependencies must be available."""
        return await self.check_all()
