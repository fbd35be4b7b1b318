"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Gateway registry (at least one usable gateway)
"""
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_orchestrator.database.connection import get_session_factory

if TYPE_CHECKING:
    from payment_orchestrator.gateways.registry import GatewayRegistry

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Gateway configuration report
    - Overall system health status
    """

    def __init__(
        self,
        registry: Optional["GatewayRegistry"] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            registry: Gateway registry to report on
            session_factory: Session factory used for the database ping
        """
        self.registry = registry
        self.session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self.session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    def check_gateways(self) -> Dict[str, Any]:
        """
        Report which gateways are usable.

        Raises:
            HealthCheckError: If no gateway is usable
        """
        if self.registry is None:
            raise HealthCheckError("Gateway registry not initialized")

        available = self.registry.available()
        misconfigured = self.registry.misconfigured()
        if not available:
            logger.error("gateway_health_check_failed", misconfigured=misconfigured)
            raise HealthCheckError("No payment gateway is configured")

        return {
            "status": "healthy",
            "service": "gateways",
            "available": available,
            "misconfigured": misconfigured,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        try:
            checks["gateways"] = self.check_gateways()
        except HealthCheckError as e:
            checks["gateways"] = {
                "status": "unhealthy",
                "service": "gateways",
                "error": str(e),
            }
            all_healthy = False

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
        """
        Readiness probe.

        Checks if application is ready to accept traffic.
        """
        return await self.check_all()
