"""
Health check endpoints for readiness/liveness probes.

Checks:
- Database connectivity
- Payment gateway circuit breaker state
- Settlement poller activity
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Gateway availability as seen by the circuit breaker
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: Optional[Any] = None,
        poller: Optional[Any] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            session_factory: Session factory of the ledger database
            gateway: Optional PayNecta client whose circuit breaker is reported
            poller: Optional settlement poller whose active polls are reported
        """
        self.session_factory = session_factory
        self.gateway = gateway
        self.poller = poller

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                # Simple query to check connectivity
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

    def check_gateway(self) -> Dict[str, Any]:
        """
        Report the gateway circuit breaker state.

        An open circuit means recent calls kept failing.

        Raises:
            HealthCheckError: If the circuit is open
        """
        if self.gateway is None:
            return {"status": "healthy", "service": "paynecta", "message": "Not configured"}

        state = self.gateway.circuit_breaker.state
        if state == "open":
            raise HealthCheckError("PayNecta circuit breaker is open")
        return {"status": "healthy", "service": "paynecta", "circuit_breaker": state}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
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
            checks["paynecta"] = self.check_gateway()
        except HealthCheckError as e:
            checks["paynecta"] = {
                "status": "unhealthy",
                "service": "paynecta",
                "error": str(e),
            }
            all_healthy = False

        if self.poller is not None:
            checks["settlement_poller"] = {
                "status": "healthy",
                "active_polls": len(self.poller.active_references()),
            }

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Simple check that the application is running.
        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: only the database must be reachable to take traffic."""
        try:
            database = await self.check_database()
        except HealthCheckError as e:
            return {"status": "unhealthy", "checks": {"database": {"error": str(e)}}}
        return {"status": "healthy", "checks": {"database": database}}
