"""
Health checks for the kiosk's dependencies.

Checks:
- Local database connectivity
- Backend reachability
"""
from typing import Any, Dict

import structlog

from kiosk_core.database import Database
from kiosk_core.integrations.backend_client import BackendClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for the kiosk's dependencies.

    Provides:
    - Database connectivity check
    - Backend health endpoint check
    - Overall status
    """

    def __init__(self, database: Database, backend: BackendClient):
        """
        Initialize health check service.

        Args:
            database: Local state database
            backend: Kiosk backend client
        """
        self.database = database
        self.backend = backend

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            await self.database.ping()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_backend(self) -> Dict[str, Any]:
        """
        Check the backend health endpoint.

        Returns:
            Dict[str, Any]: Backend health status

        Raises:
            HealthCheckError: If the backend is not healthy
        """
        if not await self.backend.check_health():
            logger.error("backend_health_check_failed", base_url=self.backend.base_url)
            raise HealthCheckError(f"Backend at {self.backend.base_url} is not healthy")

        return {
            "status": "healthy",
            "service": "backend",
            "message": "Backend reachable",
            "base_url": self.backend.base_url,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("backend", self.check_backend),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness check.

        Does not check external dependencies.

        Returns:
            Dict[str, Any]: Liveness status
        """
        return {
            "status": "alive",
            "message": "Kiosk core is running",
        }
