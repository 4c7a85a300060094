"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- Job backlog (pending jobs, informational)
"""
from typing import Any, Dict

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_events.core.jobs import JobQueue

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the core's dependencies."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], jobs: JobQueue):
        self.session_factory = session_factory
        self.jobs = jobs

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
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

    async def check_jobs(self) -> Dict[str, Any]:
        """Report the pending job backlog. A backlog never makes the service unhealthy."""
        try:
            pending = await self.jobs.pending_count()
        except Exception as e:
            logger.error("job_backlog_check_failed", error=str(e))
            raise HealthCheckError(f"Job backlog check failed: {str(e)}")

        return {"status": "healthy", "service": "jobs", "pending": pending}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("jobs", self.check_jobs)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Application is running; no dependency checks."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
