"""
Health checks behind the liveness and readiness endpoints.

Readiness gates traffic on the database alone. The full report adds the
state of the settlement pipeline: the last reconciliation run and the
outbox backlog. A stale or failed reconciliation, or a growing backlog,
marks the service ``degraded`` without taking it out of rotation.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.database.connection import get_session_factory
from commission_engine.database.models import OutboxEvent, ReconciliationRun

logger = structlog.get_logger(__name__)

# Scheduled daily, so anything older than a day plus slack is overdue
RECONCILIATION_MAX_AGE = timedelta(hours=26)
OUTBOX_BACKLOG_WARNING = 1000


class HealthCheckError(Exception):
    """Raised when a dependency is unreachable."""

    pass


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class HealthCheck:
    """Dependency and pipeline health for the settlement engine."""

    def __init__(self, session_factory: Optional[Callable[[], AsyncSession]] = None):
        self.session_factory = session_factory

    def _sessions(self) -> Callable[[], AsyncSession]:
        return self.session_factory or get_session_factory()

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If the database cannot be queried
        """
        try:
            async with self._sessions()() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

        return {"status": "healthy", "service": "database"}

    async def check_pipeline(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Report the last reconciliation run and the outbox backlog.

        Args:
            now: Clock override

        Returns:
            Dict[str, Any]: ``healthy`` or ``degraded`` with the findings
        """
        now = now or datetime.now(timezone.utc)
        async with self._sessions()() as db:
            last_run = await db.scalar(
                select(ReconciliationRun).order_by(ReconciliationRun.id.desc()).limit(1)
            )
            backlog = await db.scalar(
                select(func.count(OutboxEvent.id)).where(OutboxEvent.published.is_(False))
            )

        problems = []
        reconciliation: Dict[str, Any] = {"last_run": None}
        if last_run is None:
            problems.append("reconciliation_never_ran")
        else:
            started_at = _as_utc(last_run.started_at)
            reconciliation = {
                "last_run": last_run.id,
                "status": last_run.status,
                "started_at": started_at.isoformat(),
                "creators_drifted": last_run.creators_drifted,
            }
            if last_run.status == "failed":
                problems.append("reconciliation_failed")
            if now - started_at > RECONCILIATION_MAX_AGE:
                problems.append("reconciliation_overdue")

        backlog = backlog or 0
        if backlog >= OUTBOX_BACKLOG_WARNING:
            problems.append("outbox_backlog")

        if problems:
            logger.warning("settlement_pipeline_degraded", problems=problems, outbox_backlog=backlog)

        return {
            "status": "degraded" if problems else "healthy",
            "service": "pipeline",
            "problems": problems,
            "reconciliation": reconciliation,
            "outbox_backlog": backlog,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Database and pipeline checks combined.

        ``unhealthy`` if the database is down, ``degraded`` if only the
        pipeline reports problems.
        """
        try:
            database = await self.check_database()
        except HealthCheckError as e:
            return {
                "status": "unhealthy",
                "checks": {"database": {"status": "unhealthy", "service": "database", "error": str(e)}},
            }

        pipeline = await self.check_pipeline()
        return {
            "status": pipeline["status"],
            "checks": {"database": database, "pipeline": pipeline},
        }

    async def liveness(self) -> Dict[str, Any]:
        """The process is up. No dependency checks."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        """Ready when the database answers."""
        try:
            database = await self.check_database()
        except HealthCheckError as e:
            return {"status": "unhealthy", "checks": {"database": {"error": str(e)}}}
        return {"status": "healthy", "checks": {"database": database}}
