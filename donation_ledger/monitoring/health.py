"""
Health checks for readiness/liveness probes.

Readiness covers what a confirmation needs in order to commit:
- Database connectivity
- The keyed lock backend (Redis is pinged only when it is configured)

The latest reconciliation run is reported next to the probes but never makes
the service unready; a ledger discrepancy is an operator concern.
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from donation_ledger.config import Settings, get_settings
from donation_ledger.database.connection import get_session_factory
from donation_ledger.database.models import ReconciliationRun

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when a dependency probe fails."""

    pass


class HealthCheck:
    """Probes the dependencies of the confirmation path."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def check_database(self) -> Dict[str, Any]:
        """
        Run a trivial query.

        Raises:
            HealthCheckError: If the database cannot be reached
        """
        try:
            async with self.session_factory() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database unreachable: {e}") from e

        return {"status": "healthy", "service": "database"}

    async def check_lock_backend(self) -> Dict[str, Any]:
        """
        Ping Redis when confirmations lock through it.

        Raises:
            HealthCheckError: If Redis is configured and does not answer
        """
        backend = self.settings.lock_backend
        if backend != "redis":
            return {"status": "healthy", "service": "lock", "backend": backend}

        client = aioredis.from_url(self.settings.redis_url)
        try:
            await client.ping()
        except Exception as e:
            logger.error("lock_backend_health_check_failed", backend=backend, error=str(e))
            raise HealthCheckError(f"Redis unreachable: {e}") from e
        finally:
            await client.aclose()

        return {"status": "healthy", "service": "lock", "backend": backend}

    async def last_reconciliation(self) -> Dict[str, Any]:
        """Summary of the most recent reconciliation run."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(ReconciliationRun)
                .order_by(ReconciliationRun.started_at.desc(), ReconciliationRun.id.desc())
                .limit(1)
            )
            run = result.scalar_one_or_none()

        if run is None:
            return {"status": "never_run"}

        return {
            "status": run.status,
            "run_id": run.id,
            "started_at": run.started_at.isoformat(),
            "discrepancy_count": run.discrepancy_count,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run every probe; the service is healthy only if all of them pass."""
        probes: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]] = {
            "database": self.check_database,
            "lock": self.check_lock_backend,
        }
        checks: Dict[str, Any] = {}
        healthy = True

        for name, probe in probes.items():
            try:
                checks[name] = await probe()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                healthy = False

        if checks["database"]["status"] == "healthy":
            checks["reconciliation"] = await self.last_reconciliation()

        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """Process is up; no dependencies are touched."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
