"""
Scheduler Service

Runs the periodic publication reconciliation sweep (services.watchdog_service).

Single-leader election via Postgres advisory locks:
- Only the instance that acquires the lock executes the tick
- Other instances silently skip
- Controlled by SCHEDULER_ENABLED env (default: true)
"""
from __future__ import annotations

import logging
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

from postflow.services.publication_queue import PublishQueue
from postflow.services.watchdog_service import reconcile_publications
from postflow.settings import get_settings

logger = logging.getLogger("scheduler")

# Advisory lock key (arbitrary int64, unique per job type)
LOCK_RECONCILE_PUBLICATIONS = 910_001


class SchedulerService:
    """Periodic jobs for the API process.

    Uses Postgres pg_try_advisory_lock on each tick so that only
    one backend instance (the leader) executes the job while
    other instances skip silently.
    """

    _instance: "SchedulerService | None" = None

    def __init__(self, queue: PublishQueue | None = None):
        self.scheduler = AsyncIOScheduler()
        self._engine: AsyncEngine | None = None
        self._queue = queue
        self._running = False

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def configure(self, database_url: str):
        self._engine = create_async_engine(database_url, echo=False)

    def _get_engine(self) -> AsyncEngine:
        if self._engine is None:
            self.configure(get_settings().async_database_url)
        return self._engine

    async def _try_advisory_lock(self, session: AsyncSession, lock_key: int) -> bool:
        """Try to acquire a Postgres session-level advisory lock (non-blocking).

        Non-Postgres databases (local SQLite) have a single instance, which is always leader.
        """
        if session.bind.dialect.name != "postgresql":
            return True
        result = await session.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": lock_key})
        return bool(result.scalar())

    async def _release_advisory_lock(self, session: AsyncSession, lock_key: int):
        if session.bind.dialect.name != "postgresql":
            return
        await session.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": lock_key})

    def start(self):
        """Start the scheduler (respects SCHEDULER_ENABLED env)."""
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler DISABLED by SCHEDULER_ENABLED=false, skipping start")
            return
        if self._running:
            return

        self.scheduler.add_job(
            self.run_reconcile,
            IntervalTrigger(minutes=settings.reconcile_interval_minutes),
            id="reconcile_publications",
            name="Reconcile orphaned / stuck publications",
            replace_existing=True,
        )
        self.scheduler.start()
        self._running = True
        logger.info("Scheduler started (single-leader mode via advisory locks)")

    def stop(self):
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    async def run_reconcile(self, *, dry_run: bool = False) -> dict[str, Any] | None:
        """Protected by advisory lock, only one instance executes per tick."""
        # session-level advisory locks belong to a connection; pin one for lock, work and unlock
        async with self._get_engine().connect() as conn, AsyncSession(bind=conn, expire_on_commit=False) as session:
            acquired = await self._try_advisory_lock(session, LOCK_RECONCILE_PUBLICATIONS)
            if not acquired:
                logger.debug("[reconcile] Advisory lock not acquired, another instance is leader, skipping tick")
                return None
            try:
                logger.info("[reconcile] LEADER, reconciling publications")
                return await reconcile_publications(session, self._queue or PublishQueue(), dry_run=dry_run)
            finally:
                await self._release_advisory_lock(session, LOCK_RECONCILE_PUBLICATIONS)
