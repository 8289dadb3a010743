"""
Scheduler Service

Periodic triggers for the pipeline:
- publishing sweep (every PUBLISH_SWEEP_INTERVAL_MINUTES)
- monthly usage reset (00:00 UTC on the 1st)
- watchdog for stuck work (every WATCHDOG_INTERVAL_MINUTES)

Single-leader election via Postgres advisory locks:
- Only the instance that acquires the lock executes the tick
- Other instances silently skip
- On other databases (local SQLite) every tick runs
- Controlled by SCHEDULER_ENABLED env (default: true)
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clipforge.errors import NotFound
from clipforge.settings import get_settings

logger = logging.getLogger("scheduler")

# Advisory lock keys (arbitrary int64, unique per job type)
LOCK_PUBLISH_SWEEP = 910_001
LOCK_MONTHLY_RESET = 910_002
LOCK_WATCHDOG = 910_003


class SchedulerService:
    """Owns the AsyncIOScheduler and the leader-guarded job bodies."""

    _instance: "SchedulerService | None" = None

    def __init__(self):
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._session_factory: async_sessionmaker | None = None
        self._running = False

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def configure(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    def _get_session(self) -> AsyncSession:
        if not self._session_factory:
            from clipforge.db import AsyncSessionLocal

            self._session_factory = AsyncSessionLocal
        return self._session_factory()

    @staticmethod
    def _uses_advisory_locks(session: AsyncSession) -> bool:
        return session.bind is not None and session.bind.dialect.name == "postgresql"

    @asynccontextmanager
    async def _leader(self, session: AsyncSession, lock_key: int, job: str) -> AsyncIterator[bool]:
        """Yield True when this instance should run the tick.

        The lock is held on its own connection for the whole tick, so the
        job's session can commit and return connections to the pool freely.
        """
        if not self._uses_advisory_locks(session):
            yield True
            return
        async with session.bind.connect() as lock_conn:
            acquired = bool(
                (await lock_conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": lock_key})).scalar()
            )
            if not acquired:
                logger.debug(f"[{job}] advisory lock not acquired, another instance is leader; skipping tick")
                yield False
                return
            try:
                logger.info(f"[{job}] LEADER")
                yield True
            finally:
                await lock_conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": lock_key})

    def start(self):
        """Start the scheduler (respects SCHEDULER_ENABLED env)."""
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler DISABLED by SCHEDULER_ENABLED=false, skipping start")
            return
        if self._running:
            return

        self.scheduler.add_job(
            self._run_publish_sweep,
            IntervalTrigger(minutes=settings.publish_sweep_interval_minutes),
            id="publish_sweep",
            name="Publish due scheduled posts",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._run_monthly_reset,
            CronTrigger(day=1, hour=0, minute=0, timezone="UTC"),
            id="monthly_usage_reset",
            name="Reset monthly usage counters",
            replace_existing=True,
        )
        if settings.watchdog_enabled:
            self.scheduler.add_job(
                self._run_watchdog,
                IntervalTrigger(minutes=settings.watchdog_interval_minutes),
                id="watchdog",
                name="Fail stuck contents, clips and posts",
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

    async def _run_publish_sweep(self) -> dict[str, Any] | None:
        async with self._get_session() as session:
            async with self._leader(session, LOCK_PUBLISH_SWEEP, "publish_sweep") as leader:
                if not leader:
                    return None
                from clipforge.services.publishing_scheduler import run_publishing_sweep

                result = await run_publishing_sweep(session)
                logger.info(
                    "[publish_sweep] Completed: %d processed, %d published, %d failed",
                    result["processed"], result["published"], result["failed"],
                )
                return result

    async def _run_monthly_reset(self) -> dict[str, Any] | None:
        async with self._get_session() as session:
            async with self._leader(session, LOCK_MONTHLY_RESET, "monthly_usage_reset") as leader:
                if not leader:
                    return None
                from clipforge.services.quota_ledger import reset_monthly_usage

                result = await reset_monthly_usage(session)
                logger.info("[monthly_usage_reset] Completed: %d counters reset", result["reset"])
                return result

    async def _run_watchdog(self) -> dict[str, Any] | None:
        async with self._get_session() as session:
            async with self._leader(session, LOCK_WATCHDOG, "watchdog") as leader:
                if not leader:
                    return None
                from clipforge.services.watchdog_service import run_watchdog

                return await run_watchdog(session)

    def get_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = job.next_run_time
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
            })
        return jobs

    async def run_now(self, job_id: str) -> dict:
        """Run a job immediately."""
        job = self.scheduler.get_job(job_id)
        if not job:
            raise NotFound(f"Job {job_id} not found")
        try:
            result = await job.func()
            return {"ok": True, "result": result}
        except Exception as e:
            logger.error("Failed to run job %s: %s", job_id, e)
            return {"error": str(e)}


scheduler_service = SchedulerService.get_instance()
