"""
Scheduler Service

Fires one job-runner pass every RUNNER_INTERVAL_MINUTES.

No leader election: overlapping passes from several instances are safe
because the queue claim is conditional. Controlled by SCHEDULER_ENABLED
(default: true).
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from soundtracker.providers.factory import provider_factory
from soundtracker.settings import get_settings

from .job_runner import JobRunner

logger = logging.getLogger("scheduler")

RUNNER_JOB_ID = "sound_job_runner"


class SchedulerService:
    """Periodic trigger for the sound job runner."""

    _instance: "SchedulerService | None" = None

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._running = False
        self.last_pass_at: datetime | None = None
        self.last_pass: dict[str, Any] | None = None

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def configure(self, database_url: str):
        engine = create_async_engine(database_url, echo=False)
        self._session_factory = async_sessionmaker(engine, expire_on_commit=False)

    def _get_session_factory(self) -> async_sessionmaker[AsyncSession]:
        if not self._session_factory:
            self.configure(get_settings().async_database_url)
        return self._session_factory

    def start(self) -> bool:
        """Schedule the runner and start; returns False when SCHEDULER_ENABLED=false."""
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler DISABLED by SCHEDULER_ENABLED=false, skipping start")
            return False
        if self._running:
            return True

        self.scheduler.add_job(
            self.run_pass,
            IntervalTrigger(minutes=settings.runner_interval_minutes),
            id=RUNNER_JOB_ID,
            name="Sound job runner pass",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self._running = True
        logger.info(f"Scheduler started (runner every {settings.runner_interval_minutes} min)")
        return True

    def stop(self):
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    async def run_pass(self) -> dict[str, Any]:
        """One runner pass; also what the interval trigger calls."""
        runner = JobRunner(self._get_session_factory(), provider_factory(), get_settings())
        summary = await runner.run_once()
        self.last_pass_at = datetime.now(timezone.utc)
        self.last_pass = {"processed": summary.processed, "reclaimed": summary.reclaimed}
        if summary.processed:
            logger.info(f"[job_runner] scheduled pass processed {summary.processed} jobs")
        return summary.to_dict()

    def status(self) -> dict[str, Any]:
        job = self.scheduler.get_job(RUNNER_JOB_ID) if self._running else None
        next_run = job.next_run_time if job else None
        return {
            "running": self._running,
            "enabled": get_settings().scheduler_enabled,
            "interval_minutes": get_settings().runner_interval_minutes,
            "next_run": next_run.isoformat() if next_run else None,
            "last_pass_at": self.last_pass_at.isoformat() if self.last_pass_at else None,
            "last_pass": self.last_pass,
        }


# Global instance
scheduler_service = SchedulerService.get_instance()
