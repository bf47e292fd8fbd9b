"""
Celery tasks.

soundtrack.run_jobs runs one JobRunner pass inside the worker using asyncio.run().
"""
from __future__ import annotations

import asyncio
import logging

from soundtracker.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _run_jobs_async() -> dict:
    """One runner pass with a fresh engine bound to this event loop."""
    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    from soundtracker.providers.factory import provider_factory
    from soundtracker.services.job_runner import JobRunner
    from soundtracker.settings import get_settings

    settings = get_settings()
    engine = create_async_engine(settings.async_database_url, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        runner = JobRunner(session_factory, provider_factory(), settings)
        summary = await runner.run_once()
        return summary.to_dict()
    finally:
        await engine.dispose()


@celery_app.task(bind=True, name="soundtrack.run_jobs", queue="soundtrack")
def run_jobs(self) -> dict:
    """Celery task: one pass over the sound job queue.

    No Celery-level retries; failed jobs are retried by the queue itself.
    """
    logger.info(f"[worker] runner pass start (celery_id={self.request.id})")
    try:
        result = asyncio.run(_run_jobs_async())
    except Exception as e:
        logger.error(f"[worker] runner pass failed: {e}")
        raise
    logger.info(f"[worker] runner pass done: processed={result['processed']}")
    return result
