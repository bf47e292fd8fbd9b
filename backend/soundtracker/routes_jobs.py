"""
Job queue endpoints: runner trigger, job listing and queue health.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .db import AsyncSessionLocal, get_session
from .providers.factory import provider_factory
from .schemas import RunJobsRequest, RunJobsResponse, SoundJobRead
from .services.job_queue import job_health, list_jobs
from .services.job_runner import JobRunner
from .settings import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["jobs"])

SessionDep = Depends(get_session)


def get_job_runner() -> JobRunner:
    return JobRunner(AsyncSessionLocal, provider_factory(), get_settings())


@router.post("/jobs/run", response_model=RunJobsResponse, response_model_exclude_none=True)
async def run_jobs(
    body: Optional[RunJobsRequest] = Body(default=None),
    runner: JobRunner = Depends(get_job_runner),
):
    """Run one pass inline, or hand it to the Celery worker when startNow is false."""
    body = body or RunJobsRequest()
    if not body.start_now and get_settings().celery_enabled:
        from .worker.tasks import run_jobs as run_jobs_task

        async_result = run_jobs_task.delay()
        logger.info(f"[jobs] runner pass dispatched to worker celery_id={async_result.id}")
        return RunJobsResponse(processed=0, results=[], dispatched=async_result.id)

    summary = await runner.run_once()
    return summary.to_dict()


@router.get("/jobs", response_model=list[SoundJobRead])
async def list_jobs_endpoint(
    status: Optional[str] = Query(default=None),
    job_type: Optional[str] = Query(default=None),
    workspace_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    session: AsyncSession = SessionDep,
):
    return await list_jobs(session, status=status, job_type=job_type, workspace_id=workspace_id, limit=limit)


@router.get("/jobs/health")
async def jobs_health_endpoint(session: AsyncSession = SessionDep):
    """Job counts by status plus overdue and stale-lock counters."""
    from .services.scheduler import scheduler_service

    settings = get_settings()
    health = await job_health(session, stale_after=timedelta(minutes=settings.stale_lock_minutes))
    health["scheduler_running"] = scheduler_service.is_running()
    return health
