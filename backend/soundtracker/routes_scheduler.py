"""
Scheduler API Routes

Control of the periodic runner trigger.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from .services.scheduler import scheduler_service

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


class SchedulerStatus(BaseModel):
    running: bool
    enabled: bool
    interval_minutes: int
    next_run: Optional[str] = None
    last_pass_at: Optional[str] = None
    last_pass: Optional[dict] = None


@router.get("/status", response_model=SchedulerStatus)
async def get_scheduler_status():
    return scheduler_service.status()


@router.post("/start", response_model=SchedulerStatus)
async def start_scheduler():
    if not scheduler_service.start():
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Scheduler disabled by SCHEDULER_ENABLED=false"
        )
    return scheduler_service.status()


@router.post("/stop", response_model=SchedulerStatus)
async def stop_scheduler():
    scheduler_service.stop()
    return scheduler_service.status()


@router.post("/run", response_model=dict)
async def run_pass_now():
    """Run one runner pass immediately, outside the interval."""
    return await scheduler_service.run_pass()
