"""
Durable job queue on the ``sound_jobs`` table.

Lifecycle: queued -> running -> success | queued (retry) | failed.
The conditional claim UPDATE is the only synchronization between workers;
two passes racing for the same row cannot both lock it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from soundtracker.models import JobStatus, SoundJob
from soundtracker.providers.base import sanitize_error
from soundtracker.settings import get_settings

from .job_payloads import JobPayload

logger = logging.getLogger(__name__)


class LostLockError(Exception):
    """The job is no longer locked by this worker (reclaimed, possibly claimed by another)."""


@dataclass
class JobOutcome:
    job_id: int
    success: bool
    error: str | None = None
    will_retry: bool | None = None
    next_run_at: datetime | None = None
    blocked: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"jobId": self.job_id, "success": self.success}
        if self.error is not None:
            data["error"] = self.error
        if self.will_retry is not None:
            data["willRetry"] = self.will_retry
        if self.next_run_at is not None:
            data["nextRunAt"] = self.next_run_at.isoformat()
        return data


# fail_job reads the cap from settings unless one is passed explicitly
_CAP_FROM_SETTINGS = -1


def _now() -> datetime:
    return datetime.now(timezone.utc)


def backoff_delay(attempts: int, cap_minutes: int | None = None) -> timedelta:
    """2**attempts minutes, optionally capped."""
    minutes = 2 ** max(attempts, 0)
    if cap_minutes is not None:
        minutes = min(minutes, cap_minutes)
    return timedelta(minutes=minutes)


def _job_row(workspace_id: str, payload: JobPayload, run_at: datetime, max_attempts: int) -> dict[str, Any]:
    return {
        "workspace_id": workspace_id,
        "job_type": payload.job_type.value,
        "status": JobStatus.queued.value,
        "run_at": run_at,
        "attempts": 0,
        "max_attempts": max_attempts,
        "payload": payload.model_dump(mode="json"),
    }


async def enqueue_job(
    session: AsyncSession,
    workspace_id: str,
    payload: JobPayload,
    *,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
) -> SoundJob:
    """Add one queued job to the session. The caller owns the transaction."""
    row = _job_row(
        workspace_id,
        payload,
        run_at or _now(),
        max_attempts or get_settings().job_max_attempts,
    )
    job = SoundJob(**row)
    session.add(job)
    await session.flush()
    logger.info(f"[job_queue] enqueued job={job.id} type={row['job_type']} ws={workspace_id}")
    return job


async def enqueue_jobs(
    session: AsyncSession,
    workspace_id: str,
    payloads: Iterable[JobPayload],
    *,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
) -> int:
    """Bulk insert queued jobs. Returns how many were inserted."""
    run_at = run_at or _now()
    max_attempts = max_attempts or get_settings().job_max_attempts
    rows = [_job_row(workspace_id, p, run_at, max_attempts) for p in payloads]
    if not rows:
        return 0
    await session.execute(insert(SoundJob), rows)
    logger.info(f"[job_queue] enqueued {len(rows)} jobs type={rows[0]['job_type']} ws={workspace_id}")
    return len(rows)


async def reclaim_stale_locks(
    session: AsyncSession, *, now: datetime | None = None, timeout: timedelta = timedelta(minutes=5)
) -> int:
    """Return running jobs whose lock is older than ``timeout`` to the queue."""
    now = now or _now()
    result = await session.execute(
        update(SoundJob)
        .where(SoundJob.status == JobStatus.running.value, SoundJob.locked_at < now - timeout)
        .values(status=JobStatus.queued.value, locked_by=None, locked_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    reclaimed = result.rowcount or 0
    if reclaimed:
        logger.warning(f"[job_queue] reclaimed {reclaimed} stale jobs (lock older than {timeout})")
    return reclaimed


async def claim_jobs(
    session: AsyncSession, worker_id: str, *, now: datetime | None = None, limit: int = 10
) -> list[SoundJob]:
    """Lock up to ``limit`` due jobs for ``worker_id`` and return the ones actually won."""
    now = now or _now()
    candidate_ids = list(
        (
            await session.scalars(
                select(SoundJob.id)
                .where(SoundJob.status == JobStatus.queued.value, SoundJob.run_at <= now)
                .order_by(SoundJob.run_at.asc(), SoundJob.id.asc())
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
        ).all()
    )
    if not candidate_ids:
        return []

    await session.execute(
        update(SoundJob)
        .where(SoundJob.id.in_(candidate_ids), SoundJob.status == JobStatus.queued.value)
        .values(status=JobStatus.running.value, locked_by=worker_id, locked_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    jobs = list(
        (
            await session.scalars(
                select(SoundJob)
                .where(
                    SoundJob.id.in_(candidate_ids),
                    SoundJob.status == JobStatus.running.value,
                    SoundJob.locked_by == worker_id,
                )
                .order_by(SoundJob.run_at.asc(), SoundJob.id.asc())
                .execution_options(populate_existing=True)
            )
        ).all()
    )
    if len(jobs) < len(candidate_ids):
        logger.info(f"[job_queue] worker={worker_id} lost {len(candidate_ids) - len(jobs)} jobs to another worker")
    return jobs


async def touch_lock(session: AsyncSession, job: SoundJob, worker_id: str, *, now: datetime | None = None) -> bool:
    """Restamp ``locked_at`` as the job starts executing. False when the lock is no longer ours."""
    now = now or _now()
    result = await session.execute(
        update(SoundJob)
        .where(
            SoundJob.id == job.id,
            SoundJob.status == JobStatus.running.value,
            SoundJob.locked_by == worker_id,
        )
        .values(locked_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def complete_job(
    session: AsyncSession, job: SoundJob, worker_id: str, *, now: datetime | None = None
) -> JobOutcome:
    """Mark success. Raises LostLockError when the row is no longer ours; the caller rolls back."""
    now = now or _now()
    result = await session.execute(
        update(SoundJob)
        .where(SoundJob.id == job.id, SoundJob.locked_by == worker_id)
        .values(
            status=JobStatus.success.value,
            locked_by=None,
            locked_at=None,
            last_error=None,
            finished_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        logger.warning(f"[job_queue] job={job.id} lock lost before completion, worker={worker_id}")
        raise LostLockError(f"job {job.id} is no longer locked by worker {worker_id}")
    return JobOutcome(job_id=job.id, success=True)


async def fail_job(
    session: AsyncSession,
    job: SoundJob,
    worker_id: str,
    error: str,
    *,
    now: datetime | None = None,
    backoff_cap_minutes: int | None = _CAP_FROM_SETTINGS,
    terminal: bool = False,
) -> JobOutcome:
    """Record a failed attempt: requeue with exponential backoff or mark terminally failed.

    ``terminal`` skips the retry branch for failures another attempt cannot fix.
    """
    now = now or _now()
    if backoff_cap_minutes == _CAP_FROM_SETTINGS:
        backoff_cap_minutes = get_settings().job_backoff_cap_minutes
    attempts = (job.attempts or 0) + 1
    will_retry = not terminal and attempts < job.max_attempts
    error = sanitize_error(error) or "unknown error"

    values: dict[str, Any] = {
        "attempts": attempts,
        "locked_by": None,
        "locked_at": None,
        "last_error": error,
        "updated_at": now,
    }
    next_run_at = None
    if will_retry:
        next_run_at = now + backoff_delay(attempts, backoff_cap_minutes)
        values.update(status=JobStatus.queued.value, run_at=next_run_at)
    else:
        values.update(status=JobStatus.failed.value, finished_at=now)

    result = await session.execute(
        update(SoundJob)
        .where(SoundJob.id == job.id, SoundJob.locked_by == worker_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        logger.warning(f"[job_queue] job={job.id} lock lost before failure was recorded, worker={worker_id}")
        return JobOutcome(job_id=job.id, success=False, error=error)
    if will_retry:
        logger.info(f"[job_queue] job={job.id} attempt {attempts}/{job.max_attempts} failed, retry at {next_run_at}")
    elif terminal:
        logger.error(f"[job_queue] job={job.id} failed without retry: {error}")
    else:
        logger.error(f"[job_queue] job={job.id} exhausted after {attempts} attempts: {error}")

    return JobOutcome(
        job_id=job.id,
        success=False,
        error=error,
        will_retry=will_retry,
        next_run_at=next_run_at,
    )


async def list_jobs(
    session: AsyncSession,
    *,
    status: str | None = None,
    job_type: str | None = None,
    workspace_id: str | None = None,
    limit: int = 50,
) -> Sequence[SoundJob]:
    stmt = select(SoundJob).order_by(SoundJob.id.desc()).limit(limit)
    if status:
        stmt = stmt.where(SoundJob.status == status)
    if job_type:
        stmt = stmt.where(SoundJob.job_type == job_type)
    if workspace_id:
        stmt = stmt.where(SoundJob.workspace_id == workspace_id)
    return (await session.scalars(stmt)).all()


async def job_health(
    session: AsyncSession, *, now: datetime | None = None, stale_after: timedelta = timedelta(minutes=5)
) -> dict[str, Any]:
    """Queue counters for the health endpoint."""
    now = now or _now()
    rows = await session.execute(select(SoundJob.status, func.count()).group_by(SoundJob.status))
    by_status = {s.value: 0 for s in JobStatus}
    for status_value, count in rows.all():
        by_status[str(status_value)] = count

    overdue = await session.scalar(
        select(func.count())
        .select_from(SoundJob)
        .where(SoundJob.status == JobStatus.queued.value, SoundJob.run_at < now - stale_after)
    )
    stale = await session.scalar(
        select(func.count())
        .select_from(SoundJob)
        .where(SoundJob.status == JobStatus.running.value, SoundJob.locked_at < now - stale_after)
    )
    return {
        "by_status": by_status,
        "overdue_queued": overdue or 0,
        "stale_running": stale or 0,
        "checked_at": now.isoformat(),
    }
