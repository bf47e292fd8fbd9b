"""
Job runner: one stateless pass over the sound_jobs queue.

    reclaim stale locks -> claim a batch -> run handlers (bounded) -> record outcomes

Reclaim and claim errors abort the pass. Anything a handler raises becomes a
job outcome (retry with backoff, or terminal failure for bad input and
missing credentials); it never escapes the pass. A job whose lock was lost
mid-run is rolled back and reported as not completed.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from soundtracker.models import JobType, SoundJob, TrackedPost, TrackedSound
from soundtracker.providers.base import InvalidSoundUrl, ProviderBlocked, ProviderConfigError, UnsupportedUrlForm
from soundtracker.providers.factory import ProviderFactory
from soundtracker.settings import Settings, get_settings

from .discovery import discover_sound_posts
from .job_payloads import (
    PAYLOAD_MODELS,
    DiscoverPostsPayload,
    JobPayload,
    RefreshPostMetricsPayload,
    RefreshSoundPayload,
    parse_payload,
)
from .job_queue import (
    JobOutcome,
    LostLockError,
    claim_jobs,
    complete_job,
    enqueue_job,
    fail_job,
    reclaim_stale_locks,
    touch_lock,
)
from .snapshots import (
    record_blocked_post_snapshot,
    record_blocked_sound_snapshot,
    record_post_snapshot,
    record_sound_snapshot,
)

logger = logging.getLogger(__name__)


class MissingEntityError(Exception):
    """A job references a row that no longer exists. Retried, but will not heal on its own."""


# bad input or missing configuration: another attempt cannot succeed
HARD_FAILURES = (ProviderConfigError, InvalidSoundUrl, UnsupportedUrlForm)


@dataclass
class JobContext:
    session: AsyncSession
    job: SoundJob
    provider_factory: ProviderFactory
    now: datetime


@dataclass
class RunSummary:
    processed: int = 0
    results: list[JobOutcome] = field(default_factory=list)
    reclaimed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"processed": self.processed, "results": [r.to_dict() for r in self.results]}


# ── Handlers ─────────────────────────────────────────────────

_BACKFILL_FIELDS = ("title", "artist", "thumbnail_url")


async def _load_sound(session: AsyncSession, sound_id: int) -> TrackedSound:
    sound = await session.get(TrackedSound, sound_id)
    if sound is None:
        raise MissingEntityError(f"tracked sound {sound_id} not found")
    return sound


async def handle_refresh_sound(ctx: JobContext, payload: RefreshSoundPayload) -> dict[str, Any]:
    sound = await _load_sound(ctx.session, payload.sound_id)
    provider = ctx.provider_factory(sound.platform)

    try:
        aggregates = await provider.get_sound_aggregates(sound.sound_platform_id)
    except ProviderBlocked as exc:
        record_blocked_sound_snapshot(ctx.session, sound, exc, captured_at=ctx.now)
        result: dict[str, Any] = {"blocked": True, "total_uses": None}
    else:
        snap = record_sound_snapshot(ctx.session, sound, aggregates, captured_at=ctx.now)
        for name in _BACKFILL_FIELDS:
            value = aggregates.meta.get(name)
            if value and getattr(sound, name) is None:
                setattr(sound, name, value)
        result = {"blocked": snap.total_uses is None, "total_uses": snap.total_uses}

    # next stage commits together with the snapshot
    await enqueue_job(ctx.session, sound.workspace_id, DiscoverPostsPayload(sound_id=sound.id), run_at=ctx.now)
    return result


async def handle_discover_posts(ctx: JobContext, payload: DiscoverPostsPayload) -> dict[str, Any]:
    sound = await _load_sound(ctx.session, payload.sound_id)
    provider = ctx.provider_factory(sound.platform)
    discovery = await discover_sound_posts(ctx.session, sound, provider, now=ctx.now)
    return discovery.to_dict()


async def handle_refresh_post_metrics(ctx: JobContext, payload: RefreshPostMetricsPayload) -> dict[str, Any]:
    post = await ctx.session.scalar(
        select(TrackedPost).where(
            TrackedPost.workspace_id == ctx.job.workspace_id,
            TrackedPost.platform == payload.platform.value,
            TrackedPost.post_platform_id == payload.post_platform_id,
        )
    )
    if post is None:
        raise MissingEntityError(
            f"tracked post {payload.platform.value}:{payload.post_platform_id} not found"
        )
    provider = ctx.provider_factory(payload.platform.value)
    try:
        metrics = await provider.get_post_metrics(post.post_platform_id, payload.post_url or post.post_url)
    except ProviderBlocked as exc:
        record_blocked_post_snapshot(ctx.session, post, exc, captured_at=ctx.now)
        return {"blocked": True}
    record_post_snapshot(ctx.session, post, metrics, captured_at=ctx.now)
    return {"blocked": False, **metrics.to_dict()}


Handler = Callable[[JobContext, Any], Awaitable[dict[str, Any]]]

HANDLERS: dict[type, Handler] = {
    RefreshSoundPayload: handle_refresh_sound,
    DiscoverPostsPayload: handle_discover_posts,
    RefreshPostMetricsPayload: handle_refresh_post_metrics,
}


def _check_dispatch_tables() -> None:
    missing_models = [t.value for t in JobType if t not in PAYLOAD_MODELS]
    missing_handlers = [t.value for t, model in PAYLOAD_MODELS.items() if model not in HANDLERS]
    if missing_models or missing_handlers:
        raise RuntimeError(
            f"job dispatch incomplete: no payload model for {missing_models}, no handler for {missing_handlers}"
        )


_check_dispatch_tables()


async def dispatch(ctx: JobContext, payload: JobPayload) -> dict[str, Any]:
    return await HANDLERS[type(payload)](ctx, payload)


# ── Runner ───────────────────────────────────────────────────

class JobRunner:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider_factory: ProviderFactory,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._provider_factory = provider_factory
        self._settings = settings or get_settings()

    async def run_once(self, now: datetime | None = None) -> RunSummary:
        settings = self._settings
        worker_id = uuid.uuid4().hex
        pass_now = now or datetime.now(timezone.utc)

        async with self._session_factory() as session:
            reclaimed = await reclaim_stale_locks(
                session, now=pass_now, timeout=timedelta(minutes=settings.stale_lock_minutes)
            )
            await session.commit()

        async with self._session_factory() as session:
            jobs = await claim_jobs(session, worker_id, now=pass_now, limit=settings.runner_batch_size)
            await session.commit()

        if not jobs:
            logger.debug(f"[job_runner] worker={worker_id} nothing to do")
            return RunSummary(reclaimed=reclaimed)

        logger.info(f"[job_runner] worker={worker_id} claimed {len(jobs)} jobs (reclaimed={reclaimed})")
        semaphore = asyncio.Semaphore(max(settings.runner_max_parallel, 1))

        async def _bounded(job: SoundJob) -> JobOutcome:
            async with semaphore:
                return await self._execute(job, worker_id, pass_now, fixed_now=now)

        outcomes = list(await asyncio.gather(*(_bounded(job) for job in jobs)))
        failed = sum(1 for o in outcomes if not o.success)
        blocked = sum(1 for o in outcomes if o.blocked)
        logger.info(
            f"[job_runner] worker={worker_id} done: processed={len(outcomes)} failed={failed} blocked={blocked}"
        )
        return RunSummary(processed=len(outcomes), results=outcomes, reclaimed=reclaimed)

    async def _execute(
        self, job: SoundJob, worker_id: str, pass_now: datetime, *, fixed_now: datetime | None = None
    ) -> JobOutcome:
        settings = self._settings
        async with self._session_factory() as session:
            # the stale-lock clock starts when the job runs, not when the batch was claimed
            if not await touch_lock(session, job, worker_id, now=fixed_now or datetime.now(timezone.utc)):
                await session.rollback()
                logger.warning(f"[job_runner] job={job.id} lock lost before start, skipping")
                return JobOutcome(job_id=job.id, success=False, error="lock lost before start")
            await session.commit()

            try:
                payload = parse_payload(job.job_type, job.payload)
                ctx = JobContext(session=session, job=job, provider_factory=self._provider_factory, now=pass_now)
                result = await asyncio.wait_for(dispatch(ctx, payload), timeout=settings.job_timeout_sec)
                outcome = await complete_job(
                    session, job, worker_id, now=fixed_now or datetime.now(timezone.utc)
                )
                outcome.blocked = bool(result.get("blocked"))
                await session.commit()
                logger.info(f"[job_runner] job={job.id} type={job.job_type} ok {result}")
                return outcome
            except LostLockError as exc:
                # another worker owns the row now; none of this attempt's writes may land
                await session.rollback()
                return JobOutcome(job_id=job.id, success=False, error=str(exc))
            except Exception as exc:
                await session.rollback()
                error = str(exc) or type(exc).__name__
                if isinstance(exc, asyncio.TimeoutError):
                    error = f"job timed out after {settings.job_timeout_sec}s"
                terminal = isinstance(exc, HARD_FAILURES)
                logger.warning(
                    f"[job_runner] job={job.id} type={job.job_type} failed{' (no retry)' if terminal else ''}: {error}"
                )
                try:
                    outcome = await fail_job(
                        session,
                        job,
                        worker_id,
                        error,
                        now=fixed_now or datetime.now(timezone.utc),
                        backoff_cap_minutes=settings.job_backoff_cap_minutes,
                        terminal=terminal,
                    )
                    await session.commit()
                except Exception:
                    # lock stays in place; the next pass reclaims it once stale
                    logger.exception(f"[job_runner] job={job.id} failure could not be recorded")
                    return JobOutcome(job_id=job.id, success=False, error=error)
                return outcome
