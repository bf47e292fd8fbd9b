from datetime import timedelta

import pytest
from sqlalchemy import select, update

from fakes import FakeProvider, make_post, utc
from soundtracker.models import JobStatus, JobType, PostSnapshot, SoundJob, SoundSnapshot, TrackedPost, TrackedSound
from soundtracker.providers.base import (
    InvalidSoundUrl,
    PostMetrics,
    ProviderConfigError,
    SoundAggregates,
    UnsupportedUrlForm,
)
from soundtracker.services.job_payloads import (
    PAYLOAD_MODELS,
    DiscoverPostsPayload,
    RefreshPostMetricsPayload,
    RefreshSoundPayload,
)
from soundtracker.services.job_queue import enqueue_job
from soundtracker.services.job_runner import HANDLERS, JobRunner


async def _jobs(session, job_type: JobType | None = None) -> list[SoundJob]:
    stmt = select(SoundJob).order_by(SoundJob.id).execution_options(populate_existing=True)
    if job_type:
        stmt = stmt.where(SoundJob.job_type == job_type.value)
    return list((await session.scalars(stmt)).all())


def test_every_job_type_has_payload_and_handler():
    assert set(PAYLOAD_MODELS) == set(JobType)
    assert {PAYLOAD_MODELS[t] for t in JobType} <= set(HANDLERS)


@pytest.mark.asyncio
async def test_empty_queue_pass(make_runner, now):
    summary = await make_runner(FakeProvider()).run_once(now=now)
    assert summary.to_dict() == {"processed": 0, "results": []}


@pytest.mark.asyncio
async def test_fresh_sound_scenario(session, sound, make_runner, now):
    job = await enqueue_job(session, sound.workspace_id, RefreshSoundPayload(sound_id=sound.id), run_at=now)
    await session.commit()
    provider = FakeProvider(aggregates=SoundAggregates(total_uses=120, meta={"title": "X"}))

    summary = await make_runner(provider).run_once(now=now)

    assert summary.processed == 1
    assert summary.results[0].success is True
    assert summary.to_dict()["results"] == [{"jobId": job.id, "success": True}]

    snaps = (await session.scalars(select(SoundSnapshot))).all()
    assert [s.total_uses for s in snaps] == [120]

    refreshed = await session.scalar(
        select(TrackedSound).where(TrackedSound.id == sound.id).execution_options(populate_existing=True)
    )
    assert refreshed.title == "X"

    discover = await _jobs(session, JobType.discover_posts)
    assert len(discover) == 1
    assert discover[0].payload["sound_id"] == sound.id
    assert discover[0].status == JobStatus.queued.value

    [original] = [j for j in await _jobs(session) if j.id == job.id]
    assert original.status == JobStatus.success.value


@pytest.mark.asyncio
async def test_backfill_never_overwrites_existing_title(session, make_runner, now):
    sound = TrackedSound(
        workspace_id="ws-1", platform="tiktok", sound_platform_id="9", source_url="u", title="Mine"
    )
    session.add(sound)
    await session.commit()
    await enqueue_job(session, "ws-1", RefreshSoundPayload(sound_id=sound.id), run_at=now)
    await session.commit()
    provider = FakeProvider(aggregates=SoundAggregates(total_uses=3, meta={"title": "Theirs", "artist": "A"}))

    await make_runner(provider).run_once(now=now)

    refreshed = await session.scalar(
        select(TrackedSound).where(TrackedSound.id == sound.id).execution_options(populate_existing=True)
    )
    assert refreshed.title == "Mine"
    assert refreshed.artist == "A"


@pytest.mark.asyncio
async def test_blocked_aggregates_is_success_with_blocked_snapshot(session, sound, make_runner, now):
    job = await enqueue_job(session, sound.workspace_id, RefreshSoundPayload(sound_id=sound.id), run_at=now)
    await session.commit()

    summary = await make_runner(FakeProvider(blocked=("aggregates",))).run_once(now=now)

    assert summary.results[0].success is True
    assert summary.results[0].blocked is True
    [snap] = (await session.scalars(select(SoundSnapshot))).all()
    assert snap.total_uses is None
    assert snap.meta["blocked"] is True
    assert len(await _jobs(session, JobType.discover_posts)) == 1
    [stored] = [j for j in await _jobs(session) if j.id == job.id]
    assert stored.status == JobStatus.success.value


@pytest.mark.asyncio
async def test_placeholder_from_refusal_is_recorded_as_unknown(session, sound, make_runner, now):
    await enqueue_job(session, sound.workspace_id, RefreshSoundPayload(sound_id=sound.id), run_at=now)
    await session.commit()
    placeholder = SoundAggregates(total_uses=0, meta={"note": "rate limited", "blocked": True})

    await make_runner(FakeProvider(aggregates=placeholder)).run_once(now=now)

    [snap] = (await session.scalars(select(SoundSnapshot))).all()
    assert snap.total_uses is None
    assert snap.meta["note"] == "rate limited"


@pytest.mark.asyncio
async def test_blocked_discovery_is_success(session, sound, make_runner, now):
    job = await enqueue_job(session, sound.workspace_id, DiscoverPostsPayload(sound_id=sound.id), run_at=now)
    await session.commit()

    summary = await make_runner(FakeProvider(blocked=("list",))).run_once(now=now)

    assert summary.results[0].success is True
    [stored] = [j for j in await _jobs(session) if j.id == job.id]
    assert stored.status == JobStatus.success.value
    assert await session.scalar(select(TrackedPost)) is None


@pytest.mark.asyncio
async def test_blocked_post_metrics_records_blocked_snapshot(session, sound, make_runner, now):
    post = TrackedPost(
        workspace_id=sound.workspace_id,
        sound_id=sound.id,
        platform="tiktok",
        post_platform_id="p1",
        post_url="https://www.tiktok.com/@c/video/p1",
        first_seen_at=now,
        last_seen_at=now,
    )
    session.add(post)
    await enqueue_job(
        session, sound.workspace_id, RefreshPostMetricsPayload(platform="tiktok", post_platform_id="p1"), run_at=now
    )
    await session.commit()

    summary = await make_runner(FakeProvider(blocked=("metrics",))).run_once(now=now)

    assert summary.results[0].success is True
    [snap] = (await session.scalars(select(PostSnapshot))).all()
    assert snap.views is None and snap.likes is None
    assert snap.meta["blocked"] is True


@pytest.mark.asyncio
async def test_missing_post_fails_and_retries(session, make_runner, now):
    job = await enqueue_job(
        session, "ws-1", RefreshPostMetricsPayload(platform="tiktok", post_platform_id="gone"), run_at=now
    )
    await session.commit()

    summary = await make_runner(FakeProvider()).run_once(now=now)

    [result] = summary.to_dict()["results"]
    assert result["jobId"] == job.id
    assert result["success"] is False
    assert result["willRetry"] is True
    assert "not found" in result["error"]
    assert summary.results[0].next_run_at == now + timedelta(minutes=2)

    [stored] = await _jobs(session)
    assert stored.status == JobStatus.queued.value
    assert stored.attempts == 1
    assert utc(stored.run_at) == now + timedelta(minutes=2)
    assert "gone" in stored.last_error


@pytest.mark.asyncio
async def test_missing_sound_is_an_integrity_failure(session, make_runner, now):
    await enqueue_job(session, "ws-1", RefreshSoundPayload(sound_id=999), run_at=now, max_attempts=1)
    await session.commit()

    summary = await make_runner(FakeProvider()).run_once(now=now)

    assert summary.results[0].will_retry is False
    [stored] = await _jobs(session)
    assert stored.status == JobStatus.failed.value


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ProviderConfigError("APIFY_TOKEN is not configured"),
        UnsupportedUrlForm("video links are not sound links", "UNSUPPORTED_URL"),
    ],
)
async def test_unbuildable_provider_fails_without_retry(session_factory, session, sound, settings, now, error):
    job = await enqueue_job(session, sound.workspace_id, RefreshSoundPayload(sound_id=sound.id), run_at=now)
    await session.commit()

    def factory(platform):
        raise error

    summary = await JobRunner(session_factory, factory, settings).run_once(now=now)

    [result] = summary.to_dict()["results"]
    assert result["jobId"] == job.id
    assert result["success"] is False
    assert result["willRetry"] is False
    assert "nextRunAt" not in result
    [stored] = await _jobs(session)
    assert stored.status == JobStatus.failed.value
    assert stored.attempts == 1
    assert stored.finished_at is not None


class _InvalidIdProvider(FakeProvider):
    async def get_sound_aggregates(self, sound_id: str) -> SoundAggregates:
        raise InvalidSoundUrl(f"no sound id in {sound_id!r}", "INVALID_URL")


@pytest.mark.asyncio
async def test_invalid_sound_fails_without_retry(session, sound, make_runner, now):
    await enqueue_job(session, sound.workspace_id, RefreshSoundPayload(sound_id=sound.id), run_at=now)
    await session.commit()

    summary = await make_runner(_InvalidIdProvider()).run_once(now=now)

    assert summary.results[0].will_retry is False
    [stored] = await _jobs(session)
    assert stored.status == JobStatus.failed.value
    assert await session.scalar(select(SoundSnapshot)) is None


class _LockStealingProvider(FakeProvider):
    """Another worker takes the row over while the aggregates call is in flight."""

    def __init__(self, session_factory, job_id, **kwargs):
        super().__init__(**kwargs)
        self._session_factory = session_factory
        self._job_id = job_id

    async def get_sound_aggregates(self, sound_id: str) -> SoundAggregates:
        async with self._session_factory() as other:
            await other.execute(
                update(SoundJob).where(SoundJob.id == self._job_id).values(locked_by="worker-b")
            )
            await other.commit()
        return await super().get_sound_aggregates(sound_id)


@pytest.mark.asyncio
async def test_lost_lock_discards_handler_writes(session_factory, session, sound, make_runner, now):
    job = await enqueue_job(session, sound.workspace_id, RefreshSoundPayload(sound_id=sound.id), run_at=now)
    await session.commit()
    provider = _LockStealingProvider(session_factory, job.id, aggregates=SoundAggregates(total_uses=50))

    summary = await make_runner(provider).run_once(now=now)

    [outcome] = summary.results
    assert outcome.success is False
    assert outcome.will_retry is None
    assert await session.scalar(select(SoundSnapshot)) is None
    assert await _jobs(session, JobType.discover_posts) == []
    [stored] = await _jobs(session)
    assert stored.status == JobStatus.running.value
    assert stored.locked_by == "worker-b"
    assert stored.attempts == 0

@pytest.mark.asyncio
async def test_handler_timeout_becomes_failure(session, sound, make_runner, now):
    await enqueue_job(session, sound.workspace_id, RefreshSoundPayload(sound_id=sound.id), run_at=now)
    await session.commit()

    runner = make_runner(FakeProvider(delay=1.0), job_timeout_sec=0.05)
    summary = await runner.run_once(now=now)

    assert summary.results[0].success is False
    assert "timed out" in summary.results[0].error
    assert await session.scalar(select(SoundSnapshot)) is None


@pytest.mark.asyncio
async def test_pass_reclaims_stale_jobs_first(session, sound, make_runner, now):
    job = await enqueue_job(session, sound.workspace_id, RefreshSoundPayload(sound_id=sound.id), run_at=now)
    job.status = JobStatus.running.value
    job.locked_by = "dead-worker"
    job.locked_at = now - timedelta(minutes=10)
    await session.commit()

    summary = await make_runner(FakeProvider()).run_once(now=now)

    assert summary.reclaimed == 1
    assert summary.processed == 1
    assert summary.results[0].success is True


@pytest.mark.asyncio
async def test_full_chain_refresh_discover_metrics(session, sound, make_runner, now):
    await enqueue_job(session, sound.workspace_id, RefreshSoundPayload(sound_id=sound.id), run_at=now)
    await session.commit()
    provider = FakeProvider(
        aggregates=SoundAggregates(total_uses=2),
        top=[make_post("a", 10), make_post("b", 5)],
        recent=[make_post("c")],
        metrics=PostMetrics(views=11, likes=1, comments=0, shares=0),
    )
    runner = make_runner(provider)

    first = await runner.run_once(now=now)
    second = await runner.run_once(now=now)
    third = await runner.run_once(now=now)

    assert (first.processed, second.processed, third.processed) == (1, 1, 3)
    assert all(r.success for r in first.results + second.results + third.results)
    snaps = (await session.scalars(select(PostSnapshot))).all()
    refreshed = [s.views for s in snaps if (s.meta or {}).get("source") != "discovery"]
    assert refreshed == [11, 11, 11]
    assert len(snaps) == 5
