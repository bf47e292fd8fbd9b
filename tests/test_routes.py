import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from fakes import FakeProvider
from soundtracker import routes_jobs
from soundtracker.db import get_session
from soundtracker.main import app
from soundtracker.models import JobType, SoundJob
from soundtracker.providers.base import InvalidSoundUrl, ProviderBlocked, ProviderConfigError, UnsupportedUrlForm
from soundtracker.routes_jobs import get_job_runner
from soundtracker.routes_sounds import get_provider_factory
from soundtracker.services.job_payloads import RefreshSoundPayload
from soundtracker.services.job_queue import enqueue_job
from soundtracker.worker import tasks


@pytest_asyncio.fixture
async def client(session_factory, make_runner):
    provider = FakeProvider()

    async def _session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _session
    app.dependency_overrides[get_provider_factory] = lambda: (lambda platform: provider)
    app.dependency_overrides[get_job_runner] = lambda: make_runner(provider)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        client.provider = provider
        yield client
    app.dependency_overrides.clear()


def _factory_raising(exc):
    def _factory(platform):
        raise exc

    return _factory


@pytest.mark.asyncio
async def test_ping(client):
    resp = await client.get("/ping")
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_track_sound_creates_sound_and_refresh_job(client, session):
    resp = await client.post(
        "/api/sounds",
        json={"workspaceId": "ws-1", "platform": "tiktok", "url": " https://www.tiktok.com/music/x-7001 "},
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["sound"]["sound_platform_id"] == "7001"
    assert body["sound"]["title"] == "Resolved Title"
    assert client.provider.calls == [("resolve", "https://www.tiktok.com/music/x-7001")]

    job = await session.get(SoundJob, body["job_id"])
    assert job.job_type == JobType.refresh_sound.value
    assert job.payload["sound_id"] == body["sound"]["id"]


@pytest.mark.asyncio
async def test_tracking_same_sound_twice_keeps_one_row(client):
    payload = {"workspaceId": "ws-1", "platform": "tiktok", "url": "https://www.tiktok.com/music/x-7001"}

    first = (await client.post("/api/sounds", json=payload)).json()
    second = (await client.post("/api/sounds", json=payload)).json()

    assert first["sound"]["id"] == second["sound"]["id"]
    assert first["job_id"] != second["job_id"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, status_code",
    [
        (InvalidSoundUrl("bad link", "TIKTOK_INVALID_URL"), 422),
        (UnsupportedUrlForm("video link", "TIKTOK_VIDEO_URL_NOT_SUPPORTED"), 409),
        (ProviderBlocked("quota", "TIKTOK_APIFY_BLOCKED"), 503),
    ],
)
async def test_track_sound_maps_provider_errors(client, session, error, status_code):
    client.provider.resolve_error = error

    resp = await client.post(
        "/api/sounds", json={"workspaceId": "ws-1", "platform": "tiktok", "url": "https://www.tiktok.com/x"}
    )

    assert resp.status_code == status_code
    assert resp.json()["detail"]["code"] == error.code
    assert await session.scalar(select(SoundJob)) is None


@pytest.mark.asyncio
async def test_track_sound_without_credentials(client):
    app.dependency_overrides[get_provider_factory] = lambda: _factory_raising(
        ProviderConfigError("APIFY_TOKEN is required for TikTok provider")
    )

    resp = await client.post(
        "/api/sounds", json={"workspaceId": "ws-1", "platform": "tiktok", "url": "https://www.tiktok.com/music/1"}
    )

    assert resp.status_code == 503
    assert "APIFY_TOKEN" in resp.json()["detail"]["error"]


@pytest.mark.asyncio
async def test_track_sound_rejects_unknown_platform(client):
    resp = await client.post(
        "/api/sounds", json={"workspaceId": "ws-1", "platform": "myspace", "url": "https://myspace.com/x"}
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_refresh_sound_endpoint(client, sound):
    missing = await client.post("/api/sounds/999/refresh")
    assert missing.status_code == 404

    resp = await client.post(f"/api/sounds/{sound.id}/refresh")
    body = resp.json()
    assert body["ok"] is True
    assert body["sound_id"] == sound.id
    assert isinstance(body["job_id"], int)


@pytest.mark.asyncio
async def test_run_jobs_with_empty_queue(client):
    resp = await client.post("/api/jobs/run")
    assert resp.status_code == 200
    assert resp.json() == {"processed": 0, "results": []}


@pytest.mark.asyncio
async def test_run_jobs_reports_camel_case_results(client, session, sound, now):
    job = await enqueue_job(session, sound.workspace_id, RefreshSoundPayload(sound_id=sound.id), run_at=now)
    await session.commit()

    resp = await client.post("/api/jobs/run", json={"startNow": True})

    assert resp.json() == {"processed": 1, "results": [{"jobId": job.id, "success": True}]}


@pytest.mark.asyncio
async def test_run_jobs_failure_shape(client, session, now):
    job = await enqueue_job(session, "ws-1", RefreshSoundPayload(sound_id=404), run_at=now)
    await session.commit()

    [result] = (await client.post("/api/jobs/run")).json()["results"]

    assert result["jobId"] == job.id
    assert result["success"] is False
    assert result["willRetry"] is True
    assert "nextRunAt" in result
    assert "404" in result["error"]


@pytest.mark.asyncio
async def test_run_jobs_can_be_handed_to_worker(client, monkeypatch, settings):
    class _Result:
        id = "celery-123"

    class _Task:
        calls = 0

        def delay(self):
            _Task.calls += 1
            return _Result()

    monkeypatch.setattr(routes_jobs, "get_settings", lambda: settings.model_copy(update={"celery_enabled": True}))
    monkeypatch.setattr(tasks, "run_jobs", _Task())

    resp = await client.post("/api/jobs/run", json={"startNow": False})

    assert resp.json() == {"processed": 0, "results": [], "dispatched": "celery-123"}
    assert _Task.calls == 1


@pytest.mark.asyncio
async def test_list_jobs_and_health(client, session, now):
    await enqueue_job(session, "ws-1", RefreshSoundPayload(sound_id=1), run_at=now)
    await enqueue_job(session, "ws-2", RefreshSoundPayload(sound_id=2), run_at=now)
    await session.commit()

    listed = (await client.get("/api/jobs", params={"workspace_id": "ws-2"})).json()
    assert [j["workspace_id"] for j in listed] == ["ws-2"]
    assert listed[0]["status"] == "queued"

    health = (await client.get("/api/jobs/health")).json()
    assert health["by_status"]["queued"] == 2
    assert health["overdue_queued"] == 2
    assert health["scheduler_running"] is False


@pytest.mark.asyncio
async def test_scheduler_respects_disabled_flag(client):
    status = (await client.get("/api/scheduler/status")).json()
    assert status["running"] is False
    assert status["enabled"] is False
    assert status["next_run"] is None

    resp = await client.post("/api/scheduler/start")
    assert resp.status_code == 409
