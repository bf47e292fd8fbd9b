import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["CELERY_ENABLED"] = "false"
os.environ.pop("APIFY_TOKEN", None)
os.environ.pop("YOUTUBE_API_KEY", None)

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from soundtracker import models  # noqa: E402,F401
from soundtracker.db import Base  # noqa: E402
from soundtracker.models import TrackedSound  # noqa: E402
from soundtracker.services.job_runner import JobRunner  # noqa: E402
from soundtracker.settings import get_settings  # noqa: E402

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return T0


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'soundtracker.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    # sequential handlers: one SQLite writer at a time
    return get_settings().model_copy(update={"runner_max_parallel": 1})


@pytest.fixture
def make_runner(session_factory, settings):
    def _make(provider, **overrides) -> JobRunner:
        return JobRunner(
            session_factory,
            lambda platform: provider,
            settings.model_copy(update=overrides) if overrides else settings,
        )

    return _make


@pytest_asyncio.fixture
async def sound(session) -> TrackedSound:
    sound = TrackedSound(
        workspace_id="ws-1",
        platform="tiktok",
        sound_platform_id="7001",
        source_url="https://www.tiktok.com/music/original-sound-7001",
    )
    session.add(sound)
    await session.commit()
    return sound
