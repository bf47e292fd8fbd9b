from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from soundtracker.db import dialect_insert
from soundtracker.models import SoundJob, TrackedSound
from soundtracker.providers.base import SoundProvider

from .job_payloads import RefreshSoundPayload
from .job_queue import enqueue_job

logger = logging.getLogger(__name__)


async def track_sound_from_url(
    session: AsyncSession,
    provider: SoundProvider,
    *,
    workspace_id: str,
    url: str,
    created_by: str | None = None,
    now: datetime | None = None,
) -> tuple[TrackedSound, SoundJob]:
    """Resolve a link, upsert the sound and queue its first refresh.

    Provider errors (InvalidSoundUrl, UnsupportedUrlForm, ...) propagate before
    anything is written. The caller commits.
    """
    now = now or datetime.now(timezone.utc)
    resolved = await provider.resolve_sound_from_url(url)

    stmt = dialect_insert(session, TrackedSound).values(
        workspace_id=workspace_id,
        platform=resolved.platform,
        sound_platform_id=resolved.sound_platform_id,
        source_url=resolved.canonical_sound_url or url,
        title=resolved.title,
        artist=resolved.artist,
        thumbnail_url=resolved.thumbnail_url,
        created_by=created_by,
    )
    excluded = stmt.excluded
    # an existing row only gets its empty descriptive fields filled
    stmt = stmt.on_conflict_do_update(
        index_elements=["workspace_id", "platform", "sound_platform_id"],
        set_={
            "title": func.coalesce(TrackedSound.title, excluded.title),
            "artist": func.coalesce(TrackedSound.artist, excluded.artist),
            "thumbnail_url": func.coalesce(TrackedSound.thumbnail_url, excluded.thumbnail_url),
        },
    )
    await session.execute(stmt)

    sound = await session.scalar(
        select(TrackedSound)
        .where(
            TrackedSound.workspace_id == workspace_id,
            TrackedSound.platform == resolved.platform,
            TrackedSound.sound_platform_id == resolved.sound_platform_id,
        )
        .execution_options(populate_existing=True)
    )
    job = await request_sound_refresh(session, sound, run_at=now)
    logger.info(
        f"[sound_tracking] ws={workspace_id} {resolved.platform}:{resolved.sound_platform_id} "
        f"sound={sound.id} refresh_job={job.id}"
    )
    return sound, job


async def request_sound_refresh(
    session: AsyncSession, sound: TrackedSound, *, run_at: datetime | None = None
) -> SoundJob:
    return await enqueue_job(
        session,
        sound.workspace_id,
        RefreshSoundPayload(sound_id=sound.id),
        run_at=run_at,
    )
