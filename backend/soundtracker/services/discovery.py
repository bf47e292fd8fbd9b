"""
Discovery & dedup pipeline.

Lists a sound's posts in top and recent order, merges them (top first, so a
post present in both keeps its top-mode data), upserts them on
(workspace_id, platform, post_platform_id) and fans out a bounded number of
``refresh_post_metrics`` jobs for the most viewed ones.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from soundtracker.db import dialect_insert
from soundtracker.models import TrackedPost, TrackedSound
from soundtracker.providers.base import ListMode, ProviderBlocked, SoundPost, SoundProvider
from soundtracker.settings import get_settings

from .job_payloads import RefreshPostMetricsPayload
from .job_queue import enqueue_jobs
from .snapshots import record_post_snapshot

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    posts_discovered: int = 0
    metrics_queued: int = 0
    blocked: bool = False
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "posts_discovered": self.posts_discovered,
            "metrics_queued": self.metrics_queued,
            "blocked": self.blocked,
            "reason": self.reason,
        }


def merge_posts(*batches: Iterable[SoundPost]) -> list[SoundPost]:
    """Concatenate batches and drop repeated post ids, keeping the first occurrence."""
    seen: set[str] = set()
    merged: list[SoundPost] = []
    for batch in batches:
        for post in batch:
            if post.post_platform_id in seen:
                continue
            seen.add(post.post_platform_id)
            merged.append(post)
    return merged


def select_for_metrics(posts: list[SoundPost], limit: int) -> list[SoundPost]:
    """Top ``limit`` posts by views; missing views count as 0, ties keep input order."""
    return sorted(posts, key=lambda p: p.views, reverse=True)[:limit]


async def _list_mode(provider: SoundProvider, sound_id: str, mode: ListMode, max_pages: int) -> list[SoundPost]:
    posts: list[SoundPost] = []
    cursor = None
    for _ in range(max(max_pages, 1)):
        page = await provider.list_sound_posts(sound_id, mode, cursor)
        posts.extend(page.posts)
        cursor = page.next_cursor
        if not cursor:
            break
    return posts


async def upsert_posts(
    session: AsyncSession, sound: TrackedSound, posts: list[SoundPost], *, now: datetime
) -> dict[str, TrackedPost]:
    """Insert-or-update posts and return the stored rows keyed by post_platform_id."""
    if not posts:
        return {}
    rows = [
        {
            "workspace_id": sound.workspace_id,
            "sound_id": sound.id,
            "platform": sound.platform,
            "post_platform_id": p.post_platform_id,
            "post_url": p.post_url,
            "creator_handle": p.creator_handle,
            "creator_platform_id": p.creator_platform_id,
            "created_at_platform": p.created_at_platform,
            "first_seen_at": now,
            "last_seen_at": now,
        }
        for p in posts
    ]
    stmt = dialect_insert(session, TrackedPost).values(rows)
    excluded = stmt.excluded
    stmt = stmt.on_conflict_do_update(
        index_elements=["workspace_id", "platform", "post_platform_id"],
        set_={
            "post_url": excluded.post_url,
            "creator_handle": func.coalesce(excluded.creator_handle, TrackedPost.creator_handle),
            "creator_platform_id": func.coalesce(excluded.creator_platform_id, TrackedPost.creator_platform_id),
            "created_at_platform": func.coalesce(excluded.created_at_platform, TrackedPost.created_at_platform),
            "last_seen_at": excluded.last_seen_at,
        },
    )
    await session.execute(stmt)

    stored = await session.scalars(
        select(TrackedPost)
        .where(
            TrackedPost.workspace_id == sound.workspace_id,
            TrackedPost.platform == sound.platform,
            TrackedPost.post_platform_id.in_([p.post_platform_id for p in posts]),
        )
        .execution_options(populate_existing=True)
    )
    return {row.post_platform_id: row for row in stored.all()}


async def discover_sound_posts(
    session: AsyncSession,
    sound: TrackedSound,
    provider: SoundProvider,
    *,
    now: datetime | None = None,
    limit: int | None = None,
    max_pages: int | None = None,
) -> DiscoveryResult:
    settings = get_settings()
    now = now or datetime.now(timezone.utc)
    limit = limit if limit is not None else settings.discovery_metric_jobs_limit
    max_pages = max_pages if max_pages is not None else settings.discovery_max_pages

    try:
        top = await _list_mode(provider, sound.sound_platform_id, "top", max_pages)
        recent = await _list_mode(provider, sound.sound_platform_id, "recent", max_pages)
    except ProviderBlocked as exc:
        logger.info(f"[discovery] sound={sound.id} blocked: {exc.code}")
        return DiscoveryResult(blocked=True, reason=str(exc))

    posts = merge_posts(top, recent)
    stored = await upsert_posts(session, sound, posts, now=now)

    selected = select_for_metrics(posts, limit)
    queued = await enqueue_jobs(
        session,
        sound.workspace_id,
        (
            RefreshPostMetricsPayload(
                platform=sound.platform,
                post_platform_id=p.post_platform_id,
                post_url=p.post_url,
            )
            for p in selected
        ),
        run_at=now,
    )

    for p in selected:
        row = stored.get(p.post_platform_id)
        if row is not None and p.metrics is not None:
            record_post_snapshot(session, row, p.metrics, captured_at=now, source="discovery")

    logger.info(
        f"[discovery] sound={sound.id} top={len(top)} recent={len(recent)} "
        f"unique={len(posts)} metrics_queued={queued}"
    )
    return DiscoveryResult(posts_discovered=len(posts), metrics_queued=queued)
