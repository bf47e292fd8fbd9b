"""
Append-only snapshot store.

Sound and post snapshots are only ever inserted. A blocked snapshot carries
null metrics and ``meta.blocked = true`` so "unknown" never reads as "zero".
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from soundtracker.models import PostSnapshot, SoundSnapshot, TrackedPost, TrackedSound
from soundtracker.providers.base import PostMetrics, ProviderBlocked, SoundAggregates


def _blocked_meta(exc: ProviderBlocked, **extra: Any) -> dict[str, Any]:
    return {"blocked": True, "code": exc.code, "reason": str(exc), **extra}


def record_sound_snapshot(
    session: AsyncSession,
    sound: TrackedSound,
    aggregates: SoundAggregates,
    *,
    captured_at: datetime | None = None,
) -> SoundSnapshot:
    # a placeholder produced by a refusal upstream is unknown usage, not zero
    total_uses = None if aggregates.meta.get("blocked") else aggregates.total_uses
    snap = SoundSnapshot(
        workspace_id=sound.workspace_id,
        sound_id=sound.id,
        total_uses=total_uses,
        meta=dict(aggregates.meta),
        captured_at=captured_at or datetime.now(timezone.utc),
    )
    session.add(snap)
    return snap


def record_blocked_sound_snapshot(
    session: AsyncSession, sound: TrackedSound, exc: ProviderBlocked, *, captured_at: datetime | None = None
) -> SoundSnapshot:
    snap = SoundSnapshot(
        workspace_id=sound.workspace_id,
        sound_id=sound.id,
        total_uses=None,
        meta=_blocked_meta(exc),
        captured_at=captured_at or datetime.now(timezone.utc),
    )
    session.add(snap)
    return snap


def record_post_snapshot(
    session: AsyncSession,
    post: TrackedPost,
    metrics: PostMetrics,
    *,
    captured_at: datetime | None = None,
    source: str | None = None,
) -> PostSnapshot:
    meta = dict(metrics.meta)
    if source:
        meta["source"] = source
    snap = PostSnapshot(
        workspace_id=post.workspace_id,
        post_id=post.id,
        views=metrics.views,
        likes=metrics.likes,
        comments=metrics.comments,
        shares=metrics.shares,
        meta=meta,
        captured_at=captured_at or datetime.now(timezone.utc),
    )
    session.add(snap)
    return snap


def record_blocked_post_snapshot(
    session: AsyncSession, post: TrackedPost, exc: ProviderBlocked, *, captured_at: datetime | None = None
) -> PostSnapshot:
    snap = PostSnapshot(
        workspace_id=post.workspace_id,
        post_id=post.id,
        meta=_blocked_meta(exc),
        captured_at=captured_at or datetime.now(timezone.utc),
    )
    session.add(snap)
    return snap
