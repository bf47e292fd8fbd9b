from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from soundtracker.providers.base import (
    PostMetrics,
    ProviderBlocked,
    ResolvedSound,
    SoundAggregates,
    SoundPost,
    SoundPostsPage,
    SoundProvider,
)


def utc(dt: datetime | None) -> datetime | None:
    """SQLite hands datetimes back naive; everything stored here is UTC."""
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def make_post(post_id: str, views: int | None = None, **kwargs) -> SoundPost:
    return SoundPost(
        post_platform_id=post_id,
        post_url=f"https://www.tiktok.com/@creator/video/{post_id}",
        creator_handle=kwargs.pop("creator_handle", "creator"),
        metrics=PostMetrics(views=views) if views is not None else None,
        **kwargs,
    )


class FakeProvider(SoundProvider):
    """Scripted provider; ``blocked`` names operations that raise ProviderBlocked."""

    platform = "tiktok"

    def __init__(
        self,
        *,
        aggregates: SoundAggregates | None = None,
        top: list[SoundPost] | None = None,
        recent: list[SoundPost] | None = None,
        metrics: PostMetrics | None = None,
        resolved: ResolvedSound | None = None,
        resolve_error: Exception | None = None,
        blocked: tuple[str, ...] = (),
        pages: dict[tuple[str, str | None], SoundPostsPage] | None = None,
        delay: float = 0,
    ):
        self.aggregates = aggregates or SoundAggregates(total_uses=0)
        self.posts = {"top": top or [], "recent": recent or []}
        self.pages = pages
        self.metrics = metrics or PostMetrics(views=1, likes=2, comments=3, shares=4)
        self.resolved = resolved
        self.resolve_error = resolve_error
        self.blocked = set(blocked)
        self.delay = delay
        self.calls: list[tuple] = []

    async def _enter(self, op: str, *args):
        self.calls.append((op, *args))
        if self.delay:
            await asyncio.sleep(self.delay)
        if op in self.blocked:
            raise ProviderBlocked(f"{op} is blocked", "FAKE_BLOCKED")

    async def resolve_sound_from_url(self, url: str) -> ResolvedSound:
        await self._enter("resolve", url)
        if self.resolve_error is not None:
            raise self.resolve_error
        return self.resolved or ResolvedSound(
            platform=self.platform,
            sound_platform_id="7001",
            canonical_sound_url=url,
            title="Resolved Title",
        )

    async def get_sound_aggregates(self, sound_id: str) -> SoundAggregates:
        await self._enter("aggregates", sound_id)
        return self.aggregates

    async def list_sound_posts(self, sound_id, mode, cursor=None) -> SoundPostsPage:
        await self._enter("list", mode, cursor)
        if self.pages is not None:
            return self.pages.get((mode, cursor), SoundPostsPage())
        return SoundPostsPage(posts=list(self.posts[mode]))

    async def get_post_metrics(self, post_id: str, post_url: str | None = None) -> PostMetrics:
        await self._enter("metrics", post_id)
        return self.metrics
