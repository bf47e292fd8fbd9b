from __future__ import annotations

import re
from typing import Any

import httpx

from soundtracker.integrations.apify_client import ApifyError, run_actor_get_items

from .base import (
    InvalidSoundUrl,
    ListMode,
    PostMetrics,
    ProviderBlocked,
    ProviderError,
    ResolvedSound,
    SoundAggregates,
    SoundPost,
    SoundPostsPage,
    SoundProvider,
    UnsupportedUrlForm,
    parse_dt,
    parse_int,
    parse_unix,
)

ACTOR_TIKTOK = "clockworks/tiktok-scraper"

_MUSIC_SLUG_RE = re.compile(r"music/([^/?#]+)-(\d+)")
_MUSIC_ID_RE = re.compile(r"music/(\d+)")
_SHORT_HOSTS = ("vm.tiktok.com", "vt.tiktok.com")


def music_url(sound_id: str) -> str:
    return f"https://www.tiktok.com/music/-{sound_id}"


def title_from_slug(slug: str) -> str | None:
    """``original-sound-artist`` -> ``Original Sound Artist``."""
    words = [w for w in re.split(r"[-_]+", slug) if w]
    if not words:
        return None
    return " ".join(w[:1].upper() + w[1:] for w in words)


def _stats(item: dict) -> dict:
    # clockworks returns counters at top level, older runs nest them under ``stats``
    return item.get("stats") or item


def _metrics_from_item(item: dict) -> PostMetrics:
    stats = _stats(item)
    return PostMetrics(
        views=parse_int(stats.get("playCount") or stats.get("plays") or stats.get("viewCount")),
        likes=parse_int(stats.get("diggCount") or stats.get("likes") or stats.get("heartCount")),
        comments=parse_int(stats.get("commentCount")),
        shares=parse_int(stats.get("shareCount")),
        meta={"source": "apify", "actor": ACTOR_TIKTOK},
    )


def _post_from_item(item: dict) -> SoundPost | None:
    video_id = item.get("id") or item.get("video_id")
    if not video_id:
        return None
    author = item.get("authorMeta") or item.get("author") or {}
    handle = author.get("name") or author.get("uniqueId")
    url = item.get("webVideoUrl") or item.get("shareUrl")
    if not url:
        url = f"https://www.tiktok.com/@{handle or '_'}/video/{video_id}"
    return SoundPost(
        post_platform_id=str(video_id),
        post_url=url,
        creator_handle=handle,
        creator_platform_id=str(author["id"]) if author.get("id") else None,
        created_at_platform=parse_dt(item.get("createTimeISO")) or parse_unix(item.get("createTime")),
        metrics=_metrics_from_item(item),
    )


class TikTokProvider(SoundProvider):
    """TikTok sounds via the Apify TikTok scraper."""

    platform = "tiktok"

    def __init__(
        self,
        apify_token: str,
        *,
        timeout_sec: float = 30,
        max_items: int = 100,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._token = apify_token
        self._timeout = timeout_sec
        self._max_items = max_items
        self._transport = transport

    async def resolve_sound_from_url(self, url: str) -> ResolvedSound:
        if "/video/" in url or "/v/" in url or any(h in url for h in _SHORT_HOSTS):
            raise UnsupportedUrlForm(
                "TikTok video links must be resolved to their sound first",
                "TIKTOK_VIDEO_URL_NOT_SUPPORTED",
            )
        title = None
        match = _MUSIC_SLUG_RE.search(url)
        if match:
            title = title_from_slug(match.group(1))
            sound_id = match.group(2)
        else:
            match = _MUSIC_ID_RE.search(url)
            if not match:
                raise InvalidSoundUrl("Could not extract music ID from TikTok URL", "TIKTOK_INVALID_URL")
            sound_id = match.group(1)
        return ResolvedSound(
            platform=self.platform,
            sound_platform_id=sound_id,
            canonical_sound_url=url,
            title=title,
        )

    async def _scrape(self, payload: dict[str, Any]) -> list[dict]:
        try:
            return await run_actor_get_items(
                self._token, ACTOR_TIKTOK, payload, timeout_s=self._timeout, transport=self._transport
            )
        except ApifyError as exc:
            if exc.blocked:
                raise ProviderBlocked(f"Apify refused TikTok scrape ({exc.status})", "TIKTOK_APIFY_BLOCKED") from exc
            raise ProviderError(str(exc), "TIKTOK_APIFY_ERROR") from exc

    async def _scrape_music(self, sound_id: str) -> list[dict]:
        return await self._scrape(
            {
                "musics": [music_url(sound_id)],
                "resultsPerPage": self._max_items,
                "maxItems": self._max_items,
            }
        )

    async def get_sound_aggregates(self, sound_id: str) -> SoundAggregates:
        try:
            items = await self._scrape_music(sound_id)
        except ProviderBlocked as exc:
            self._warn(f"aggregates blocked sound={sound_id}: {exc}")
            return self._placeholder("TikTok scraping is temporarily unavailable", blocked=True, soundId=sound_id)

        meta: dict[str, Any] = {"source": "apify", "actor": ACTOR_TIKTOK, "scraped": len(items)}
        music = next((i.get("musicMeta") for i in items if i.get("musicMeta")), None) or {}
        if music:
            meta["title"] = music.get("musicName")
            meta["artist"] = music.get("musicAuthor")
            meta["thumbnail_url"] = music.get("coverMediumUrl") or music.get("coverThumbUrl")
        return SoundAggregates(total_uses=len(items), meta=meta)

    async def list_sound_posts(
        self, sound_id: str, mode: ListMode, cursor: str | None = None
    ) -> SoundPostsPage:
        items = await self._scrape_music(sound_id)
        posts = [p for p in (_post_from_item(i) for i in items) if p is not None]
        if mode == "top":
            posts.sort(key=lambda p: p.views, reverse=True)
        else:
            posts.sort(key=lambda p: p.created_at_platform.timestamp() if p.created_at_platform else 0, reverse=True)
        # a single actor run returns everything it will ever return
        return SoundPostsPage(posts=posts, next_cursor=None)

    async def get_post_metrics(self, post_id: str, post_url: str | None = None) -> PostMetrics:
        url = post_url or f"https://www.tiktok.com/@_/video/{post_id}"
        items = await self._scrape({"postURLs": [url], "resultsPerPage": 1})
        item = next((i for i in items if str(i.get("id")) == str(post_id)), None) or (items[0] if items else None)
        if item is None:
            raise ProviderError(f"TikTok post {post_id} not returned by scraper", "TIKTOK_POST_NOT_FOUND")
        return _metrics_from_item(item)
