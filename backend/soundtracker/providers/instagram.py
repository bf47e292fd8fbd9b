from __future__ import annotations

import re

import httpx

from soundtracker.integrations.apify_client import ApifyError, run_actor_and_get_dataset_items

from .base import (
    InvalidSoundUrl,
    ListMode,
    PostMetrics,
    ProviderBlocked,
    ProviderError,
    ResolvedSound,
    SoundAggregates,
    SoundPostsPage,
    SoundProvider,
    UnsupportedUrlForm,
    parse_int,
)

ACTOR_INSTAGRAM = "scraper-engine/instagram-post-scraper"

_AUDIO_RE = re.compile(r"instagram\.com/reels?/audio/(\d+)")
_POST_RE = re.compile(r"instagram\.com/(?:reels?|p|tv)/[^/?#]+")


class InstagramProvider(SoundProvider):
    platform = "instagram"

    def __init__(
        self,
        apify_token: str | None = None,
        *,
        timeout_sec: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._token = apify_token
        self._timeout = timeout_sec
        self._transport = transport

    async def resolve_sound_from_url(self, url: str) -> ResolvedSound:
        match = _AUDIO_RE.search(url)
        if match:
            audio_id = match.group(1)
            return ResolvedSound(
                platform=self.platform,
                sound_platform_id=audio_id,
                canonical_sound_url=f"https://www.instagram.com/reels/audio/{audio_id}/",
            )
        if _POST_RE.search(url):
            raise UnsupportedUrlForm(
                "Instagram reel links must be resolved to their audio page first",
                "INSTAGRAM_REEL_URL_NOT_SUPPORTED",
            )
        raise InvalidSoundUrl("Could not extract audio ID from Instagram URL", "INSTAGRAM_INVALID_URL")

    async def get_sound_aggregates(self, sound_id: str) -> SoundAggregates:
        return self._placeholder(
            "Instagram aggregate data is collected via scraping, not real-time API",
            audioId=sound_id,
        )

    async def list_sound_posts(
        self, sound_id: str, mode: ListMode, cursor: str | None = None
    ) -> SoundPostsPage:
        raise ProviderBlocked("Instagram post listing by audio requires scraping", "INSTAGRAM_SCRAPING_REQUIRED")

    async def get_post_metrics(self, post_id: str, post_url: str | None = None) -> PostMetrics:
        if not self._token:
            raise ProviderError("APIFY_TOKEN required for Instagram post metrics", "INSTAGRAM_API_KEY_MISSING")
        url = post_url or f"https://www.instagram.com/p/{post_id}/"
        try:
            items, meta = await run_actor_and_get_dataset_items(
                self._token,
                ACTOR_INSTAGRAM,
                {"startUrls": [{"url": url}], "resultsLimit": 1},
                clean=True,
                limit=1,
                timeout_s=self._timeout,
                transport=self._transport,
            )
        except ApifyError as exc:
            if exc.blocked or "actor-is-not-rented" in str(exc.detail.get("body", "")):
                raise ProviderBlocked(f"Apify refused Instagram scrape ({exc.status})", "INSTAGRAM_APIFY_BLOCKED") from exc
            raise ProviderError(str(exc), "INSTAGRAM_APIFY_ERROR") from exc
        if not items:
            raise ProviderError(f"Instagram post {post_id} not returned by scraper", "INSTAGRAM_POST_NOT_FOUND")
        item = items[0]
        return PostMetrics(
            views=parse_int(
                item.get("play_count") or item.get("video_view_count") or item.get("views") or item.get("view_count")
            ),
            likes=parse_int(item.get("like_count") or item.get("likes") or item.get("likes_count")),
            comments=parse_int(item.get("comment_count") or item.get("comments") or item.get("comments_count")),
            shares=None,
            meta={"source": "apify", "actor": ACTOR_INSTAGRAM, "runId": meta.get("runId")},
        )
