from __future__ import annotations

import re

import httpx

from soundtracker.integrations.youtube_api import YouTubeApiError, expand_url, fetch_videos_details

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
)

_VIDEO_ID_RE = re.compile(r"(?:youtube\.com/watch\?(?:[^#]*&)?v=|youtu\.be/|youtube\.com/shorts/)([^&?/#]+)")


class YouTubeProvider(SoundProvider):
    """YouTube has no sound pages; the video id doubles as the sound id."""

    platform = "youtube"

    def __init__(
        self,
        api_key: str,
        *,
        timeout_sec: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = api_key
        self._timeout = timeout_sec
        self._transport = transport

    async def _video(self, video_id: str) -> dict:
        try:
            videos = await fetch_videos_details(
                self._api_key, [video_id], timeout=self._timeout, transport=self._transport
            )
        except YouTubeApiError as exc:
            if exc.blocked:
                raise ProviderBlocked("YouTube API quota exceeded or blocked", "YOUTUBE_API_BLOCKED") from exc
            raise ProviderError(str(exc), "YOUTUBE_API_ERROR") from exc
        if not videos:
            raise ProviderError(f"YouTube video {video_id} not found", "YOUTUBE_VIDEO_NOT_FOUND")
        return videos[0]

    async def resolve_sound_from_url(self, url: str) -> ResolvedSound:
        expanded = await expand_url(url, timeout=self._timeout, transport=self._transport)
        match = _VIDEO_ID_RE.search(expanded) or _VIDEO_ID_RE.search(url)
        if not match:
            raise InvalidSoundUrl("Could not extract video ID from YouTube URL", "YOUTUBE_INVALID_URL")
        video_id = match.group(1)
        video = await self._video(video_id)
        return ResolvedSound(
            platform=self.platform,
            sound_platform_id=video_id,
            canonical_sound_url=f"https://www.youtube.com/watch?v={video_id}",
            title=video.get("title"),
            artist=video.get("channel_title"),
            thumbnail_url=video.get("thumbnail_url"),
        )

    async def get_sound_aggregates(self, sound_id: str) -> SoundAggregates:
        return self._placeholder("YouTube aggregate data not available via API")

    async def list_sound_posts(
        self, sound_id: str, mode: ListMode, cursor: str | None = None
    ) -> SoundPostsPage:
        raise ProviderBlocked("YouTube post listing by sound not available", "YOUTUBE_API_LIMITED")

    async def get_post_metrics(self, post_id: str, post_url: str | None = None) -> PostMetrics:
        video = await self._video(post_id)
        return PostMetrics(
            views=video.get("views"),
            likes=video.get("likes"),
            comments=video.get("comments"),
            shares=None,
            meta={"source": "youtube_api"},
        )
