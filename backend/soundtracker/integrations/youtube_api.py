from __future__ import annotations

from typing import Any

import httpx

YT_VIDEOS_URL = "https://www.googleapis.com/youtube/v3/videos"


class YouTubeApiError(Exception):
    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status

    @property
    def blocked(self) -> bool:
        # The Data API answers 403 for exhausted quota and disabled keys.
        return self.status in {403, 429}


def _client(timeout: float, transport: httpx.AsyncBaseTransport | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, transport=transport, follow_redirects=True)


def _parse_int(val: Any) -> int | None:
    try:
        return int(val)
    except (TypeError, ValueError):
        return None


async def expand_url(
    url: str, *, timeout: float = 15.0, transport: httpx.AsyncBaseTransport | None = None
) -> str:
    """Follow redirects of short links (youtu.be, share links); fall back to the input."""
    try:
        async with _client(timeout, transport) as client:
            resp = await client.head(url)
        return str(resp.url) or url
    except httpx.HTTPError:
        return url


async def fetch_videos_details(
    api_key: str,
    video_ids: list[str],
    *,
    timeout: float = 15.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[dict[str, Any]]:
    if not api_key:
        raise YouTubeApiError("YOUTUBE_API_KEY missing")
    if not video_ids:
        return []
    params = {
        "part": "snippet,statistics",
        "id": ",".join(video_ids[:50]),
        "key": api_key,
    }
    async with _client(timeout, transport) as client:
        try:
            resp = await client.get(YT_VIDEOS_URL, params=params)
        except (httpx.TransportError, httpx.TimeoutException):
            # single retry
            resp = await client.get(YT_VIDEOS_URL, params=params)
    if resp.status_code >= 400:
        raise YouTubeApiError(f"YouTube videos error: {resp.status_code}", status=resp.status_code)
    data = resp.json()
    result = []
    for item in data.get("items", []):
        snippet = item.get("snippet", {})
        stats = item.get("statistics", {})
        thumbnails = snippet.get("thumbnails") or {}
        thumb = (thumbnails.get("high") or thumbnails.get("default") or {}).get("url")
        result.append({
            "video_id": item.get("id"),
            "title": snippet.get("title"),
            "channel_title": snippet.get("channelTitle"),
            "channel_id": snippet.get("channelId"),
            "published_at": snippet.get("publishedAt"),
            "thumbnail_url": thumb,
            "views": _parse_int(stats.get("viewCount")),
            "likes": _parse_int(stats.get("likeCount")),
            "comments": _parse_int(stats.get("commentCount")),
        })
    return result
