"""
Per-platform sound providers.

Each platform adapter implements the `SoundProvider` interface:
    resolve_sound_from_url(url) -> ResolvedSound
    get_sound_aggregates(sound_id) -> SoundAggregates
    list_sound_posts(sound_id, mode, cursor) -> SoundPostsPage
    get_post_metrics(post_id, post_url) -> PostMetrics

"Cannot produce data right now" (quota, rate limit, unsupported operation) is
raised as `ProviderBlocked`, never as an empty result, so callers can tell
"zero" from "unknown".
"""
from __future__ import annotations

import abc
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

logger = logging.getLogger(__name__)

ListMode = Literal["top", "recent"]
LIST_MODES: tuple[ListMode, ...] = ("top", "recent")


# ── Errors ───────────────────────────────────────────────────

class ProviderError(Exception):
    """Hard provider failure (bad input, missing credential, unexpected upstream shape)."""

    def __init__(self, message: str, code: str, blocked: bool = False):
        super().__init__(message)
        self.code = code
        self.blocked = blocked

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "blocked": self.blocked}


class ProviderBlocked(ProviderError):
    """Upstream refuses to serve data right now; not an application failure."""

    def __init__(self, message: str, code: str):
        super().__init__(message, code, blocked=True)


class InvalidSoundUrl(ProviderError):
    """The URL cannot identify a sound on this platform."""


class UnsupportedUrlForm(ProviderError):
    """The URL is valid but must be resolved through another path first (e.g. a video link)."""


class ProviderConfigError(RuntimeError):
    """A provider was requested whose required configuration is absent."""


# ── Credential sanitization ──────────────────────────────────

_SENSITIVE_PATTERNS = [
    (re.compile(r"Bearer\s+[A-Za-z0-9\-_\.]+", re.IGNORECASE), "Bearer ***"),
    (re.compile(r"(token|key|access_token|api_key)=[A-Za-z0-9\-_\.%]+", re.IGNORECASE), r"\1=***"),
    (re.compile(r"apify_api_[A-Za-z0-9]+"), "apify_api_***"),
    (re.compile(r"AIza[0-9A-Za-z\-_]{20,}"), "AIza***"),
]


def sanitize_error(text: str | None, limit: int = 1000) -> str | None:
    """Strip credentials from error text before it is persisted or returned."""
    if not text:
        return text
    for pattern, replacement in _SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text[:limit]


# ── Result dataclasses ───────────────────────────────────────

@dataclass
class ResolvedSound:
    platform: str
    sound_platform_id: str
    canonical_sound_url: str
    title: str | None = None
    artist: str | None = None
    thumbnail_url: str | None = None

    def to_dict(self) -> dict:
        return {
            "platform": self.platform,
            "sound_platform_id": self.sound_platform_id,
            "canonical_sound_url": self.canonical_sound_url,
            "title": self.title,
            "artist": self.artist,
            "thumbnail_url": self.thumbnail_url,
        }


@dataclass
class SoundAggregates:
    """Aggregate usage of a sound. A ``note`` in meta marks a placeholder, not real zero usage."""
    total_uses: int
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def is_placeholder(self) -> bool:
        return bool(self.meta.get("note"))


@dataclass
class PostMetrics:
    views: int | None = None
    likes: int | None = None
    comments: int | None = None
    shares: int | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "views": self.views,
            "likes": self.likes,
            "comments": self.comments,
            "shares": self.shares,
        }


@dataclass
class SoundPost:
    post_platform_id: str
    post_url: str
    creator_handle: str | None = None
    creator_platform_id: str | None = None
    created_at_platform: datetime | None = None
    metrics: PostMetrics | None = None

    @property
    def views(self) -> int:
        if self.metrics is None or self.metrics.views is None:
            return 0
        return self.metrics.views


@dataclass
class SoundPostsPage:
    posts: list[SoundPost] = field(default_factory=list)
    next_cursor: str | None = None


# ── Abstract provider ────────────────────────────────────────

class SoundProvider(abc.ABC):
    """Base class for platform-specific sound providers. Implementations hold no mutable state."""

    platform: str = "unknown"

    @abc.abstractmethod
    async def resolve_sound_from_url(self, url: str) -> ResolvedSound:
        """Extract a stable platform-native sound id from a user-submitted link."""

    @abc.abstractmethod
    async def get_sound_aggregates(self, sound_id: str) -> SoundAggregates:
        """Return total uses; unavailable data comes back as a note-tagged placeholder."""

    @abc.abstractmethod
    async def list_sound_posts(
        self, sound_id: str, mode: ListMode, cursor: str | None = None
    ) -> SoundPostsPage:
        """List posts using the sound, ranked by ``mode``."""

    @abc.abstractmethod
    async def get_post_metrics(self, post_id: str, post_url: str | None = None) -> PostMetrics:
        """Return engagement for one post; ``post_url`` helps scraper-backed platforms."""

    def _placeholder(self, note: str, **meta: Any) -> SoundAggregates:
        return SoundAggregates(total_uses=0, meta={"note": note, **meta})

    def _log(self, msg: str):
        logger.info(f"[{self.platform}] {msg}")

    def _warn(self, msg: str):
        logger.warning(f"[{self.platform}] {msg}")


# ── Parsing helpers shared by providers ──────────────────────

def parse_int(val: Any) -> int | None:
    if val is None or isinstance(val, bool):
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        return None


def parse_unix(val: Any) -> datetime | None:
    ts = parse_int(val)
    if ts is None:
        return None
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_dt(value: str | None) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
