"""Platform -> provider construction from explicit configuration."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import httpx

from soundtracker.models import SoundPlatform
from soundtracker.settings import Settings, get_settings

from .base import ProviderConfigError, SoundProvider
from .instagram import InstagramProvider
from .tiktok import TikTokProvider
from .youtube import YouTubeProvider

ProviderFactory = Callable[[str], SoundProvider]


@dataclass(frozen=True)
class ProviderConfig:
    apify_token: str | None = None
    youtube_api_key: str | None = None
    timeout_sec: float = 30
    tiktok_max_items: int = 100
    transport: httpx.AsyncBaseTransport | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ProviderConfig":
        settings = settings or get_settings()
        return cls(
            apify_token=settings.apify_token,
            youtube_api_key=settings.youtube_api_key,
            timeout_sec=settings.provider_timeout_sec,
            tiktok_max_items=settings.tiktok_max_items,
        )


def _tiktok(config: ProviderConfig) -> SoundProvider:
    if not config.apify_token:
        raise ProviderConfigError("APIFY_TOKEN is required for TikTok provider")
    return TikTokProvider(
        config.apify_token,
        timeout_sec=config.timeout_sec,
        max_items=config.tiktok_max_items,
        transport=config.transport,
    )


def _instagram(config: ProviderConfig) -> SoundProvider:
    return InstagramProvider(config.apify_token, timeout_sec=config.timeout_sec, transport=config.transport)


def _youtube(config: ProviderConfig) -> SoundProvider:
    if not config.youtube_api_key:
        raise ProviderConfigError("YOUTUBE_API_KEY is required for YouTube provider")
    return YouTubeProvider(config.youtube_api_key, timeout_sec=config.timeout_sec, transport=config.transport)


_BUILDERS: dict[SoundPlatform, Callable[[ProviderConfig], SoundProvider]] = {
    SoundPlatform.tiktok: _tiktok,
    SoundPlatform.instagram: _instagram,
    SoundPlatform.youtube: _youtube,
}


def create_provider(platform: str, config: ProviderConfig) -> SoundProvider:
    try:
        builder = _BUILDERS[SoundPlatform(platform)]
    except ValueError:
        raise ProviderConfigError(f"Unsupported platform: {platform}") from None
    return builder(config)


def provider_factory(config: ProviderConfig | None = None) -> ProviderFactory:
    """Bind a config so callers only pass the platform."""
    config = config or ProviderConfig.from_settings()

    def _create(platform: str) -> SoundProvider:
        return create_provider(platform, config)

    return _create
