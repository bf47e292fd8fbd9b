"""
Typed job payloads.

Each JobType has exactly one payload model; `parse_payload` picks it from
PAYLOAD_MODELS so a stored ``payload`` JSON can never be read with the wrong shape.
"""
from __future__ import annotations

from typing import Literal, Union

from pydantic import BaseModel, ConfigDict

from soundtracker.models import JobType, SoundPlatform


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class RefreshSoundPayload(_Payload):
    job_type: Literal[JobType.refresh_sound] = JobType.refresh_sound
    sound_id: int


class DiscoverPostsPayload(_Payload):
    job_type: Literal[JobType.discover_posts] = JobType.discover_posts
    sound_id: int


class RefreshPostMetricsPayload(_Payload):
    job_type: Literal[JobType.refresh_post_metrics] = JobType.refresh_post_metrics
    platform: SoundPlatform
    post_platform_id: str
    post_url: str | None = None


JobPayload = Union[RefreshSoundPayload, DiscoverPostsPayload, RefreshPostMetricsPayload]

PAYLOAD_MODELS: dict[JobType, type[_Payload]] = {
    JobType.refresh_sound: RefreshSoundPayload,
    JobType.discover_posts: DiscoverPostsPayload,
    JobType.refresh_post_metrics: RefreshPostMetricsPayload,
}


def parse_payload(job_type: JobType | str, payload: dict | None) -> JobPayload:
    model = PAYLOAD_MODELS[JobType(job_type)]
    return model.model_validate({**(payload or {}), "job_type": JobType(job_type)})
