from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import SoundPlatform


class RunJobsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start_now: bool = Field(default=True, alias="startNow")


class JobResultOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: int = Field(alias="jobId")
    success: bool
    error: str | None = None
    will_retry: bool | None = Field(default=None, alias="willRetry")
    next_run_at: datetime | None = Field(default=None, alias="nextRunAt")


class RunJobsResponse(BaseModel):
    processed: int
    results: list[JobResultOut] = []
    dispatched: str | None = None


class TrackSoundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workspace_id: str = Field(alias="workspaceId", min_length=1)
    platform: SoundPlatform
    url: str
    created_by: str | None = Field(default=None, alias="createdBy")

    @field_validator("url")
    @classmethod
    def normalize_url(cls, value: str) -> str:
        return value.strip()


class TrackedSoundRead(BaseModel):
    id: int
    workspace_id: str
    platform: SoundPlatform
    sound_platform_id: str
    source_url: str
    title: str | None = None
    artist: str | None = None
    thumbnail_url: str | None = None
    created_by: str | None = None

    class Config:
        from_attributes = True


class TrackSoundResponse(BaseModel):
    sound: TrackedSoundRead
    job_id: int


class SoundJobRead(BaseModel):
    id: int
    workspace_id: str
    job_type: str
    status: str
    run_at: datetime
    attempts: int
    max_attempts: int
    locked_by: str | None = None
    locked_at: datetime | None = None
    last_error: str | None = None
    payload: dict
    finished_at: datetime | None = None

    class Config:
        from_attributes = True
