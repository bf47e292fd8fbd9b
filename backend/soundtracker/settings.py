from functools import lru_cache

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "soundtracker"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "SOUNDTRACKER_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/soundtracker",
        validation_alias=AliasChoices("DATABASE_URL", "SOUNDTRACKER_DATABASE_URL"),
    )
    apify_token: str | None = Field(default=None, validation_alias=AliasChoices("APIFY_TOKEN", "APIFY_API_TOKEN", "SOUNDTRACKER_APIFY_TOKEN"))
    youtube_api_key: str | None = Field(default=None, validation_alias=AliasChoices("YOUTUBE_API_KEY", "SOUNDTRACKER_YOUTUBE_API_KEY"))
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "SOUNDTRACKER_REDIS_URL"))
    celery_enabled: bool = Field(default=True, validation_alias=AliasChoices("CELERY_ENABLED", "SOUNDTRACKER_CELERY_ENABLED"))
    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "SOUNDTRACKER_SCHEDULER_ENABLED"))
    runner_interval_minutes: int = Field(default=5, validation_alias=AliasChoices("RUNNER_INTERVAL_MINUTES", "SOUNDTRACKER_RUNNER_INTERVAL_MINUTES"))
    runner_batch_size: int = Field(default=10, validation_alias=AliasChoices("RUNNER_BATCH_SIZE", "SOUNDTRACKER_RUNNER_BATCH_SIZE"))
    runner_max_parallel: int = Field(default=5, validation_alias=AliasChoices("RUNNER_MAX_PARALLEL", "SOUNDTRACKER_RUNNER_MAX_PARALLEL"))
    stale_lock_minutes: int = Field(default=5, validation_alias=AliasChoices("STALE_LOCK_MINUTES", "SOUNDTRACKER_STALE_LOCK_MINUTES"))
    job_timeout_sec: int = Field(default=240, validation_alias=AliasChoices("JOB_TIMEOUT_SEC", "SOUNDTRACKER_JOB_TIMEOUT_SEC"))
    job_max_attempts: int = Field(default=5, validation_alias=AliasChoices("JOB_MAX_ATTEMPTS", "SOUNDTRACKER_JOB_MAX_ATTEMPTS"))
    job_backoff_cap_minutes: int | None = Field(default=1440, validation_alias=AliasChoices("JOB_BACKOFF_CAP_MINUTES", "SOUNDTRACKER_JOB_BACKOFF_CAP_MINUTES"))
    provider_timeout_sec: int = Field(default=30, validation_alias=AliasChoices("PROVIDER_TIMEOUT_SEC", "SOUNDTRACKER_PROVIDER_TIMEOUT_SEC"))
    discovery_metric_jobs_limit: int = Field(default=50, validation_alias=AliasChoices("DISCOVERY_METRIC_JOBS_LIMIT", "SOUNDTRACKER_DISCOVERY_METRIC_JOBS_LIMIT"))
    discovery_max_pages: int = Field(default=1, validation_alias=AliasChoices("DISCOVERY_MAX_PAGES", "SOUNDTRACKER_DISCOVERY_MAX_PAGES"))
    tiktok_max_items: int = Field(default=100, validation_alias=AliasChoices("TIKTOK_MAX_ITEMS", "SOUNDTRACKER_TIKTOK_MAX_ITEMS"))

    @model_validator(mode="after")
    def _job_timeout_inside_stale_window(self) -> "Settings":
        # a job still inside its timeout must never look stale to reclaim
        if self.job_timeout_sec >= self.stale_lock_minutes * 60:
            raise ValueError(
                f"JOB_TIMEOUT_SEC ({self.job_timeout_sec}) must be shorter than "
                f"STALE_LOCK_MINUTES ({self.stale_lock_minutes}) in seconds"
            )
        return self

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
