from __future__ import annotations

from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


class SoundPlatform(str, Enum):
    tiktok = "tiktok"
    instagram = "instagram"
    youtube = "youtube"


class JobType(str, Enum):
    refresh_sound = "refresh_sound"
    discover_posts = "discover_posts"
    refresh_post_metrics = "refresh_post_metrics"


class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    success = "success"
    failed = "failed"


class TrackedSound(Base):
    __tablename__ = "tracked_sounds"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        sa.UniqueConstraint("workspace_id", "platform", "sound_platform_id", name="uq_tracked_sounds_ws_platform_sound"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    platform: Mapped[SoundPlatform] = mapped_column(sa.String(32), nullable=False)
    sound_platform_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    source_url: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    title: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    artist: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_by: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    posts: Mapped[list["TrackedPost"]] = relationship(
        back_populates="sound", cascade="all, delete-orphan", passive_deletes=True
    )
    snapshots: Mapped[list["SoundSnapshot"]] = relationship(
        back_populates="sound", cascade="all, delete-orphan", passive_deletes=True
    )


class SoundJob(Base):
    """Durable work item polled by the job runner.

    A job is ``running`` only while both ``locked_by`` and ``locked_at`` are set.
    """
    __tablename__ = "sound_jobs"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        sa.Index("ix_sound_jobs_status_run_at", "status", "run_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    job_type: Mapped[JobType] = mapped_column(sa.String(32), nullable=False)
    status: Mapped[JobStatus] = mapped_column(sa.String(16), nullable=False, server_default=JobStatus.queued.value)
    run_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)
    attempts: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0", default=0)
    max_attempts: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="5", default=5)
    locked_by: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    payload: Mapped[dict] = mapped_column(sa.JSON(), nullable=False, default=dict)
    finished_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )


class TrackedPost(Base):
    __tablename__ = "tracked_posts"
    __table_args__ = (
        sa.UniqueConstraint("workspace_id", "platform", "post_platform_id", name="uq_tracked_posts_ws_platform_post"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    sound_id: Mapped[int] = mapped_column(
        sa.ForeignKey("tracked_sounds.id", ondelete="CASCADE"), nullable=False, index=True
    )
    platform: Mapped[SoundPlatform] = mapped_column(sa.String(32), nullable=False)
    post_platform_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    post_url: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    creator_handle: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    creator_platform_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    created_at_platform: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    sound: Mapped[TrackedSound] = relationship(back_populates="posts")
    snapshots: Mapped[list["PostSnapshot"]] = relationship(
        back_populates="post", cascade="all, delete-orphan", passive_deletes=True
    )


class SoundSnapshot(Base):
    """Point-in-time usage of a sound. ``total_uses`` is null when the provider was blocked."""
    __tablename__ = "sound_snapshots"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    sound_id: Mapped[int] = mapped_column(
        sa.ForeignKey("tracked_sounds.id", ondelete="CASCADE"), nullable=False, index=True
    )
    total_uses: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    meta: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    captured_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, index=True
    )

    sound: Mapped[TrackedSound] = relationship(back_populates="snapshots")


class PostSnapshot(Base):
    """Point-in-time engagement of a tracked post."""
    __tablename__ = "post_snapshots"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    workspace_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    post_id: Mapped[int] = mapped_column(
        sa.ForeignKey("tracked_posts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    views: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    likes: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    comments: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    shares: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    meta: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    captured_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, index=True
    )

    post: Mapped[TrackedPost] = relationship(back_populates="snapshots")
