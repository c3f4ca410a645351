"""
SQLAlchemy ORM models for Commit Karaoke.

Tables:
- api_calls: external call cache, one row per request fingerprint
- api_limits: per-service rate-limit accounting
- generation_tasks: Suno lyrics/audio task lifecycle
- repositories / commits: bookkeeping for the "last activity" window
- songs: one row per orchestrator run that submitted an audio task
- audio_files: stored audio artifacts linked to their task and song
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from karaoke.db.database import Base


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CachedCallRow(Base):
    """
    Cached response (or recorded failure) for one upstream request.

    At most one row per fingerprint; every attempt upserts in place.
    """
    __tablename__ = "api_calls"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    fingerprint: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    service: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    endpoint: Mapped[str] = mapped_column(String(500), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    request_payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    response_payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    succeeded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<CachedCall {self.service} {self.method} {self.endpoint} ok={self.succeeded}>"


class RateLimitCounterRow(Base):
    """Per-service request accounting (not admission control)."""
    __tablename__ = "api_limits"

    service: Mapped[str] = mapped_column(String(50), primary_key=True)
    limit: Mapped[int] = mapped_column(Integer, nullable=False)
    used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<RateLimitCounter {self.service} {self.used}/{self.limit}>"


class GenerationTaskRow(Base):
    """
    Lifecycle of one Suno task.

    Written only by TaskReconciler; terminal rows are never updated.
    """
    __tablename__ = "generation_tasks"

    external_task_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    result_refs: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<GenerationTask {self.external_task_id} {self.kind} {self.status}>"


class RepositoryRow(Base):
    """A GitHub repository we have generated songs for."""
    __tablename__ = "repositories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[str] = mapped_column(String(512), unique=True, nullable=False, index=True)
    url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    last_fetched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    commits: Mapped[list["CommitRow"]] = relationship(
        "CommitRow",
        back_populates="repository",
        cascade="all, delete-orphan",
    )


class CommitRow(Base):
    """A commit seen while building a song."""
    __tablename__ = "commits"
    __table_args__ = (UniqueConstraint("repository_id", "sha", name="uq_commits_repository_sha"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    repository_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("repositories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sha: Mapped[str] = mapped_column(String(64), nullable=False)
    short_message: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    author_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    author_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    additions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deletions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    repository: Mapped["RepositoryRow"] = relationship("RepositoryRow", back_populates="commits")


class SongRow(Base):
    """One generated (or in-flight) song."""
    __tablename__ = "songs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    repository_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("repositories.id", ondelete="SET NULL"),
        nullable=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    lyrics: Mapped[str] = mapped_column(Text, default="", nullable=False)
    style: Mapped[str] = mapped_column(String(200), nullable=False)
    instrumental: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    task_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    lyrics_task_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cover_image_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    commit_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    time_range_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    time_range_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    audio_files: Mapped[list["AudioFileRow"]] = relationship(
        "AudioFileRow",
        back_populates="song",
    )

    def __repr__(self) -> str:
        return f"<Song {self.id[:8]} '{self.title}' {self.status}>"


class AudioFileRow(Base):
    """A stored audio artifact produced by a generation task."""
    __tablename__ = "audio_files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    task_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("generation_tasks.external_task_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    song_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("songs.id", ondelete="SET NULL"),
        nullable=True,
    )
    upstream_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    url: Mapped[str] = mapped_column(String(1024), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    song: Mapped[Optional["SongRow"]] = relationship("SongRow", back_populates="audio_files")
