"""Response models for the Commit Karaoke API."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from karaoke.models.base import CamelModel


class SongHandleResponse(CamelModel):
    task_id: str
    repository: str
    title: str
    lyrics: str
    style: str
    instrumental: bool
    commit_count: int
    time_range_start: Optional[datetime] = None
    time_range_end: Optional[datetime] = None
    lyrics_task_id: Optional[str] = None
    cover_image_url: Optional[str] = None
    song_id: Optional[str] = None
    status: str = "pending"
    warnings: list[str] = []


class ArtifactResponse(CamelModel):
    artifact_id: Optional[str] = None
    source_url: Optional[str] = None
    title: Optional[str] = None
    text: Optional[str] = None
    duration: Optional[float] = None
    image_url: Optional[str] = None
    stored_url: Optional[str] = None
    storage_key: Optional[str] = None
    storage_error: Optional[str] = None


class TaskStatusResponse(CamelModel):
    task_id: str
    kind: str
    status: str
    result_refs: list[ArtifactResponse] = []
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    song_title: Optional[str] = None


class CallbackAck(CamelModel):
    status: str
    task_id: Optional[str] = None
    task_status: Optional[str] = None
