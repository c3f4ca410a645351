"""Pydantic wire models."""
from __future__ import annotations

from karaoke.models.requests import GenerateSongRequest
from karaoke.models.responses import (
    ArtifactResponse,
    CallbackAck,
    SongHandleResponse,
    TaskStatusResponse,
)

__all__ = [
    "GenerateSongRequest",
    "ArtifactResponse",
    "CallbackAck",
    "SongHandleResponse",
    "TaskStatusResponse",
]
