"""Request models for the Commit Karaoke API."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import Field, field_validator

from karaoke.core.orchestrator import SongRequest, WindowKind
from karaoke.models.base import CamelModel


class GenerateSongRequest(CamelModel):
    """Start a song for a repository's recent commits."""

    repo_url: str = Field(
        ...,
        min_length=1,
        max_length=1024,
        examples=["https://github.com/octocat/Hello-World"],
    )
    window: WindowKind = Field(
        default=WindowKind.LAST_ACTIVITY,
        description="day, week, custom (needs startDate/endDate) or last_activity",
    )
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    style: str = Field(default="Rock", min_length=1, max_length=200)
    instrumental: bool = False

    @field_validator("window", mode="before")
    @classmethod
    def _accept_camel_window(cls, value: object) -> object:
        if value == "lastActivity":
            return WindowKind.LAST_ACTIVITY.value
        return value

    def to_song_request(self) -> SongRequest:
        return SongRequest(
            repo_url=self.repo_url,
            window=self.window,
            style=self.style,
            instrumental=self.instrumental,
            start=self.start_date,
            end=self.end_date,
        )
