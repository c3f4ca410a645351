"""
Database module for Commit Karaoke.

Provides async SQLAlchemy support with PostgreSQL and SQLite.
"""
from __future__ import annotations

from karaoke.db.database import (
    init_db,
    close_db,
    get_session_factory,
)
from karaoke.db.models import (
    AudioFileRow,
    CachedCallRow,
    CommitRow,
    GenerationTaskRow,
    RateLimitCounterRow,
    RepositoryRow,
    SongRow,
)

__all__ = [
    "init_db",
    "close_db",
    "get_session_factory",
    "AudioFileRow",
    "CachedCallRow",
    "CommitRow",
    "GenerationTaskRow",
    "RateLimitCounterRow",
    "RepositoryRow",
    "SongRow",
]
