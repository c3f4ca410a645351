"""Repository, commit and song bookkeeping.

Commits are recorded so the "last activity" window can start from the
newest locally known commit instead of asking GitHub.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from karaoke.db.models import CommitRow, RepositoryRow, SongRow, as_utc, utc_now
from karaoke.services.github import CommitRecord, RepoRef

logger = logging.getLogger(__name__)


@dataclass
class SongRecord:
    repository: str
    title: str
    style: str
    task_id: str
    lyrics: str = ""
    instrumental: bool = False
    lyrics_task_id: Optional[str] = None
    cover_image_url: Optional[str] = None
    status: str = "pending"
    commit_count: int = 0
    time_range_start: Optional[datetime] = None
    time_range_end: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class SongStore(Protocol):
    async def latest_commit_date(self, repo: RepoRef) -> Optional[datetime]: ...

    async def record_commits(self, repo: RepoRef, commits: list[CommitRecord]) -> None: ...

    async def save_song(self, song: SongRecord) -> SongRecord: ...

    async def get_song_by_task(self, task_id: str) -> Optional[SongRecord]: ...

    async def mark_task_finished(self, task_id: str, status: str, completed_at: Optional[datetime]) -> None: ...


class InMemorySongStore:
    def __init__(self) -> None:
        self.commits: dict[str, dict[str, CommitRecord]] = {}
        self.songs: dict[str, SongRecord] = {}

    async def latest_commit_date(self, repo: RepoRef) -> Optional[datetime]:
        dates = [c.date for c in self.commits.get(repo.full_name, {}).values() if c.date]
        return max(dates) if dates else None

    async def record_commits(self, repo: RepoRef, commits: list[CommitRecord]) -> None:
        bucket = self.commits.setdefault(repo.full_name, {})
        for commit in commits:
            bucket[commit.sha] = commit

    async def save_song(self, song: SongRecord) -> SongRecord:
        stored = replace(song, created_at=song.created_at or utc_now())
        self.songs[stored.task_id] = stored
        return replace(stored)

    async def get_song_by_task(self, task_id: str) -> Optional[SongRecord]:
        song = self.songs.get(task_id)
        return replace(song) if song is not None else None

    async def mark_task_finished(self, task_id: str, status: str, completed_at: Optional[datetime]) -> None:
        song = self.songs.get(task_id)
        if song is not None:
            song.status = status
            song.completed_at = completed_at


def _to_record(row: SongRow, repository: str) -> SongRecord:
    return SongRecord(
        id=row.id,
        repository=repository,
        title=row.title,
        style=row.style,
        task_id=row.task_id,
        lyrics=row.lyrics,
        instrumental=row.instrumental,
        lyrics_task_id=row.lyrics_task_id,
        cover_image_url=row.cover_image_url,
        status=row.status,
        commit_count=row.commit_count,
        time_range_start=as_utc(row.time_range_start),
        time_range_end=as_utc(row.time_range_end),
        created_at=as_utc(row.created_at),
        completed_at=as_utc(row.completed_at),
    )


class SqlSongStore:
    """Async SQLAlchemy store over ``repositories``, ``commits`` and ``songs``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _get_or_create_repository(self, session: AsyncSession, repo: RepoRef) -> RepositoryRow:
        result = await session.execute(
            select(RepositoryRow).where(RepositoryRow.full_name == repo.full_name)
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = RepositoryRow(owner=repo.owner, name=repo.name, full_name=repo.full_name, url=repo.url)
            session.add(row)
            await session.flush()
        return row

    async def latest_commit_date(self, repo: RepoRef) -> Optional[datetime]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.max(CommitRow.author_date))
                .join(RepositoryRow, CommitRow.repository_id == RepositoryRow.id)
                .where(RepositoryRow.full_name == repo.full_name)
            )
            return as_utc(result.scalar_one_or_none())

    async def record_commits(self, repo: RepoRef, commits: list[CommitRecord]) -> None:
        async with self._session_factory() as session:
            repository = await self._get_or_create_repository(session, repo)
            repository.last_fetched_at = utc_now()
            known = set(
                (await session.execute(
                    select(CommitRow.sha).where(CommitRow.repository_id == repository.id)
                )).scalars()
            )
            for commit in commits:
                if commit.sha in known:
                    continue
                known.add(commit.sha)
                session.add(CommitRow(
                    repository_id=repository.id,
                    sha=commit.sha,
                    short_message=commit.short_message,
                    author_name=commit.author_name,
                    author_date=commit.date,
                    additions=commit.additions,
                    deletions=commit.deletions,
                ))
            await session.commit()

    async def save_song(self, song: SongRecord) -> SongRecord:
        owner, _, name = song.repository.partition("/")
        async with self._session_factory() as session:
            repository = await self._get_or_create_repository(session, RepoRef(owner=owner, name=name))
            row = SongRow(
                id=song.id,
                repository_id=repository.id,
                title=song.title,
                lyrics=song.lyrics,
                style=song.style,
                instrumental=song.instrumental,
                task_id=song.task_id,
                lyrics_task_id=song.lyrics_task_id,
                cover_image_url=song.cover_image_url,
                status=song.status,
                commit_count=song.commit_count,
                time_range_start=song.time_range_start,
                time_range_end=song.time_range_end,
                created_at=song.created_at or utc_now(),
            )
            session.add(row)
            await session.commit()
            return _to_record(row, song.repository)

    async def get_song_by_task(self, task_id: str) -> Optional[SongRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SongRow, RepositoryRow.full_name)
                .outerjoin(RepositoryRow, SongRow.repository_id == RepositoryRow.id)
                .where(SongRow.task_id == task_id)
            )
            found = result.first()
            if found is None:
                return None
            row, full_name = found
            return _to_record(row, full_name or "")

    async def mark_task_finished(self, task_id: str, status: str, completed_at: Optional[datetime]) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(SongRow)
                .where(SongRow.task_id == task_id)
                .values(status=status, completed_at=completed_at)
            )
            await session.commit()
