"""
Persistence for generation tasks.

Writes are compare-and-set on the previous status: a write only lands if
the row still holds the status the writer read. This keeps a terminal
state from being overwritten by a writer in another process that read
the row before it went terminal.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from karaoke.core.task_state import ArtifactRef, GenerationTask, TaskKind, TaskStatus
from karaoke.db.models import AudioFileRow, GenerationTaskRow, SongRow, as_utc, utc_now

logger = logging.getLogger(__name__)


class TaskStore(Protocol):
    async def get(self, task_id: str) -> Optional[GenerationTask]: ...

    async def create(self, task: GenerationTask) -> GenerationTask:
        """Insert ``task``; if the id already exists, return the stored task unchanged."""
        ...

    async def compare_and_set(self, task: GenerationTask, expected_status: TaskStatus) -> bool:
        """Write ``task`` only if the stored status still equals ``expected_status``."""
        ...

    async def record_audio_files(self, task_id: str, artifacts: list[ArtifactRef]) -> None: ...


def _copy(task: GenerationTask) -> GenerationTask:
    return replace(task, result_refs=[replace(a) for a in task.result_refs])


class InMemoryTaskStore:
    """Dict-backed task store for tests and dry runs."""

    def __init__(self) -> None:
        self.tasks: dict[str, GenerationTask] = {}
        self.audio_files: dict[str, list[ArtifactRef]] = {}
        self.write_count = 0

    async def get(self, task_id: str) -> Optional[GenerationTask]:
        task = self.tasks.get(task_id)
        return _copy(task) if task is not None else None

    async def create(self, task: GenerationTask) -> GenerationTask:
        existing = self.tasks.get(task.external_task_id)
        if existing is not None:
            return _copy(existing)
        now = utc_now()
        stored = _copy(task)
        stored.created_at = stored.created_at or now
        stored.updated_at = stored.updated_at or now
        self.tasks[task.external_task_id] = stored
        self.write_count += 1
        return _copy(stored)

    async def compare_and_set(self, task: GenerationTask, expected_status: TaskStatus) -> bool:
        current = self.tasks.get(task.external_task_id)
        if current is None or current.status != expected_status:
            return False
        self.tasks[task.external_task_id] = _copy(task)
        self.write_count += 1
        return True

    async def record_audio_files(self, task_id: str, artifacts: list[ArtifactRef]) -> None:
        self.audio_files.setdefault(task_id, []).extend(
            replace(a) for a in artifacts if a.stored_url and a.storage_key
        )


def _to_task(row: GenerationTaskRow) -> GenerationTask:
    return GenerationTask(
        external_task_id=row.external_task_id,
        kind=TaskKind(row.kind),
        status=TaskStatus(row.status),
        result_refs=[ArtifactRef.from_dict(r) for r in (row.result_refs or [])],
        last_error=row.last_error,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        completed_at=as_utc(row.completed_at),
    )


class SqlTaskStore:
    """Async SQLAlchemy store over ``generation_tasks`` and ``audio_files``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, task_id: str) -> Optional[GenerationTask]:
        async with self._session_factory() as session:
            row = await session.get(GenerationTaskRow, task_id)
            return _to_task(row) if row is not None else None

    async def create(self, task: GenerationTask) -> GenerationTask:
        async with self._session_factory() as session:
            existing = await session.get(GenerationTaskRow, task.external_task_id)
            if existing is not None:
                return _to_task(existing)
            now = utc_now()
            row = GenerationTaskRow(
                external_task_id=task.external_task_id,
                kind=task.kind.value,
                status=task.status.value,
                result_refs=[a.to_dict() for a in task.result_refs],
                last_error=task.last_error,
                created_at=task.created_at or now,
                updated_at=task.updated_at or now,
                completed_at=task.completed_at,
            )
            session.add(row)
            await session.commit()
            return _to_task(row)

    async def compare_and_set(self, task: GenerationTask, expected_status: TaskStatus) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(GenerationTaskRow)
                .where(
                    GenerationTaskRow.external_task_id == task.external_task_id,
                    GenerationTaskRow.status == expected_status.value,
                )
                .values(
                    status=task.status.value,
                    result_refs=[a.to_dict() for a in task.result_refs],
                    last_error=task.last_error,
                    updated_at=task.updated_at or utc_now(),
                    completed_at=task.completed_at,
                )
            )
            await session.commit()
            return (result.rowcount or 0) == 1

    async def record_audio_files(self, task_id: str, artifacts: list[ArtifactRef]) -> None:
        async with self._session_factory() as session:
            song_id = (
                await session.execute(select(SongRow.id).where(SongRow.task_id == task_id))
            ).scalar_one_or_none()
            for artifact in artifacts:
                if not artifact.stored_url or not artifact.storage_key:
                    continue
                session.add(AudioFileRow(
                    task_id=task_id,
                    song_id=song_id,
                    upstream_id=artifact.artifact_id,
                    url=artifact.stored_url,
                    storage_key=artifact.storage_key,
                    mime_type="audio/mpeg",
                ))
            await session.commit()
