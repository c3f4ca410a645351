"""
Task lifecycle reconciler.

Suno reports progress on two independent channels: webhooks it pushes to
us and status polls we pull. Both funnel into ``apply_update``, the only
code that changes a ``GenerationTask``:

    callback ──normalize_callback──┐
                                   ├──► apply_update ──► TaskStore.compare_and_set
    poll ─────normalize_poll───────┘

Rules enforced in ``apply_update``:
- unknown task id → logged, nothing created
- terminal task → no-op, returned unchanged
- processing → pending → ignored (a poll lagging behind a callback)
- completed → each artifact with a source URL is stored and linked; a
  storage failure is recorded on that artifact, never dropped

One ``asyncio.Lock`` per task serialises writers in this process; the
store's compare-and-set on the previous status covers writers in others.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol

from karaoke.config import settings
from karaoke.core.keyed_lock import KeyedLock
from karaoke.core.task_state import (
    ArtifactRef,
    GenerationTask,
    TaskKind,
    TaskStatus,
    TaskUpdate,
    can_transition,
)
from karaoke.db.models import utc_now
from karaoke.errors import GatewayError, TaskFailedError, TaskNotFoundError, TaskTimeoutError
from karaoke.services.song_store import SongStore
from karaoke.services.storage import ArtifactStorage
from karaoke.services.suno import normalize_callback
from karaoke.services.task_store import TaskStore

logger = logging.getLogger(__name__)


class StatusSource(Protocol):
    async def fetch_status(self, task_id: str, kind: TaskKind) -> TaskUpdate: ...


class TaskReconciler:
    """Single writer of generation task state."""

    def __init__(
        self,
        store: TaskStore,
        status_source: StatusSource,
        *,
        storage: Optional[ArtifactStorage] = None,
        song_store: Optional[SongStore] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.status_source = status_source
        self.storage = storage
        self.song_store = song_store
        self._clock = clock
        self._sleep = sleep
        self._locks = KeyedLock()

    async def submit(self, task_id: str, kind: TaskKind) -> GenerationTask:
        """Register a freshly submitted task as pending. Idempotent per id."""
        task = await self.store.create(GenerationTask(external_task_id=task_id, kind=kind))
        logger.info(f"📌 Tracking {kind.value} task {task_id} ({task.status.value})")
        return task

    async def get(self, task_id: str) -> GenerationTask:
        task = await self.store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def handle_callback(self, payload: dict[str, Any], kind: TaskKind) -> Optional[GenerationTask]:
        """Apply a webhook delivery; ``None`` when it names no known task."""
        update = normalize_callback(payload, kind)
        if update is None:
            logger.warning(f"Ignoring {kind.value} callback without a task id")
            return None
        return await self.apply_update(update)

    async def poll(self, task_id: str) -> GenerationTask:
        """Ask upstream for the task's status and apply the answer."""
        task = await self.get(task_id)
        if task.is_terminal:
            return task
        update = await self.status_source.fetch_status(task_id, task.kind)
        result = await self.apply_update(update)
        return result if result is not None else task

    async def apply_update(self, update: TaskUpdate) -> Optional[GenerationTask]:
        async with self._locks.hold(update.task_id):
            task = await self.store.get(update.task_id)
            if task is None:
                logger.warning(
                    f"Ignoring {update.source} update for unknown task {update.task_id} ({update.status.value})"
                )
                return None

            if task.is_terminal:
                logger.debug(
                    f"Task {task.external_task_id} already {task.status.value}; "
                    f"{update.source} update ({update.status.value}) is a no-op"
                )
                return task

            if task.status is TaskStatus.PROCESSING and update.status is TaskStatus.PENDING:
                logger.debug(f"Task {task.external_task_id}: stale pending {update.source} update ignored")
                return task

            if not can_transition(task.status, update.status):
                logger.warning(
                    f"⚠️ Task {task.external_task_id}: {task.status.value} → {update.status.value} not allowed"
                )
                return task

            now = self._clock()
            new = replace(task, status=update.status, updated_at=now)
            if update.status is TaskStatus.COMPLETED:
                new.result_refs = await self._store_artifacts(task, update.artifacts)
                new.last_error = None
                new.completed_at = now
            elif update.status is TaskStatus.FAILED:
                new.last_error = update.error or "Upstream reported failure"
                new.completed_at = now
            elif update.artifacts:
                new.result_refs = [replace(a) for a in update.artifacts]

            if not await self.store.compare_and_set(new, expected_status=task.status):
                current = await self.store.get(task.external_task_id)
                logger.info(
                    f"Task {task.external_task_id} changed under us "
                    f"(now {current.status.value if current else 'missing'}); update dropped"
                )
                return current

            if new.status is TaskStatus.COMPLETED:
                logger.info(
                    f"✅ Task {new.external_task_id} completed via {update.source} "
                    f"with {len(new.result_refs)} artifact(s)"
                )
            elif new.status is TaskStatus.FAILED:
                logger.error(f"❌ Task {new.external_task_id} failed via {update.source}: {new.last_error}")

            if new.is_terminal:
                await self._after_terminal(new)
            return new

    async def _store_artifacts(self, task: GenerationTask, artifacts: list[ArtifactRef]) -> list[ArtifactRef]:
        stored: list[ArtifactRef] = []
        for index, artifact in enumerate(artifacts):
            ref = replace(artifact)
            if ref.source_url and self.storage is not None:
                filename = f"{task.external_task_id}-{ref.artifact_id or index}.mp3"
                try:
                    saved = await self.storage.store_from_url(ref.source_url, filename=filename)
                    ref.stored_url = saved.url
                    ref.storage_key = saved.key
                except Exception as e:
                    ref.storage_error = str(e) or type(e).__name__
                    logger.error(
                        f"❌ Failed to store artifact {ref.artifact_id or index} "
                        f"of task {task.external_task_id}: {ref.storage_error}"
                    )
            stored.append(ref)
        return stored

    async def _after_terminal(self, task: GenerationTask) -> None:
        """Bookkeeping that follows a terminal write; failures are logged only."""
        try:
            if task.status is TaskStatus.COMPLETED and task.kind is TaskKind.AUDIO:
                await self.store.record_audio_files(task.external_task_id, task.result_refs)
            if self.song_store is not None and task.kind is TaskKind.AUDIO:
                await self.song_store.mark_task_finished(
                    task.external_task_id, task.status.value, task.completed_at,
                )
        except Exception as e:
            logger.warning(f"Failed to link results of task {task.external_task_id}: {e}")

    async def wait_for_completion(
        self,
        task_id: str,
        max_attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> GenerationTask:
        """Poll until the task completes, fails, or ``max_attempts`` polls run out."""
        max_attempts = settings.task_poll_max_attempts if max_attempts is None else max_attempts
        interval = settings.task_poll_interval if interval is None else interval

        task = await self.get(task_id)
        for attempt in range(1, max_attempts + 1):
            if task.is_terminal:
                break
            try:
                task = await self.poll(task_id)
            except GatewayError as e:
                logger.warning(f"Poll {attempt}/{max_attempts} for task {task_id} failed: {e}")
            if not task.is_terminal and attempt < max_attempts:
                await self._sleep(interval)

        if task.status is TaskStatus.COMPLETED:
            return task
        if task.status is TaskStatus.FAILED:
            raise TaskFailedError(task_id, task.last_error)

        logger.error(f"⏱️ Task {task_id} timed out after {max_attempts} polls (last status {task.status.value})")
        raise TaskTimeoutError(task_id, max_attempts, task.status.value)
