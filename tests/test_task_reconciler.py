"""Tests for TaskReconciler (karaoke/services/task_reconciler.py).

Covers the single transition path shared by callbacks and polls: terminal
immutability, unknown ids, stale reports, artifact storage, compare-and-set
races, and the bounded wait loop.
"""
from __future__ import annotations

import asyncio
from typing import Any

import pytest

from karaoke.core.task_state import ArtifactRef, TaskKind, TaskStatus, TaskUpdate
from karaoke.errors import GatewayError, TaskFailedError, TaskNotFoundError, TaskTimeoutError
from karaoke.services.song_store import InMemorySongStore, SongRecord
from karaoke.services.task_reconciler import TaskReconciler
from karaoke.services.task_store import InMemoryTaskStore
from tests.fakes import FakeClock, FakeStorage, ScriptedStatusSource

CLIP_A = "https://cdn.suno.test/clip-a.mp3"
CLIP_B = "https://cdn.suno.test/clip-b.mp3"


def _update(status: TaskStatus, *urls: str, error: str | None = None) -> TaskUpdate:
    return TaskUpdate(
        task_id="",
        status=status,
        artifacts=[ArtifactRef(artifact_id=f"clip-{i}", source_url=url) for i, url in enumerate(urls)],
        error=error,
    )


def _complete_callback(task_id: str = "T1") -> dict[str, Any]:
    return {
        "code": 200,
        "msg": "All generated successfully.",
        "data": {
            "callbackType": "complete",
            "task_id": task_id,
            "data": [
                {"id": "clip-0", "audio_url": CLIP_A, "title": "Merge Conflict Blues", "duration": 182.4},
                {"id": "clip-1", "audio_url": CLIP_B, "title": "Merge Conflict Blues", "duration": 176.0},
            ],
        },
    }


class Sleeper:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def sleeper() -> Sleeper:
    return Sleeper()


def _reconciler(store, source, *, storage=None, song_store=None, clock=None, sleep=None) -> TaskReconciler:
    return TaskReconciler(
        store,
        source,
        storage=storage,
        song_store=song_store,
        clock=clock or FakeClock(),
        sleep=sleep or Sleeper(),
    )


# ---------------------------------------------------------------------------
# Polling to completion
# ---------------------------------------------------------------------------


class TestWaitForCompletion:

    @pytest.mark.asyncio
    async def test_pending_three_times_then_success(self, store, fake_storage, sleeper) -> None:
        source = ScriptedStatusSource([
            _update(TaskStatus.PENDING),
            _update(TaskStatus.PENDING),
            _update(TaskStatus.PENDING),
            _update(TaskStatus.COMPLETED, CLIP_A, CLIP_B),
        ])
        reconciler = _reconciler(store, source, storage=fake_storage, sleep=sleeper)
        await reconciler.submit("T1", TaskKind.AUDIO)

        task = await reconciler.wait_for_completion("T1", max_attempts=10, interval=2.0)

        assert task.status is TaskStatus.COMPLETED
        assert len(task.result_refs) == 2
        assert all(ref.stored_url and ref.storage_key for ref in task.result_refs)
        assert [url for url, _ in fake_storage.stored] == [CLIP_A, CLIP_B]
        assert len(store.audio_files["T1"]) == 2
        assert source.calls == 4
        assert sleeper.calls == [2.0, 2.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_is_a_timeout(self, store, sleeper) -> None:
        source = ScriptedStatusSource([_update(TaskStatus.PROCESSING)])
        reconciler = _reconciler(store, source, sleep=sleeper)
        await reconciler.submit("T1", TaskKind.AUDIO)

        with pytest.raises(TaskTimeoutError) as exc_info:
            await reconciler.wait_for_completion("T1", max_attempts=3, interval=1.0)

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_status == "processing"
        assert source.calls == 3
        assert len(sleeper.calls) == 2

    @pytest.mark.asyncio
    async def test_zero_attempts_never_polls(self, store, sleeper) -> None:
        source = ScriptedStatusSource([_update(TaskStatus.COMPLETED, CLIP_A)])
        reconciler = _reconciler(store, source, sleep=sleeper)
        await reconciler.submit("T1", TaskKind.AUDIO)

        with pytest.raises(TaskTimeoutError) as exc_info:
            await reconciler.wait_for_completion("T1", max_attempts=0, interval=1.0)

        assert exc_info.value.attempts == 0
        assert source.calls == 0
        assert sleeper.calls == []

    @pytest.mark.asyncio
    async def test_zero_attempts_still_returns_a_completed_task(self, store) -> None:
        source = ScriptedStatusSource([_update(TaskStatus.COMPLETED, CLIP_A)])
        reconciler = _reconciler(store, source)
        await reconciler.submit("T1", TaskKind.AUDIO)
        await reconciler.poll("T1")

        task = await reconciler.wait_for_completion("T1", max_attempts=0)

        assert task.status is TaskStatus.COMPLETED
        assert source.calls == 1

    @pytest.mark.asyncio
    async def test_upstream_failure_is_not_a_timeout(self, store) -> None:
        source = ScriptedStatusSource([_update(TaskStatus.FAILED, error="SENSITIVE_WORD_ERROR")])
        reconciler = _reconciler(store, source)
        await reconciler.submit("T1", TaskKind.AUDIO)

        with pytest.raises(TaskFailedError) as exc_info:
            await reconciler.wait_for_completion("T1", max_attempts=5, interval=0)

        assert exc_info.value.error == "SENSITIVE_WORD_ERROR"
        assert (await store.get("T1")).last_error == "SENSITIVE_WORD_ERROR"

    @pytest.mark.asyncio
    async def test_poll_errors_count_as_attempts(self, store, sleeper) -> None:
        source = ScriptedStatusSource([
            GatewayError("HTTP 502", service="suno", endpoint="/generate/record-info", status_code=502),
            _update(TaskStatus.COMPLETED, CLIP_A),
        ])
        reconciler = _reconciler(store, source, sleep=sleeper)
        await reconciler.submit("T1", TaskKind.AUDIO)

        task = await reconciler.wait_for_completion("T1", max_attempts=2, interval=0.5)

        assert task.status is TaskStatus.COMPLETED
        assert sleeper.calls == [0.5]

    @pytest.mark.asyncio
    async def test_already_terminal_returns_without_polling(self, store) -> None:
        source = ScriptedStatusSource([_update(TaskStatus.COMPLETED, CLIP_A)])
        reconciler = _reconciler(store, source)
        await reconciler.submit("T1", TaskKind.AUDIO)
        await reconciler.poll("T1")

        task = await reconciler.wait_for_completion("T1", max_attempts=3, interval=0)

        assert task.status is TaskStatus.COMPLETED
        assert source.calls == 1

    @pytest.mark.asyncio
    async def test_unknown_task(self, store) -> None:
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.PENDING)]))
        with pytest.raises(TaskNotFoundError):
            await reconciler.wait_for_completion("nope", max_attempts=1)


# ---------------------------------------------------------------------------
# Callbacks
# ---------------------------------------------------------------------------


class TestCallbacks:

    @pytest.mark.asyncio
    async def test_duplicate_completed_callback_is_a_noop(self, store, fake_storage) -> None:
        clock = FakeClock()
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.PENDING)]), storage=fake_storage, clock=clock)
        await reconciler.submit("T1", TaskKind.AUDIO)
        delivered_at = clock.now

        first = await reconciler.handle_callback(_complete_callback(), TaskKind.AUDIO)
        writes = store.write_count
        clock.advance(minutes=3)
        second = await reconciler.handle_callback(_complete_callback(), TaskKind.AUDIO)

        assert first.status is TaskStatus.COMPLETED
        assert first.completed_at == delivered_at
        assert second.completed_at == first.completed_at
        assert second.result_refs == first.result_refs
        assert store.write_count == writes
        assert len(fake_storage.stored) == 2
        assert len(store.audio_files["T1"]) == 2

    @pytest.mark.asyncio
    async def test_unknown_task_does_not_create_a_record(self, store) -> None:
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.PENDING)]))

        assert await reconciler.handle_callback(_complete_callback("ghost"), TaskKind.AUDIO) is None
        assert store.tasks == {}

    @pytest.mark.asyncio
    async def test_callback_without_task_id_is_ignored(self, store) -> None:
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.PENDING)]))
        await reconciler.submit("T1", TaskKind.AUDIO)

        assert await reconciler.handle_callback({"code": 200, "data": {"callbackType": "complete"}}, TaskKind.AUDIO) is None
        assert (await store.get("T1")).status is TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_error_callback_fails_the_task(self, store) -> None:
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.PENDING)]))
        await reconciler.submit("T1", TaskKind.AUDIO)

        task = await reconciler.handle_callback(
            {"code": 501, "msg": "Audio generation failed", "data": {"task_id": "T1", "callbackType": "error"}},
            TaskKind.AUDIO,
        )

        assert task.status is TaskStatus.FAILED
        assert task.last_error == "Audio generation failed"
        assert task.completed_at is not None

    @pytest.mark.asyncio
    async def test_lyrics_callback(self, store) -> None:
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.PENDING)]))
        await reconciler.submit("L1", TaskKind.LYRICS)

        task = await reconciler.handle_callback(
            {
                "code": 200,
                "data": {
                    "callbackType": "complete",
                    "taskId": "L1",
                    "data": [{"id": "ly-0", "title": "Green Build", "text": "[Verse]\nIt compiled"}],
                },
            },
            TaskKind.LYRICS,
        )

        assert task.status is TaskStatus.COMPLETED
        assert task.result_refs[0].text == "[Verse]\nIt compiled"
        assert "L1" not in store.audio_files

    @pytest.mark.asyncio
    async def test_poll_shaped_delivery_completes_the_task(self, store, fake_storage) -> None:
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.PENDING)]), storage=fake_storage)
        await reconciler.submit("T1", TaskKind.AUDIO)

        task = await reconciler.handle_callback(
            {
                "code": 200,
                "msg": "success",
                "data": {
                    "taskId": "T1",
                    "status": "SUCCESS",
                    "response": {"sunoData": [
                        {"id": "clip-0", "audioUrl": CLIP_A},
                        {"id": "clip-1", "audioUrl": CLIP_B},
                    ]},
                },
            },
            TaskKind.AUDIO,
        )

        assert task.status is TaskStatus.COMPLETED
        assert [r.source_url for r in task.result_refs] == [CLIP_A, CLIP_B]
        assert len(store.audio_files["T1"]) == 2


# ---------------------------------------------------------------------------
# Transition rules
# ---------------------------------------------------------------------------


class TestApplyUpdate:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("late", [TaskStatus.PENDING, TaskStatus.PROCESSING, TaskStatus.FAILED, TaskStatus.COMPLETED])
    async def test_completed_task_is_immutable(self, store, fake_storage, late) -> None:
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.COMPLETED, CLIP_A)]), storage=fake_storage)
        await reconciler.submit("T1", TaskKind.AUDIO)
        done = await reconciler.poll("T1")

        after = await reconciler.apply_update(TaskUpdate("T1", late, [ArtifactRef(source_url=CLIP_B)], error="late"))

        assert after.status is TaskStatus.COMPLETED
        assert after.result_refs == done.result_refs
        assert after.last_error is None

    @pytest.mark.asyncio
    async def test_failed_task_is_immutable(self, store) -> None:
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.FAILED, error="boom")]))
        await reconciler.submit("T1", TaskKind.AUDIO)
        await reconciler.poll("T1")

        after = await reconciler.handle_callback(_complete_callback(), TaskKind.AUDIO)

        assert after.status is TaskStatus.FAILED
        assert after.result_refs == []
        assert after.last_error == "boom"

    @pytest.mark.asyncio
    async def test_stale_pending_after_processing_is_ignored(self, store) -> None:
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.PROCESSING), _update(TaskStatus.PENDING)]))
        await reconciler.submit("T1", TaskKind.AUDIO)

        await reconciler.poll("T1")
        task = await reconciler.poll("T1")

        assert task.status is TaskStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_partial_results_are_kept_while_processing(self, store) -> None:
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.PROCESSING, CLIP_A)]))
        await reconciler.submit("T1", TaskKind.AUDIO)

        task = await reconciler.poll("T1")

        assert task.status is TaskStatus.PROCESSING
        assert task.result_refs[0].source_url == CLIP_A
        assert task.result_refs[0].stored_url is None

    @pytest.mark.asyncio
    async def test_storage_failure_is_recorded_on_the_artifact(self, store) -> None:
        storage = FakeStorage(fail_urls=(CLIP_B,))
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.COMPLETED, CLIP_A, CLIP_B)]), storage=storage)
        await reconciler.submit("T1", TaskKind.AUDIO)

        task = await reconciler.poll("T1")

        assert task.status is TaskStatus.COMPLETED
        good, bad = task.result_refs
        assert good.stored_url is not None and good.storage_error is None
        assert bad.stored_url is None
        assert "download refused" in bad.storage_error
        assert bad.source_url == CLIP_B
        assert [a.source_url for a in store.audio_files["T1"]] == [CLIP_A]

    @pytest.mark.asyncio
    async def test_without_storage_refs_keep_upstream_urls(self, store) -> None:
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.COMPLETED, CLIP_A)]))
        await reconciler.submit("T1", TaskKind.AUDIO)

        task = await reconciler.poll("T1")

        assert task.result_refs[0].source_url == CLIP_A
        assert task.result_refs[0].stored_url is None
        assert store.audio_files.get("T1", []) == []

    @pytest.mark.asyncio
    async def test_lost_compare_and_set_returns_the_winner(self) -> None:
        class RacingStore(InMemoryTaskStore):
            async def compare_and_set(self, task, expected_status):
                # another process finishes the task between our read and write
                winner = self.tasks[task.external_task_id]
                winner.status = TaskStatus.FAILED
                winner.last_error = "failed elsewhere"
                return await super().compare_and_set(task, expected_status)

        store = RacingStore()
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.COMPLETED, CLIP_A)]))
        await reconciler.submit("T1", TaskKind.AUDIO)

        task = await reconciler.poll("T1")

        assert task.status is TaskStatus.FAILED
        assert task.last_error == "failed elsewhere"

    @pytest.mark.asyncio
    async def test_submit_is_idempotent(self, store) -> None:
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.PROCESSING)]))
        await reconciler.submit("T1", TaskKind.AUDIO)
        await reconciler.poll("T1")

        again = await reconciler.submit("T1", TaskKind.AUDIO)

        assert again.status is TaskStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_terminal_audio_task_marks_the_song(self, store) -> None:
        songs = InMemorySongStore()
        await songs.save_song(SongRecord(repository="octo/band", title="t", style="Rock", task_id="T1"))
        reconciler = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.COMPLETED, CLIP_A)]), song_store=songs)
        await reconciler.submit("T1", TaskKind.AUDIO)

        await reconciler.poll("T1")

        song = await songs.get_song_by_task("T1")
        assert song.status == "completed"
        assert song.completed_at is not None


# ---------------------------------------------------------------------------
# Concurrent callback and poll
# ---------------------------------------------------------------------------


class YieldingStorage(FakeStorage):
    """Gives up the event loop before every upload."""

    async def store_from_url(self, url, *, filename=None):
        await asyncio.sleep(0)
        return await super().store_from_url(url, filename=filename)


class YieldingSource(ScriptedStatusSource):
    """Gives up the event loop before answering a poll."""

    async def fetch_status(self, task_id: str, kind: TaskKind) -> TaskUpdate:
        await asyncio.sleep(0)
        return await super().fetch_status(task_id, kind)


def _assert_single_terminal_write(store: InMemoryTaskStore, writes_before: int, results: list) -> None:
    final = store.tasks["T1"]
    assert final.is_terminal
    assert store.write_count - writes_before == 1
    assert all(r.status is final.status for r in results)
    if final.status is TaskStatus.COMPLETED:
        assert [a.source_url for a in final.result_refs] == [CLIP_A, CLIP_B]
        assert len(store.audio_files["T1"]) == 2
    else:
        assert final.last_error == "GENERATE_AUDIO_FAILED"
        assert "T1" not in store.audio_files


class TestConcurrentReports:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("callback_first", [True, False])
    async def test_one_reconciler_applies_exactly_one_terminal_write(self, store, callback_first: bool) -> None:
        source = YieldingSource([_update(TaskStatus.FAILED, error="GENERATE_AUDIO_FAILED")])
        reconciler = _reconciler(store, source, storage=YieldingStorage())
        await reconciler.submit("T1", TaskKind.AUDIO)
        writes_before = store.write_count

        callback = reconciler.handle_callback(_complete_callback(), TaskKind.AUDIO)
        poll = reconciler.poll("T1")
        results = await asyncio.gather(*((callback, poll) if callback_first else (poll, callback)))

        _assert_single_terminal_write(store, writes_before, list(results))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("callback_first", [True, False])
    async def test_two_reconcilers_sharing_a_store_apply_one_terminal_write(self, store, callback_first: bool) -> None:
        # separate reconcilers hold separate locks, so only compare-and-set orders them
        webhook_side = _reconciler(store, ScriptedStatusSource([_update(TaskStatus.PENDING)]), storage=YieldingStorage())
        poll_side = _reconciler(store, YieldingSource([_update(TaskStatus.FAILED, error="GENERATE_AUDIO_FAILED")]))
        await webhook_side.submit("T1", TaskKind.AUDIO)
        writes_before = store.write_count

        callback = webhook_side.handle_callback(_complete_callback(), TaskKind.AUDIO)
        poll = poll_side.poll("T1")
        results = await asyncio.gather(*((callback, poll) if callback_first else (poll, callback)))

        _assert_single_terminal_write(store, writes_before, list(results))
