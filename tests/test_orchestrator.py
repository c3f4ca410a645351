"""Tests for SongOrchestrator (karaoke/core/orchestrator.py).

Upstreams are doubles from tests.fakes; embeddings run for real against
an in-memory Qdrant so retrieval exercises the actual pipeline.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from karaoke.core.orchestrator import (
    AUDIO_CALLBACK_PATH,
    LYRICS_CALLBACK_PATH,
    SongOrchestrator,
    SongRequest,
    WindowKind,
    sanitize_query,
)
from karaoke.core.task_state import TaskKind, TaskStatus
from karaoke.errors import GatewayError, InvalidRequestError, NoCommitsFoundError, PipelineError
from karaoke.services.embeddings import EmbeddingPipeline
from karaoke.services.github import CommitRecord, RepoRef, collection_name_for
from karaoke.services.song_store import InMemorySongStore
from karaoke.services.task_reconciler import TaskReconciler
from karaoke.services.task_store import InMemoryTaskStore
from tests.fakes import FakeEmbedder, FakeGitHub, FakeLLM, FakeStorage, FakeSuno, github_commit

REPO_URL = "https://github.com/octo/band"
CALLBACK_BASE = "https://karaoke.test"


class FakeImages:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.prompts: list[str] = []

    async def generate_image(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return "https://img.test/cover.png"


class BrokenSongStore(InMemorySongStore):
    async def save_song(self, song):
        raise RuntimeError("database is locked")


class Pipeline:
    """Bundle of doubles wired into one orchestrator."""

    def __init__(
        self,
        qdrant,
        clock,
        *,
        github: Optional[FakeGitHub] = None,
        suno: Optional[FakeSuno] = None,
        song_store: Optional[InMemorySongStore] = None,
        images: Optional[FakeImages] = None,
        storage: Optional[FakeStorage] = None,
        cover_art: bool = False,
    ) -> None:
        self.github = github or FakeGitHub([
            github_commit("aaa111", date="2024-04-29T09:00:00Z", author="Ada"),
            github_commit("bbb222", date="2024-04-30T23:15:00Z", author="Bo", message="Add retry to uploader"),
        ])
        self.embedder = FakeEmbedder()
        self.llm = FakeLLM()
        self.suno = suno or FakeSuno()
        self.task_store = InMemoryTaskStore()
        self.song_store = song_store or InMemorySongStore()
        self.reconciler = TaskReconciler(self.task_store, self.suno, song_store=self.song_store, clock=clock)
        self.orchestrator = SongOrchestrator(
            github=self.github,
            embeddings=EmbeddingPipeline(self.embedder, qdrant, chunk_tokens=200),
            llm=self.llm,
            suno=self.suno,
            reconciler=self.reconciler,
            song_store=self.song_store,
            storage=storage,
            images=images,
            callback_base_url=CALLBACK_BASE,
            search_top_k=3,
            cover_art_enabled=cover_art,
            clock=clock,
        )


@pytest.fixture
def pipeline(qdrant, clock) -> Pipeline:
    return Pipeline(qdrant, clock)


def test_sanitize_query() -> None:
    assert sanitize_query('repo:x "bug  fixes" + build_repairs!') == "repo x bug fixes build repairs"


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestGenerate:

    @pytest.mark.asyncio
    async def test_full_pipeline(self, pipeline, qdrant) -> None:
        handle = await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL, window=WindowKind.WEEK, style="Blues"))

        assert handle.task_id == "AUD-1"
        assert handle.lyrics_task_id == "LYR-1"
        assert handle.repository == "octo/band"
        assert handle.title == "Merge Conflict Blues"
        assert handle.lyrics == "Late night merge, the build went green"
        assert handle.commit_count == 2
        assert handle.time_range_start == datetime(2024, 4, 29, 9, tzinfo=timezone.utc)
        assert handle.warnings == []
        assert handle.song_id is not None

        (music,) = pipeline.suno.music_requests
        assert music["prompt"] == handle.lyrics
        assert music["style"] == "Blues"
        assert music["title"] == "Merge Conflict Blues"
        assert music["instrumental"] is False
        assert music["callback_url"] == f"{CALLBACK_BASE}{AUDIO_CALLBACK_PATH}"
        assert pipeline.suno.lyrics_requests[0]["callback_url"] == f"{CALLBACK_BASE}{LYRICS_CALLBACK_PATH}"

        audio = await pipeline.task_store.get("AUD-1")
        lyrics = await pipeline.task_store.get("LYR-1")
        assert (audio.kind, audio.status) == (TaskKind.AUDIO, TaskStatus.PENDING)
        assert lyrics.kind is TaskKind.LYRICS

        song = await pipeline.song_store.get_song_by_task("AUD-1")
        assert song.title == "Merge Conflict Blues"
        assert song.id == handle.song_id

        collection = collection_name_for(RepoRef("octo", "band"))
        assert qdrant.count(collection).count == 2
        assert "bug fixes build repairs" in pipeline.embedder.texts

    @pytest.mark.asyncio
    async def test_retrieved_commits_reach_the_lyrics_prompt(self, pipeline) -> None:
        await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL, window=WindowKind.WEEK))

        lyrics_system = next(system for system, _ in pipeline.llm.calls if "songwriter" in system)
        assert "Add retry to uploader" in lyrics_system
        assert "diff --git" in lyrics_system

    @pytest.mark.asyncio
    async def test_commits_are_recorded_locally(self, pipeline) -> None:
        await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL, window=WindowKind.WEEK))
        assert set(pipeline.song_store.commits["octo/band"]) == {"aaa111", "bbb222"}

    @pytest.mark.asyncio
    async def test_broken_diff_is_tolerated(self, qdrant, clock) -> None:
        github = FakeGitHub([github_commit("aaa111", date="2024-04-29T09:00:00Z")], broken_diffs=("aaa111",))
        pipeline = Pipeline(qdrant, clock, github=github)

        handle = await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL, window=WindowKind.WEEK))

        assert handle.commit_count == 1

    @pytest.mark.asyncio
    async def test_instrumental_skips_lyrics(self, pipeline) -> None:
        handle = await pipeline.orchestrator.generate(
            SongRequest(repo_url=REPO_URL, window=WindowKind.WEEK, style="Jazz", instrumental=True)
        )

        assert handle.lyrics == ""
        assert handle.lyrics_task_id is None
        assert pipeline.suno.lyrics_requests == []
        (music,) = pipeline.suno.music_requests
        assert music["instrumental"] is True
        assert music["prompt"] == "A Jazz song about code and software development in octo/band"
        assert not any("songwriter" in system for system, _ in pipeline.llm.calls)


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------


class TestWindows:

    @pytest.mark.asyncio
    async def test_custom_window_is_passed_through(self, pipeline) -> None:
        start = datetime(2024, 4, 1)
        end = datetime(2024, 4, 30, tzinfo=timezone.utc)
        await pipeline.orchestrator.generate(
            SongRequest(repo_url=REPO_URL, window=WindowKind.CUSTOM, start=start, end=end)
        )
        (window,) = pipeline.github.windows
        assert window.start == datetime(2024, 4, 1, tzinfo=timezone.utc)
        assert window.end == end

    @pytest.mark.asyncio
    async def test_last_activity_prefers_local_history(self, pipeline, clock) -> None:
        latest = datetime(2024, 4, 20, tzinfo=timezone.utc)
        await pipeline.song_store.record_commits(RepoRef("octo", "band"), [CommitRecord(sha="old", message="m", date=latest)])

        await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL))

        (window,) = pipeline.github.windows
        assert window.start == latest - timedelta(days=3)
        assert window.end == clock.now
        assert "get_latest_commit" not in pipeline.github.calls

    @pytest.mark.asyncio
    async def test_last_activity_falls_back_to_head(self, qdrant, clock) -> None:
        github = FakeGitHub(
            [github_commit("aaa111", date="2024-04-29T09:00:00Z")],
            head=github_commit("aaa111", date="2024-04-29T09:00:00Z"),
        )
        pipeline = Pipeline(qdrant, clock, github=github)

        await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL))

        (window,) = github.windows
        assert window.start == datetime(2024, 4, 26, 9, tzinfo=timezone.utc)
        assert github.calls[0] == "get_latest_commit"

    @pytest.mark.asyncio
    async def test_dateless_head_is_used_alone(self, qdrant, clock) -> None:
        head = github_commit("bbb222", date="")
        github = FakeGitHub([head], head=head)
        pipeline = Pipeline(qdrant, clock, github=github)

        handle = await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL))

        assert handle.commit_count == 1
        assert "list_all_commits" not in github.calls
        assert "get_commit:bbb222" in github.calls
        assert len(pipeline.suno.music_requests) == 1


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:

    @pytest.mark.asyncio
    async def test_empty_window_stops_before_any_generation(self, qdrant, clock) -> None:
        pipeline = Pipeline(qdrant, clock, github=FakeGitHub([]))

        with pytest.raises(NoCommitsFoundError) as exc_info:
            await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL, window=WindowKind.WEEK))

        assert exc_info.value.repository == "octo/band"
        assert pipeline.embedder.texts == []
        assert pipeline.llm.calls == []
        assert pipeline.suno.music_requests == []
        assert pipeline.task_store.tasks == {}

    @pytest.mark.asyncio
    async def test_empty_repository_has_no_last_activity(self, qdrant, clock) -> None:
        github = FakeGitHub([], head=None)
        pipeline = Pipeline(qdrant, clock, github=github)

        with pytest.raises(NoCommitsFoundError):
            await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL))

        assert "list_all_commits" not in github.calls

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "request_kwargs,message",
        [
            ({"repo_url": "https://gitlab.com/octo/band"}, "GitHub"),
            ({"style": "  "}, "style"),
            ({"window": WindowKind.CUSTOM}, "start and end"),
            (
                {"window": WindowKind.CUSTOM, "start": datetime(2024, 5, 1), "end": datetime(2024, 4, 1)},
                "before end",
            ),
        ],
    )
    async def test_invalid_requests_make_no_calls(self, pipeline, request_kwargs: dict, message: str) -> None:
        request = SongRequest(**{"repo_url": REPO_URL, **request_kwargs})

        with pytest.raises(InvalidRequestError, match=message):
            await pipeline.orchestrator.generate(request)

        assert pipeline.github.calls == []
        assert pipeline.llm.calls == []

    @pytest.mark.asyncio
    async def test_missing_callback_base(self, pipeline) -> None:
        pipeline.orchestrator.callback_base_url = None
        with pytest.raises(InvalidRequestError, match="Callback base URL"):
            await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL, window=WindowKind.WEEK))
        assert pipeline.github.calls == []

    @pytest.mark.asyncio
    async def test_submit_failure_names_the_stage(self, qdrant, clock) -> None:
        error = GatewayError("HTTP 503", service="suno", endpoint="/generate", status_code=503)
        pipeline = Pipeline(qdrant, clock, suno=FakeSuno(fail_music=error))

        with pytest.raises(PipelineError) as exc_info:
            await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL, window=WindowKind.WEEK))

        assert exc_info.value.stage == "submit_song"
        assert isinstance(exc_info.value.__cause__, GatewayError)

    @pytest.mark.asyncio
    async def test_song_save_failure_is_a_warning(self, qdrant, clock) -> None:
        pipeline = Pipeline(qdrant, clock, song_store=BrokenSongStore())

        handle = await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL, window=WindowKind.WEEK))

        assert handle.task_id == "AUD-1"
        assert handle.song_id is None
        assert handle.warnings == ["Song record not saved: database is locked"]


# ---------------------------------------------------------------------------
# Cover art
# ---------------------------------------------------------------------------


class TestCoverArt:

    @pytest.mark.asyncio
    async def test_cover_art_is_stored(self, qdrant, clock) -> None:
        storage = FakeStorage()
        images = FakeImages()
        pipeline = Pipeline(qdrant, clock, images=images, storage=storage, cover_art=True)

        handle = await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL, window=WindowKind.WEEK))

        assert storage.stored == [("https://img.test/cover.png", "cover-Merge Conflict Blues.png")]
        assert handle.cover_image_url == "https://cdn.test/upload/2024/05/cover-Merge Conflict Blues.png"
        song = await pipeline.song_store.get_song_by_task("AUD-1")
        assert song.cover_image_url == handle.cover_image_url

    @pytest.mark.asyncio
    async def test_cover_art_failure_is_a_warning(self, qdrant, clock) -> None:
        images = FakeImages(error=RuntimeError("content policy"))
        pipeline = Pipeline(qdrant, clock, images=images, storage=FakeStorage(), cover_art=True)

        handle = await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL, window=WindowKind.WEEK))

        assert handle.cover_image_url is None
        assert handle.warnings == ["Cover art failed: content policy"]

    @pytest.mark.asyncio
    async def test_cover_art_without_storage(self, qdrant, clock) -> None:
        pipeline = Pipeline(qdrant, clock, images=FakeImages(), cover_art=True)

        handle = await pipeline.orchestrator.generate(SongRequest(repo_url=REPO_URL, window=WindowKind.WEEK))

        assert handle.cover_image_url is None
        assert "not configured" in handle.warnings[0]
