"""
Song generation pipeline.

    repo URL ─► time window ─► commits (all pages) ─► hydrate (detail + diff)
            ─► summary ─► chunk + embed ─► search query (LLM) ─► top-K context
            ─► lyrics (LLM) ─► title (LLM) ─► Suno lyrics + audio tasks
            ─► optional cover art ─► Song row ─► SongHandle

Every upstream step goes through a cached gateway, so re-running the same
request re-uses whatever already succeeded. Failures inside a stage are
re-raised as ``PipelineError(stage, ...)``; the caller gets either a full
``SongHandle`` or one error, never a partial handle.
"""
from __future__ import annotations

import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from karaoke.config import settings
from karaoke.core import prompts
from karaoke.core.llm_client import ImageClient, LLMClient
from karaoke.core.task_state import TaskKind
from karaoke.errors import GatewayError, InvalidRequestError, NoCommitsFoundError, PipelineError
from karaoke.services.embeddings import EmbeddingPipeline
from karaoke.services.github import (
    LAST_ACTIVITY_BUFFER,
    CommitRecord,
    GitHubClient,
    RepoRef,
    TimeWindow,
    collection_name_for,
    day_window,
    parse_commit,
    parse_github_datetime,
    parse_repo_url,
    summarize_commits,
    week_window,
)
from karaoke.services.song_store import SongRecord, SongStore
from karaoke.services.storage import ArtifactStorage
from karaoke.services.suno import MAX_STYLE_CHARS, MAX_TITLE_CHARS, SunoClient
from karaoke.services.task_reconciler import TaskReconciler

logger = logging.getLogger(__name__)

MAX_LYRICS_CHARS = 3000
DEFAULT_TITLE = "Untitled Song"
JSON_OBJECT = {"type": "json_object"}

_QUERY_JUNK_RE = re.compile(r"[^\w\s]|_")
_WHITESPACE_RE = re.compile(r"\s+")

AUDIO_CALLBACK_PATH = "/api/v1/songs/callback"
LYRICS_CALLBACK_PATH = "/api/v1/songs/callback/lyrics"


class WindowKind(str, Enum):
    DAY = "day"
    WEEK = "week"
    CUSTOM = "custom"
    LAST_ACTIVITY = "last_activity"


@dataclass
class SongRequest:
    repo_url: str
    window: WindowKind = WindowKind.LAST_ACTIVITY
    style: str = "Rock"
    instrumental: bool = False
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    callback_base_url: Optional[str] = None


@dataclass
class SongHandle:
    """What the caller gets back once the audio task is submitted."""
    task_id: str
    repository: str
    title: str
    lyrics: str
    style: str
    instrumental: bool
    commit_count: int
    time_range_start: Optional[datetime]
    time_range_end: Optional[datetime]
    lyrics_task_id: Optional[str] = None
    cover_image_url: Optional[str] = None
    song_id: Optional[str] = None
    status: str = "pending"
    warnings: list[str] = field(default_factory=list)


def sanitize_query(text: str) -> str:
    """Strip symbols so the query is plain words."""
    return _WHITESPACE_RE.sub(" ", _QUERY_JUNK_RE.sub(" ", text)).strip()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@asynccontextmanager
async def _stage(name: str) -> AsyncIterator[None]:
    try:
        yield
    except (PipelineError, InvalidRequestError):
        raise
    except Exception as e:
        logger.error(f"❌ Stage {name} failed: {e}")
        raise PipelineError(name, str(e) or type(e).__name__) from e


class SongOrchestrator:
    """Runs the commit-to-song pipeline for one request at a time."""

    def __init__(
        self,
        *,
        github: GitHubClient,
        embeddings: EmbeddingPipeline,
        llm: LLMClient,
        suno: SunoClient,
        reconciler: TaskReconciler,
        song_store: SongStore,
        storage: Optional[ArtifactStorage] = None,
        images: Optional[ImageClient] = None,
        callback_base_url: Optional[str] = None,
        search_top_k: Optional[int] = None,
        cover_art_enabled: Optional[bool] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.github = github
        self.embeddings = embeddings
        self.llm = llm
        self.suno = suno
        self.reconciler = reconciler
        self.song_store = song_store
        self.storage = storage
        self.images = images
        self.callback_base_url = callback_base_url or settings.callback_base_url
        self.search_top_k = search_top_k or settings.search_top_k
        self.cover_art_enabled = settings.cover_art_enabled if cover_art_enabled is None else cover_art_enabled
        self._clock = clock

    def _validate(self, request: SongRequest) -> tuple[RepoRef, str]:
        repo = parse_repo_url(request.repo_url)
        if not request.style or not request.style.strip():
            raise InvalidRequestError("Music style is required")
        if len(request.style) > MAX_STYLE_CHARS:
            raise InvalidRequestError(f"Style exceeds {MAX_STYLE_CHARS} characters")
        callback_base = (request.callback_base_url or self.callback_base_url or "").rstrip("/")
        if not callback_base:
            raise InvalidRequestError("Callback base URL is not configured (KARAOKE_CALLBACK_BASE_URL)")
        return repo, callback_base

    async def resolve_window(self, repo: RepoRef, request: SongRequest) -> Optional[TimeWindow]:
        """Time window for ``request``; ``None`` when no window can be built."""
        window, _ = await self._resolve(repo, request)
        return window

    async def _resolve(self, repo: RepoRef, request: SongRequest) -> tuple[Optional[TimeWindow], list[dict]]:
        """Window to list, or no window plus the listing to use as-is.

        The listing is ``[head]`` when the newest commit carries no date, and
        empty when the repository has no commits at all.
        """
        now = self._clock()
        if request.window is WindowKind.DAY:
            return day_window(now), []
        if request.window is WindowKind.WEEK:
            return week_window(now), []
        if request.window is WindowKind.CUSTOM:
            if request.start is None or request.end is None:
                raise InvalidRequestError("Custom window requires both start and end")
            start, end = _as_utc(request.start), _as_utc(request.end)
            if start >= end:
                raise InvalidRequestError("Custom window start must be before end")
            return TimeWindow(start=start, end=end), []

        latest: Optional[datetime] = None
        try:
            latest = await self.song_store.latest_commit_date(repo)
        except Exception as e:
            logger.warning(f"Could not read local commit history for {repo.full_name}: {e}")
        if latest is not None:
            logger.info(f"📅 {repo.full_name}: last known activity {latest.isoformat()}")
            return TimeWindow(start=latest - LAST_ACTIVITY_BUFFER, end=now), []

        async with _stage("fetch_commits"):
            head = await self.github.get_latest_commit(repo.owner, repo.name)
        if head is None:
            return None, []
        head_date = parse_github_datetime(((head.get("commit") or {}).get("author") or {}).get("date"))
        if head_date is None:
            logger.warning(f"Newest commit of {repo.full_name} has no date; using it alone")
            return None, [head]
        logger.info(f"📅 {repo.full_name}: HEAD commit dated {head_date.isoformat()}")
        return TimeWindow(start=head_date - LAST_ACTIVITY_BUFFER, end=now), []

    async def _hydrate(self, repo: RepoRef, listing: list[dict]) -> list[CommitRecord]:
        commits: list[CommitRecord] = []
        for item in listing:
            sha = item.get("sha")
            if not sha:
                continue
            detail = await self.github.get_commit(repo.owner, repo.name, sha)
            commit = parse_commit(detail)
            try:
                commit.diff = await self.github.get_commit_diff(repo.owner, repo.name, sha)
            except GatewayError as e:
                logger.warning(f"Diff unavailable for {repo.full_name}@{sha[:7]}: {e}")
            commits.append(commit)
        return commits

    async def _ask_json(self, system: str, prompt: str, key: str, temperature: float) -> str:
        response = await self.llm.complete(
            system, prompt, temperature=temperature, response_format=JSON_OBJECT,
        )
        parsed = response.json()
        if parsed is not None and isinstance(parsed.get(key), str):
            return parsed[key].strip()
        logger.warning(f"Model reply had no usable '{key}' field; using raw text")
        return response.content.strip()

    async def generate(self, request: SongRequest) -> SongHandle:
        repo, callback_base = self._validate(request)
        logger.info(f"🎤 Generating a {request.style} song for {repo.full_name} ({request.window.value})")

        window, listing = await self._resolve(repo, request)
        if window is not None:
            async with _stage("fetch_commits"):
                listing = await self.github.list_all_commits(repo.owner, repo.name, window)
        if not listing:
            raise NoCommitsFoundError(repo.full_name)

        async with _stage("hydrate_commits"):
            commits = await self._hydrate(repo, listing)
        if not commits:
            raise NoCommitsFoundError(repo.full_name)
        try:
            await self.song_store.record_commits(repo, commits)
        except Exception as e:
            logger.warning(f"Failed to record commits for {repo.full_name}: {e}")

        summary = summarize_commits(repo, commits)
        logger.info(f"📊 {summary.commit_count} commits by {len(summary.authors)} author(s)")

        collection = collection_name_for(repo)
        async with _stage("embed_commits"):
            for commit in commits:
                await self.embeddings.upsert_document(
                    collection,
                    commit.sha,
                    commit.as_document(),
                    metadata={
                        "sha": commit.sha,
                        "author": commit.author_name,
                        "date": commit.date.isoformat() if commit.date else None,
                        "message": commit.short_message,
                    },
                )

        async with _stage("search_query"):
            raw_query = await self._ask_json(
                prompts.search_query_system_prompt(summary),
                prompts.SEARCH_QUERY_USER_PROMPT,
                "searchQuery",
                temperature=0.7,
            )
        query = sanitize_query(raw_query) or f"recent commits in {repo.full_name}"
        logger.info(f"🔍 Search query: {query}")

        async with _stage("retrieve_context"):
            documents = await self.embeddings.query(collection, query, top_k=self.search_top_k)
        commit_context = prompts.build_commit_context(documents)

        lyrics = ""
        if not request.instrumental:
            async with _stage("generate_lyrics"):
                lyrics = await self._ask_json(
                    prompts.lyrics_system_prompt(commit_context),
                    prompts.lyrics_user_prompt(request.style),
                    "lyrics",
                    temperature=0.8,
                )
                lyrics = lyrics[:MAX_LYRICS_CHARS].strip()
                if not lyrics:
                    raise PipelineError("generate_lyrics", "Model returned empty lyrics")

        async with _stage("generate_title"):
            title_source = lyrics or prompts.search_query_system_prompt(summary)
            title = await self._ask_json(
                prompts.TITLE_SYSTEM_PROMPT,
                prompts.title_user_prompt(title_source),
                "title",
                temperature=0.8,
            )
        title = title.replace('"', "").strip()[:MAX_TITLE_CHARS].strip() or DEFAULT_TITLE
        logger.info(f"🏷️ Title: {title}")

        lyrics_task_id: Optional[str] = None
        async with _stage("submit_song"):
            if not request.instrumental:
                lyrics_task_id = await self.suno.generate_lyrics(
                    prompt=lyrics,
                    callback_url=f"{callback_base}{LYRICS_CALLBACK_PATH}",
                )
                await self.reconciler.submit(lyrics_task_id, TaskKind.LYRICS)
            task_id = await self.suno.generate_music(
                prompt=lyrics or prompts.instrumental_prompt(request.style, repo.full_name),
                style=request.style,
                title=title,
                custom_mode=True,
                instrumental=request.instrumental,
                callback_url=f"{callback_base}{AUDIO_CALLBACK_PATH}",
            )
            await self.reconciler.submit(task_id, TaskKind.AUDIO)
        logger.info(f"🎉 Song task {task_id} submitted for {repo.full_name}")

        warnings: list[str] = []
        cover_image_url = await self._cover_art(title, request.style, warnings)

        handle = SongHandle(
            task_id=task_id,
            repository=repo.full_name,
            title=title,
            lyrics=lyrics,
            style=request.style,
            instrumental=request.instrumental,
            commit_count=summary.commit_count,
            time_range_start=summary.time_range_start,
            time_range_end=summary.time_range_end,
            lyrics_task_id=lyrics_task_id,
            cover_image_url=cover_image_url,
            warnings=warnings,
        )

        try:
            song = await self.song_store.save_song(SongRecord(
                repository=repo.full_name,
                title=title,
                style=request.style,
                task_id=task_id,
                lyrics=lyrics,
                instrumental=request.instrumental,
                lyrics_task_id=lyrics_task_id,
                cover_image_url=cover_image_url,
                commit_count=summary.commit_count,
                time_range_start=summary.time_range_start,
                time_range_end=summary.time_range_end,
            ))
            handle.song_id = song.id
        except Exception as e:
            logger.warning(f"Failed to save song record for task {task_id}: {e}")
            handle.warnings.append(f"Song record not saved: {e}")

        return handle

    async def _cover_art(self, title: str, style: str, warnings: list[str]) -> Optional[str]:
        if not self.cover_art_enabled:
            return None
        if self.images is None or self.storage is None:
            warnings.append("Cover art enabled but image generation or storage is not configured")
            return None
        try:
            image_url = await self.images.generate_image(prompts.cover_art_prompt(title, style))
            stored = await self.storage.store_from_url(image_url, filename=f"cover-{title}.png")
        except Exception as e:
            logger.warning(f"🖼️ Cover art failed for '{title}': {e}")
            warnings.append(f"Cover art failed: {e}")
            return None
        logger.info(f"🖼️ Cover art stored at {stored.url}")
        return stored.url
