"""
Service wiring.

``build_container`` assembles every collaborator once per process: stores,
the call cache, the upstream clients, the reconciler and the orchestrator.
Nothing here is a hidden singleton; the FastAPI app keeps its container on
``app.state`` and tests build their own with in-memory stores.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from qdrant_client import QdrantClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from karaoke.config import Settings, settings as default_settings
from karaoke.core.llm_client import ImageClient, LLMClient
from karaoke.core.orchestrator import SongOrchestrator
from karaoke.services.call_cache import (
    CallStore,
    ExternalCallCache,
    InMemoryCallStore,
    RateLimitTracker,
    SqlCallStore,
)
from karaoke.services.embeddings import EmbeddingPipeline, HuggingFaceEmbedder
from karaoke.services.github import GitHubClient
from karaoke.services.song_store import InMemorySongStore, SongStore, SqlSongStore
from karaoke.services.storage import ArtifactStorage, S3Storage
from karaoke.services.suno import SunoClient
from karaoke.services.task_reconciler import TaskReconciler
from karaoke.services.task_store import InMemoryTaskStore, SqlTaskStore, TaskStore

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    call_store: CallStore
    task_store: TaskStore
    song_store: SongStore
    cache: ExternalCallCache
    github: GitHubClient
    suno: SunoClient
    llm: LLMClient
    embedder: HuggingFaceEmbedder
    embeddings: EmbeddingPipeline
    reconciler: TaskReconciler
    orchestrator: SongOrchestrator
    storage: Optional[ArtifactStorage] = None
    images: Optional[ImageClient] = None

    async def close(self) -> None:
        """Close every HTTP client the container owns."""
        for client in (self.github, self.suno, self.llm, self.embedder, self.images):
            if client is not None:
                await client.close()
        if isinstance(self.storage, S3Storage):
            await self.storage.close()


def _qdrant_client(cfg: Settings) -> QdrantClient:
    if cfg.qdrant_location:
        return QdrantClient(location=cfg.qdrant_location)
    return QdrantClient(host=cfg.qdrant_host, port=cfg.qdrant_port)


def build_container(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    *,
    cfg: Optional[Settings] = None,
    qdrant: Optional[QdrantClient] = None,
    storage: Optional[ArtifactStorage] = None,
) -> ServiceContainer:
    """Wire the service graph; SQL stores when a session factory is given, in-memory otherwise."""
    cfg = cfg or default_settings

    call_store: CallStore
    task_store: TaskStore
    song_store: SongStore
    if session_factory is not None:
        call_store = SqlCallStore(session_factory)
        task_store = SqlTaskStore(session_factory)
        song_store = SqlSongStore(session_factory)
    else:
        logger.warning("No database session factory; using in-memory stores")
        call_store = InMemoryCallStore()
        task_store = InMemoryTaskStore()
        song_store = InMemorySongStore()

    cache = ExternalCallCache(
        call_store,
        RateLimitTracker(call_store),
        single_flight=cfg.cache_single_flight,
    )

    if storage is None and cfg.storage_bucket:
        storage = S3Storage(bucket=cfg.storage_bucket)
    if storage is None:
        logger.warning("No storage bucket configured; artifacts will keep their upstream URLs")

    github = GitHubClient(cache)
    suno = SunoClient(cache)
    llm = LLMClient(cache, model=cfg.llm_model)
    embedder = HuggingFaceEmbedder(cache)
    embeddings = EmbeddingPipeline(embedder, qdrant or _qdrant_client(cfg))
    images = ImageClient(cache) if cfg.cover_art_enabled else None

    reconciler = TaskReconciler(
        task_store,
        suno,
        storage=storage,
        song_store=song_store,
    )
    orchestrator = SongOrchestrator(
        github=github,
        embeddings=embeddings,
        llm=llm,
        suno=suno,
        reconciler=reconciler,
        song_store=song_store,
        storage=storage,
        images=images,
        callback_base_url=cfg.callback_base_url,
        search_top_k=cfg.search_top_k,
        cover_art_enabled=cfg.cover_art_enabled,
    )

    return ServiceContainer(
        call_store=call_store,
        task_store=task_store,
        song_store=song_store,
        cache=cache,
        github=github,
        suno=suno,
        llm=llm,
        embedder=embedder,
        embeddings=embeddings,
        reconciler=reconciler,
        orchestrator=orchestrator,
        storage=storage,
        images=images,
    )


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency: the container built during app startup."""
    container: Optional[ServiceContainer] = getattr(request.app.state, "container", None)
    if container is None:
        raise RuntimeError("Service container not initialized")
    return container
