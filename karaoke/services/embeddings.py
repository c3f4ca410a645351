"""Chunk-and-embed pipeline over Hugging Face embeddings and Qdrant.

Each source document is split with ``chunk_text``; every chunk is embedded
through the cached Hugging Face gateway and upserted into a per-repository
collection. Point ids are derived from ``{source_id}__chunk_{i}``, so
re-running the pipeline over the same commit overwrites instead of
duplicating.

qdrant_client is synchronous; every call runs in ``asyncio.to_thread``.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import numpy as np
from qdrant_client import QdrantClient
from qdrant_client.models import Distance, PointStruct, QueryResponse, VectorParams

from karaoke.config import settings
from karaoke.core.chunker import chunk_text
from karaoke.errors import GatewayError, InvalidRequestError
from karaoke.services.call_cache import ExternalCallCache
from karaoke.services.gateway import GatewayClient, hours

logger = logging.getLogger(__name__)

HF_INFERENCE_BASE_URL = "https://router.huggingface.co/hf-inference/models"


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


def mean_pool(raw: Any) -> list[float]:
    """Collapse a token-level feature matrix to one sentence vector.

    sentence-transformers models answer with either a flat vector or one
    vector per token (optionally wrapped in a batch dimension).
    """
    array = np.asarray(raw, dtype=np.float32)
    if array.ndim == 0 or array.size == 0:
        raise ValueError("Empty embedding response")
    while array.ndim > 1:
        array = array.mean(axis=0)
    return array.tolist()


class HuggingFaceEmbedder(GatewayClient):
    """Feature-extraction embeddings from the Hugging Face inference router."""

    service = "huggingface"

    def __init__(
        self,
        cache: ExternalCallCache,
        *,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: str = HF_INFERENCE_BASE_URL,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(cache, base_url=base_url, timeout=timeout)
        self.model = model or settings.embedding_model
        self.api_key = api_key if api_key is not None else settings.hf_api_key
        self.cache_ttl = hours(settings.embedding_cache_hours)

    def default_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def embed(self, text: str) -> list[float]:
        if not text:
            raise InvalidRequestError("Cannot embed empty text")
        endpoint = f"/{self.model}/pipeline/feature-extraction"
        raw = await self.request(
            "POST",
            endpoint,
            json_body={"inputs": text, "options": {"wait_for_model": True}},
            cache_ttl=self.cache_ttl,
            validate=lambda payload: self._pool(payload, endpoint),
        )
        return self._pool(raw, endpoint)

    def _pool(self, raw: Any, endpoint: str) -> list[float]:
        try:
            return mean_pool(raw)
        except (ValueError, TypeError) as e:
            raise GatewayError(
                f"Unexpected embedding shape: {e}",
                service=self.service,
                endpoint=endpoint,
                response_payload=raw if isinstance(raw, (dict, str)) else None,
            ) from e


@dataclass
class RetrievedDocument:
    document: str
    metadata: dict[str, Any] = field(default_factory=dict)
    score: float = 0.0
    chunk_id: str = ""


def point_id_for(chunk_id: str) -> str:
    """Deterministic Qdrant point id for a chunk id."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, chunk_id))


class EmbeddingPipeline:
    """Idempotent chunk → embed → upsert, and top-K similarity queries."""

    def __init__(
        self,
        embedder: Embedder,
        qdrant: QdrantClient,
        *,
        chunk_tokens: Optional[int] = None,
        chars_per_token: int = 4,
    ) -> None:
        self.embedder = embedder
        self.qdrant = qdrant
        self.chunk_tokens = chunk_tokens or settings.embedding_chunk_tokens
        self.chars_per_token = chars_per_token
        self._ready: set[str] = set()

    def _collection_names(self) -> set[str]:
        return {c.name for c in self.qdrant.get_collections().collections}

    async def collection_exists(self, name: str) -> bool:
        if name in self._ready:
            return True
        return name in await asyncio.to_thread(self._collection_names)

    async def ensure_collection(self, name: str, vector_size: int) -> None:
        """Create the collection if absent (cosine distance). Idempotent."""
        if name in self._ready:
            return

        def _ensure() -> bool:
            if name in self._collection_names():
                return False
            self.qdrant.create_collection(
                collection_name=name,
                vectors_config=VectorParams(size=vector_size, distance=Distance.COSINE),
            )
            return True

        created = await asyncio.to_thread(_ensure)
        if created:
            logger.info("✅ Created Qdrant collection '%s' (dim=%d)", name, vector_size)
        self._ready.add(name)

    async def upsert_document(
        self,
        collection: str,
        source_id: str,
        text: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> list[str]:
        """Chunk, embed and upsert one document; returns its chunk ids."""
        chunks = chunk_text(
            text,
            max_tokens=self.chunk_tokens,
            chars_per_token=self.chars_per_token,
            source_id=source_id,
        )
        if not chunks:
            return []

        points: list[PointStruct] = []
        for chunk in chunks:
            vector = await self.embedder.embed(chunk.text)
            await self.ensure_collection(collection, len(vector))
            points.append(PointStruct(
                id=point_id_for(chunk.chunk_id),
                vector=vector,
                payload={
                    "chunk_id": chunk.chunk_id,
                    "source_id": source_id,
                    "chunk_index": chunk.index,
                    "document": chunk.text,
                    "metadata": dict(metadata or {}),
                },
            ))

        await asyncio.to_thread(self.qdrant.upsert, collection_name=collection, points=points)
        logger.debug("Upserted %d chunk(s) for %s into '%s'", len(points), source_id, collection)
        return [str(p.payload["chunk_id"]) for p in points if p.payload]

    async def query(self, collection: str, text: str, top_k: int = 5) -> list[RetrievedDocument]:
        """Top-K most similar chunks, best first. A missing collection yields ``[]``."""
        if not await self.collection_exists(collection):
            logger.info("Qdrant collection '%s' does not exist; nothing to search", collection)
            return []

        vector = await self.embedder.embed(text)
        response: QueryResponse = await asyncio.to_thread(
            self.qdrant.query_points,
            collection_name=collection,
            query=vector,
            limit=top_k,
            with_payload=True,
        )

        results = [
            RetrievedDocument(
                document=str((hit.payload or {}).get("document", "")),
                metadata=dict((hit.payload or {}).get("metadata") or {}),
                score=float(hit.score),
                chunk_id=str((hit.payload or {}).get("chunk_id", "")),
            )
            for hit in response.points
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        logger.info("🔎 Retrieved %d document(s) from '%s'", len(results), collection)
        return results
