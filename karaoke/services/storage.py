"""
Artifact storage on an S3-compatible bucket (AWS S3, DigitalOcean Spaces).

Objects are written under ``upload/{yyyy}/{mm}/{uuid}-{slug}``. boto3 is
synchronous, so every bucket call runs in ``asyncio.to_thread``.
"""
from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, cast
from urllib.parse import urlparse

import boto3
import httpx
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from karaoke.config import settings
from karaoke.errors import StorageError

logger = logging.getLogger(__name__)

S3_CONFIG = Config(signature_version="s3v4")

_SLUG_RE = re.compile(r"[^a-z0-9.]+")


class _S3Client(Protocol):
    """Structural interface for the boto3 S3 client methods used in this module."""

    def put_object(self, **kwargs: object) -> dict[str, object]: ...


@dataclass(frozen=True)
class StoredArtifact:
    url: str
    key: str
    size: int
    content_type: str


class ArtifactStorage(Protocol):
    async def store_from_url(self, url: str, *, filename: Optional[str] = None) -> StoredArtifact: ...

    async def store_bytes(
        self,
        data: bytes,
        *,
        filename: str,
        content_type: Optional[str] = None,
    ) -> StoredArtifact: ...


def slugify(filename: str) -> str:
    slug = _SLUG_RE.sub("-", filename.lower()).strip("-.")
    return slug[:120] or "file"


def build_key(filename: str, now: Optional[datetime] = None) -> str:
    """``upload/{yyyy}/{mm}/{uuid}-{slug}``"""
    now = now or datetime.now(timezone.utc)
    return f"upload/{now:%Y}/{now:%m}/{uuid.uuid4()}-{slugify(filename)}"


def _filename_from_url(url: str) -> str:
    path = urlparse(url).path
    name = path.rsplit("/", 1)[-1]
    return name or "artifact"


def _s3_client() -> _S3Client:
    # boto3 has no type stubs; cast to our Protocol at the untyped library boundary.
    return cast(
        _S3Client,
        boto3.client(
            "s3",
            region_name=settings.aws_region,
            endpoint_url=settings.storage_endpoint_url,
            config=S3_CONFIG,
        ),
    )


class S3Storage:
    """Downloads upstream artifacts and writes them to the configured bucket."""

    def __init__(
        self,
        *,
        bucket: Optional[str] = None,
        s3_client: Optional[_S3Client] = None,
        public_base_url: Optional[str] = None,
        acl: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        bucket = bucket or settings.storage_bucket
        if not bucket:
            raise StorageError("Storage bucket not configured (KARAOKE_STORAGE_BUCKET)")
        self.bucket = bucket
        self.acl = acl if acl is not None else settings.storage_acl
        self.public_base_url = (public_base_url or settings.storage_public_base_url or "").rstrip("/")
        self._s3 = s3_client
        self._client = http_client

    @property
    def s3(self) -> _S3Client:
        if self._s3 is None:
            self._s3 = _s3_client()
        return self._s3

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=5.0), follow_redirects=True)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if settings.storage_endpoint_url:
            return f"{settings.storage_endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{settings.aws_region}.amazonaws.com/{key}"

    async def store_bytes(
        self,
        data: bytes,
        *,
        filename: str,
        content_type: Optional[str] = None,
    ) -> StoredArtifact:
        content_type = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        key = build_key(filename)
        params: dict[str, object] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if self.acl:
            params["ACL"] = self.acl
        try:
            await asyncio.to_thread(lambda: self.s3.put_object(**params))
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

        logger.info(f"💾 Stored {len(data)} bytes at {key}")
        return StoredArtifact(url=self.public_url(key), key=key, size=len(data), content_type=content_type)

    async def store_from_url(self, url: str, *, filename: Optional[str] = None) -> StoredArtifact:
        """Download ``url`` and store its body."""
        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise StorageError(f"Failed to download {url}: {e}") from e

        content_type = response.headers.get("content-type", "").split(";")[0].strip() or None
        return await self.store_bytes(
            response.content,
            filename=filename or _filename_from_url(url),
            content_type=content_type,
        )
