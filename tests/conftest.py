"""Pytest configuration and fixtures.

No test talks to a real upstream: HTTP clients get an ``httpx.MockTransport``,
Qdrant runs in local ``:memory:`` mode, and SQL stores use in-memory SQLite.
"""
from __future__ import annotations

import logging
from typing import Callable

import httpx
import pytest
import pytest_asyncio
from qdrant_client import QdrantClient

from karaoke.db import database
from karaoke.db.database import Base
from karaoke.services.call_cache import ExternalCallCache, InMemoryCallStore, RateLimitTracker
from karaoke.services.gateway import GatewayClient
from tests.fakes import FakeClock, FakeStorage


def pytest_configure(config):
    """Ensure asyncio_mode is auto so async fixtures work when pyproject is not in cwd."""
    if hasattr(config.option, "asyncio_mode") and config.option.asyncio_mode is None:
        config.option.asyncio_mode = "auto"
    logging.getLogger("httpcore").setLevel(logging.CRITICAL)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def call_store() -> InMemoryCallStore:
    return InMemoryCallStore()


@pytest.fixture
def cache(call_store: InMemoryCallStore, clock: FakeClock) -> ExternalCallCache:
    return ExternalCallCache(call_store, RateLimitTracker(call_store, clock=clock), clock=clock)


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def qdrant():
    client = QdrantClient(location=":memory:")
    yield client
    client.close()


@pytest_asyncio.fixture
async def mock_http():
    """Attach a ``MockTransport`` handler to a ``GatewayClient``.

    Usage::

        requests = mock_http(github, handler)
        ...
        assert len(requests) == 1
    """
    attached: list[GatewayClient] = []

    def _attach(client: GatewayClient, handler: Callable[[httpx.Request], httpx.Response]) -> list[httpx.Request]:
        seen: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return handler(request)

        client._client = httpx.AsyncClient(
            transport=httpx.MockTransport(_record),
            headers=client.default_headers(),
        )
        attached.append(client)
        return seen

    yield _attach
    for client in attached:
        await client.close()


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite session factory, also installed as the module-level one."""
    engine = database.create_engine_for("sqlite+aiosqlite:///:memory:")
    await database.create_schema(engine)
    factory = database.session_factory_for(engine)

    old_engine = database._engine
    old_factory = database._async_session_factory
    database._engine = engine
    database._async_session_factory = factory
    try:
        yield factory
    finally:
        database._engine = old_engine
        database._async_session_factory = old_factory
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()
