"""Engine and session-factory lifecycle (karaoke/db/database.py)."""
from __future__ import annotations

import pytest
from sqlalchemy import inspect

from karaoke.db import close_db, get_session_factory, init_db
from karaoke.services.task_store import SqlTaskStore


def test_session_factory_requires_init() -> None:
    with pytest.raises(RuntimeError, match="init_db"):
        get_session_factory()


@pytest.mark.asyncio
async def test_init_creates_schema_and_close_resets() -> None:
    factory = await init_db("sqlite+aiosqlite:///:memory:")
    try:
        assert get_session_factory() is factory
        async with factory() as session:
            conn = await session.connection()
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        assert {"api_calls", "api_limits", "generation_tasks", "songs", "audio_files"} <= set(tables)
        assert await SqlTaskStore(factory).get("nope") is None
    finally:
        await close_db()

    with pytest.raises(RuntimeError):
        get_session_factory()
