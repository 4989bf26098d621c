"""
Tests for gateway.db.database: get_database_url, init_db, close_db, get_db.
"""
from __future__ import annotations

import pytest
from unittest.mock import patch

from gateway.db import database


def test_get_database_url_uses_settings() -> None:
    with patch.object(database.settings, "database_url", "postgresql+asyncpg://localhost/gateway"):
        assert database.get_database_url() == "postgresql+asyncpg://localhost/gateway"


def test_get_database_url_defaults_to_sqlite_when_none() -> None:
    with patch.object(database.settings, "database_url", None):
        url = database.get_database_url()
        assert url.startswith("sqlite+aiosqlite")
        assert "gateway.db" in url


@pytest.mark.asyncio
async def test_init_db_and_close_db_lifecycle() -> None:
    """init_db creates engine and tables; close_db disposes engine."""
    with patch.object(database.settings, "database_url", "sqlite+aiosqlite:///:memory:"):
        with patch.object(database.settings, "debug", False):
            await database.init_db()
            assert database.is_initialized()
            await database.close_db()
            assert not database.is_initialized()


@pytest.mark.asyncio
async def test_get_db_yields_session() -> None:
    with patch.object(database.settings, "database_url", "sqlite+aiosqlite:///:memory:"):
        with patch.object(database.settings, "debug", False):
            await database.init_db()
            try:
                sessions = []
                async for session in database.get_db():
                    sessions.append(session)
                    break
                assert len(sessions) == 1
            finally:
                await database.close_db()


@pytest.mark.asyncio
async def test_get_db_requires_init() -> None:
    with pytest.raises(RuntimeError):
        async for _ in database.get_db():
            pass


def test_async_session_local_requires_init() -> None:
    with pytest.raises(RuntimeError):
        database.AsyncSessionLocal()
