"""
Unit tests for FastAPI application lifespan management.

Tests verify that startup initializes the database, detects whether the
memory tables are provisioned and starts the orchestrator, and that shutdown
stops it again.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from webpilot_ai.server import main
from webpilot_ai.server.core import database

pytestmark = pytest.mark.asyncio

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def empty_engine(monkeypatch):
    """Swap the module engine for an empty in-memory database."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    monkeypatch.setattr(database, "engine", engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def fake_orchestrator():
    orchestrator = MagicMock()
    orchestrator.start = AsyncMock()
    orchestrator.shutdown = AsyncMock()
    with patch.object(main, "init_orchestrator", return_value=orchestrator) as init:
        yield init, orchestrator


class TestLifespan:
    async def test_startup_and_shutdown(self, fake_orchestrator):
        init, orchestrator = fake_orchestrator

        with patch.object(main, "init_db", AsyncMock()) as init_db, patch.object(
            main, "tables_exist", AsyncMock(return_value=True)
        ):
            async with main.lifespan(main.app):
                init_db.assert_awaited_once()
                init.assert_called_once_with(memory_provisioned=True)
                orchestrator.start.assert_awaited_once()
                orchestrator.shutdown.assert_not_awaited()

        orchestrator.shutdown.assert_awaited_once()

    async def test_missing_memory_tables_disable_memory(self, fake_orchestrator):
        init, _ = fake_orchestrator

        with patch.object(main, "init_db", AsyncMock()), patch.object(
            main, "tables_exist", AsyncMock(return_value=False)
        ):
            async with main.lifespan(main.app):
                pass

        init.assert_called_once_with(memory_provisioned=False)

    async def test_database_failure_still_starts_orchestrator(self, fake_orchestrator):
        init, orchestrator = fake_orchestrator

        with patch.object(main, "init_db", AsyncMock(side_effect=ConnectionError("db down"))), patch.object(
            main, "logger"
        ) as mock_logger:
            async with main.lifespan(main.app):
                pass

        init.assert_called_once_with(memory_provisioned=False)
        orchestrator.start.assert_awaited_once()
        mock_logger.error.assert_called_once()

    async def test_app_has_lifespan_configured(self):
        assert main.app.router.lifespan_context is not None


class TestDatabase:
    async def test_init_db_creates_tables(self, empty_engine):
        await database.init_db()

        async with empty_engine.connect() as conn:
            tables = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        assert set(database.MEMORY_TABLES) <= tables
        assert "wp_agent_runs" in tables

    async def test_tables_exist_is_false_before_init(self, empty_engine):
        assert await database.tables_exist() is False

    async def test_tables_exist_after_init(self, empty_engine):
        await database.init_db()

        assert await database.tables_exist() is True
        assert await database.tables_exist(["wp_agent_runs", "unknown_table"]) is False

    async def test_init_db_without_memory_leaves_memory_unprovisioned(self, empty_engine):
        await database.init_db(include_memory=False)

        assert await database.tables_exist() is False
        assert await database.tables_exist(["wp_agent_runs", "wp_agent_audit_logs"]) is True

    async def test_init_db_follows_provision_setting(self, empty_engine, monkeypatch):
        monkeypatch.setattr(database.settings, "agent_provision_memory", False)

        await database.init_db()

        assert await database.tables_exist() is False

    async def test_get_session_yields_async_session(self):
        async for session in database.get_session():
            assert isinstance(session, AsyncSession)
