from typing import AsyncGenerator
from unittest.mock import patch

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from webpilot_ai.agent_core.factory import build_service
from webpilot_ai.agent_core.repos.models import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def test_engine():
    """In-memory SQLite engine with the agent core tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def orchestrator(session_factory, gateway, tmp_path):
    """Orchestrator over the SQLite repositories and the fake model gateway."""
    from webpilot_ai.server.services.orchestrator import OrchestratorService

    service = OrchestratorService(session_factory=session_factory, gateway=gateway)
    service.agent_service = build_service(
        repos=service.repos, default_model="test-model", artifacts_dir=tmp_path / "artifacts"
    )
    yield service
    await service.shutdown()


@pytest_asyncio.fixture(name="client")
async def client_fixture(orchestrator) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client with mocked lifespan and overridden dependencies."""
    from webpilot_ai.server.main import app
    from webpilot_ai.server.services.orchestrator import get_orchestrator

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    # Mock the lifespan to prevent database initialization during tests
    async def mock_lifespan(app):
        yield

    with patch("webpilot_ai.server.main.lifespan", mock_lifespan):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://localhost") as client:
            yield client

    app.dependency_overrides.clear()
