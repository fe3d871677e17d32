"""
Database Connection and Session Management.

This module sets up the asynchronous SQLAlchemy engine and session factory
shared by the API and the queue worker.
"""

from typing import AsyncGenerator, Iterable, Optional

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession

from webpilot_ai.agent_core.repos.sql import MEMORY_TABLES, create_all, create_engine, create_sessionmaker
from webpilot_ai.server.core.config import settings

"""
engine:
    The global SQLAlchemy AsyncEngine instance.
    Postgres URLs are normalized to the asyncpg driver.
"""
engine = create_engine(settings.database_url)

"""
async_session_maker:
    A global factory for creating new AsyncSession instances.
    Bound to the `engine` and configured to NOT expire on commit (typical for async).
"""
async_session_maker = create_sessionmaker(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency generator for database sessions.

    Yields:
        AsyncSession: An asynchronous SQLAlchemy session.
    """
    async with async_session_maker() as session:
        yield session


async def init_db(include_memory: Optional[bool] = None) -> None:
    """
    Initialize the database.

    Creates the tables defined in the agent core ORM metadata that do not
    exist yet. The memory tables are only created when ``include_memory``
    (default: ``AGENT_PROVISION_MEMORY``) is set; otherwise their presence is
    left to ``tables_exist``.
    """
    if include_memory is None:
        include_memory = settings.agent.provision_memory
    await create_all(engine, include_memory=include_memory)


async def tables_exist(names: Iterable[str] = MEMORY_TABLES) -> bool:
    """Return True when every table in ``names`` exists in the database."""
    async with engine.connect() as conn:
        existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
    return all(name in existing for name in names)
