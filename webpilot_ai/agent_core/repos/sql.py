from __future__ import annotations

"""SQLAlchemy async repository implementations.

This module provides a Postgres-backed persistence implementation for the
repository interfaces defined in ``webpilot_ai.agent_core.repos.interfaces``.

Usage
-----

Typical wiring (tests or application setup):

- Create an async engine with ``create_engine``.
- Create tables with ``create_all`` (for tests/dev).
- Create a session factory with ``create_sessionmaker``.
- Build repository instances with ``build_sql_repos``.

Transaction model
-----------------

Each repository method opens an ``AsyncSession``, performs its operation, and
commits. Every checkpoint write is therefore durable when
``save_plan_state`` returns.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Collection, Dict, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..schemas.domain import (
    TERMINAL_RUN_STATUSES,
    AgentRun,
    AgentRunStatus,
    AuditEntry,
    AuditLevel,
    LongTermMemoryItem,
    MemoryItem,
)
from .interfaces import AuditRepository, MemoryRepository, RunRepository
from .models import AuditLogRow, Base, LongTermMemoryRow, MemoryRow, RunRow

MEMORY_TABLES = (MemoryRow.__tablename__, LongTermMemoryRow.__tablename__)


def create_engine(db_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    The helper normalizes Postgres URLs to ensure the async driver is used.
    For example, it rewrites ``postgresql://`` and other variants to
    ``postgresql+asyncpg://``.
    """
    url = re.sub(r"^postgres(?:ql)?(?:\+[a-z0-9_]+)?://", "postgresql+asyncpg://", db_url, count=1)
    if url.startswith("sqlite"):
        return create_async_engine(url)
    return create_async_engine(url, pool_pre_ping=True)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an ``async_sessionmaker`` with safe defaults for this project."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_all(engine: AsyncEngine, *, include_memory: bool = True) -> None:
    """Create missing tables for the current ORM metadata.

    With ``include_memory=False`` the memory tables are left to be provisioned
    separately.
    """
    tables = [t for t in Base.metadata.sorted_tables if include_memory or t.name not in MEMORY_TABLES]
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=tables)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _run_from_row(row: RunRow) -> AgentRun:
    return AgentRun(
        id=row.id,
        prompt=row.prompt,
        model=row.model,
        tools=list(row.tools or []),
        status=AgentRunStatus(row.status),
        memory_key=row.memory_key,
        plan_state=row.plan_state,
        active_step_id=row.active_step_id,
        error_message=row.error_message,
        requires_human_intervention=bool(row.requires_human_intervention),
        log_lines=list(row.log_lines or []),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        started_at=_aware(row.started_at),
        finished_at=_aware(row.finished_at),
        checkpointed_at=_aware(row.checkpointed_at),
    )


def _long_term_from_row(row: LongTermMemoryRow) -> LongTermMemoryItem:
    return LongTermMemoryItem(
        id=row.id,
        memory_key=row.memory_key,
        run_id=row.run_id,
        content=row.content,
        summary=row.summary,
        tags=list(row.tags or []),
        metadata=dict(row.meta or {}),
        importance=row.importance,
        last_accessed_at=_aware(row.last_accessed_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


@dataclass(frozen=True)
class SqlRunRepository(RunRepository):
    """SQL implementation of ``RunRepository``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def create(self, run: AgentRun) -> None:
        """
        Persist a new run record.

        Args:
            run: The run domain object to insert.
        """
        async with self.session_factory() as s:
            s.add(
                RunRow(
                    id=run.id,
                    prompt=run.prompt,
                    model=run.model,
                    tools=list(run.tools),
                    status=run.status.value,
                    memory_key=run.memory_key,
                    plan_state=run.plan_state,
                    active_step_id=run.active_step_id,
                    error_message=run.error_message,
                    requires_human_intervention=run.requires_human_intervention,
                    log_lines=list(run.log_lines),
                    created_at=run.created_at,
                    updated_at=run.updated_at,
                    started_at=run.started_at,
                    finished_at=run.finished_at,
                    checkpointed_at=run.checkpointed_at,
                )
            )
            await s.commit()

    async def get(self, run_id: str) -> Optional[AgentRun]:
        async with self.session_factory() as s:
            row = await s.get(RunRow, run_id)
            return _run_from_row(row) if row is not None else None

    async def list(
        self, status: Optional[AgentRunStatus] = None, limit: int = 100, offset: int = 0
    ) -> list[AgentRun]:
        async with self.session_factory() as s:
            stmt = select(RunRow)
            if status is not None:
                stmt = stmt.where(RunRow.status == AgentRunStatus(status).value)
            stmt = stmt.order_by(RunRow.created_at.desc()).offset(offset).limit(limit)
            result = await s.execute(stmt)
            return [_run_from_row(r) for r in result.scalars().all()]

    async def update_status(
        self,
        run_id: str,
        *,
        status: AgentRunStatus,
        error_message: Optional[str] = None,
        requires_human_intervention: bool = False,
    ) -> None:
        """
        Update the status of an existing run.

        Args:
            run_id: The ID of the run to update.
            status: The new status value.
            error_message: Failure reason, cleared when None.
            requires_human_intervention: Whether a person must act next.
        """
        status = AgentRunStatus(status)
        async with self.session_factory() as s:
            row = await s.get(RunRow, run_id)
            if row is None:
                return
            now = _utc_now()
            row.status = status.value
            row.error_message = error_message
            row.requires_human_intervention = requires_human_intervention
            row.updated_at = now
            if status == AgentRunStatus.running and row.started_at is None:
                row.started_at = now
            if status in TERMINAL_RUN_STATUSES:
                row.finished_at = now
            await s.commit()

    async def save_plan_state(self, run_id: str, *, plan_state: Dict[str, Any], active_step_id: Optional[str]) -> None:
        async with self.session_factory() as s:
            row = await s.get(RunRow, run_id)
            if row is None:
                return
            now = _utc_now()
            row.plan_state = plan_state
            row.active_step_id = active_step_id
            row.checkpointed_at = now
            row.updated_at = now
            await s.commit()

    async def set_memory_key(self, run_id: str, memory_key: str) -> None:
        async with self.session_factory() as s:
            row = await s.get(RunRow, run_id)
            if row is None:
                return
            row.memory_key = memory_key
            await s.commit()

    async def append_log(self, run_id: str, line: str) -> None:
        async with self.session_factory() as s:
            row = await s.get(RunRow, run_id)
            if row is None:
                return
            # Reassign so the JSON column is flagged dirty.
            row.log_lines = [*(row.log_lines or []), line]
            row.updated_at = _utc_now()
            await s.commit()

    async def claim_next_queued(self) -> Optional[AgentRun]:
        """
        Claim the oldest queued run.

        On Postgres the row is locked with ``SKIP LOCKED`` so two workers never
        claim the same run.
        """
        async with self.session_factory() as s:
            stmt = (
                select(RunRow)
                .where(RunRow.status == AgentRunStatus.queued.value)
                .order_by(RunRow.created_at.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            row = (await s.execute(stmt)).scalars().first()
            if row is None:
                return None
            now = _utc_now()
            row.status = AgentRunStatus.running.value
            row.error_message = None
            row.requires_human_intervention = False
            row.updated_at = now
            if row.started_at is None:
                row.started_at = now
            await s.commit()
            return _run_from_row(row)

    async def list_stale_running(self, updated_before: datetime) -> list[AgentRun]:
        async with self.session_factory() as s:
            stmt = select(RunRow).where(
                RunRow.status == AgentRunStatus.running.value,
                RunRow.updated_at < updated_before,
            )
            result = await s.execute(stmt)
            return [_run_from_row(r) for r in result.scalars().all()]

    async def delete(self, run_id: str) -> bool:
        async with self.session_factory() as s:
            row = await s.get(RunRow, run_id)
            if row is None:
                return False
            await s.execute(delete(AuditLogRow).where(AuditLogRow.run_id == run_id))
            await s.execute(delete(MemoryRow).where(MemoryRow.run_id == run_id))
            await s.delete(row)
            await s.commit()
            return True

    async def delete_by_status(self, statuses: Collection[AgentRunStatus]) -> list[str]:
        values = [AgentRunStatus(st).value for st in statuses]
        if not values:
            return []
        async with self.session_factory() as s:
            result = await s.execute(select(RunRow.id).where(RunRow.status.in_(values)))
            ids = list(result.scalars().all())
            if ids:
                await s.execute(delete(AuditLogRow).where(AuditLogRow.run_id.in_(ids)))
                await s.execute(delete(MemoryRow).where(MemoryRow.run_id.in_(ids)))
                await s.execute(delete(RunRow).where(RunRow.id.in_(ids)))
            await s.commit()
            return ids


@dataclass(frozen=True)
class SqlAuditRepository(AuditRepository):
    """SQL implementation of ``AuditRepository``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def append(self, entry: AuditEntry) -> None:
        """
        Append an audit entry.

        Args:
            entry: The audit entry domain object.
        """
        async with self.session_factory() as s:
            s.add(
                AuditLogRow(
                    id=entry.id,
                    run_id=entry.run_id,
                    level=entry.level.value,
                    message=entry.message,
                    meta=entry.metadata,
                    created_at=entry.created_at,
                )
            )
            await s.commit()

    async def list(self, run_id: str, limit: int = 200) -> list[AuditEntry]:
        return await self.list_since(run_id, None, limit=limit)

    async def list_since(
        self, run_id: str, after: Optional[datetime] = None, limit: int = 200
    ) -> list[AuditEntry]:
        async with self.session_factory() as s:
            stmt = select(AuditLogRow).where(AuditLogRow.run_id == run_id)
            if after is not None:
                stmt = stmt.where(AuditLogRow.created_at >= after)
            stmt = stmt.order_by(AuditLogRow.created_at.asc(), AuditLogRow.id.asc()).limit(limit)
            result = await s.execute(stmt)
            return [
                AuditEntry(
                    id=row.id,
                    run_id=row.run_id,
                    level=AuditLevel(row.level),
                    message=row.message,
                    metadata=dict(row.meta or {}),
                    created_at=_aware(row.created_at),
                )
                for row in result.scalars().all()
            ]


@dataclass(frozen=True)
class SqlMemoryRepository(MemoryRepository):
    """SQL implementation of ``MemoryRepository``."""

    session_factory: async_sessionmaker[AsyncSession]

    async def add_memory(self, item: MemoryItem) -> Optional[MemoryItem]:
        async with self.session_factory() as s:
            s.add(
                MemoryRow(
                    id=item.id,
                    run_id=item.run_id,
                    content=item.content,
                    meta=item.metadata,
                    created_at=item.created_at,
                )
            )
            await s.commit()
        return item

    async def list_memory(self, run_id: str, limit: int = 20) -> list[MemoryItem]:
        async with self.session_factory() as s:
            stmt = (
                select(MemoryRow)
                .where(MemoryRow.run_id == run_id)
                .order_by(MemoryRow.created_at.desc())
                .limit(limit)
            )
            rows = list((await s.execute(stmt)).scalars().all())
        rows.reverse()
        return [
            MemoryItem(
                id=row.id,
                run_id=row.run_id,
                content=row.content,
                metadata=dict(row.meta or {}),
                created_at=_aware(row.created_at),
            )
            for row in rows
        ]

    async def add_long_term(self, item: LongTermMemoryItem) -> Optional[LongTermMemoryItem]:
        async with self.session_factory() as s:
            s.add(
                LongTermMemoryRow(
                    id=item.id,
                    memory_key=item.memory_key,
                    run_id=item.run_id,
                    content=item.content,
                    summary=item.summary,
                    tags=list(item.tags),
                    meta=item.metadata,
                    importance=item.importance,
                    last_accessed_at=item.last_accessed_at,
                    created_at=item.created_at,
                    updated_at=item.updated_at,
                )
            )
            await s.commit()
        return item

    async def list_long_term(
        self, memory_key: str, tags: Optional[Sequence[str]] = None, limit: int = 20
    ) -> list[LongTermMemoryItem]:
        """
        List long-term memory and bump ``last_accessed_at`` on every returned row.

        Tag filtering happens in Python so the query stays portable between
        Postgres JSONB and SQLite JSON.
        """
        wanted = set(tags or [])
        async with self.session_factory() as s:
            stmt = (
                select(LongTermMemoryRow)
                .where(LongTermMemoryRow.memory_key == memory_key)
                .order_by(LongTermMemoryRow.updated_at.desc())
            )
            rows = list((await s.execute(stmt)).scalars().all())
            if wanted:
                rows = [r for r in rows if wanted.intersection(r.tags or [])]
            rows = rows[:limit]
            now = _utc_now()
            for row in rows:
                row.last_accessed_at = now
            await s.commit()
            return [_long_term_from_row(r) for r in rows]


@dataclass(frozen=True)
class SqlRepoBundle:
    """Convenience bundle of all SQL repositories for dependency injection."""

    runs: SqlRunRepository
    audits: SqlAuditRepository
    memory: SqlMemoryRepository


def build_sql_repos(*, session_factory: async_sessionmaker[AsyncSession]) -> SqlRepoBundle:
    """Build a ``SqlRepoBundle`` from a session factory."""
    return SqlRepoBundle(
        runs=SqlRunRepository(session_factory=session_factory),
        audits=SqlAuditRepository(session_factory=session_factory),
        memory=SqlMemoryRepository(session_factory=session_factory),
    )
