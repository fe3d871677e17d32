from __future__ import annotations

"""SQLAlchemy ORM models for agent persistence.

These ORM models define the SQL schema used by the SQL repository
implementation in ``webpilot_ai.agent_core.repos.sql``.

Design
------

- Runs store the prompt, status and the checkpoint blob (``plan_state``).
- Audit logs form an append-only trail per run.
- Session memory is keyed by run; long-term memory by a logical memory key
  shared across runs.

Table names are prefixed with ``wp_`` to avoid collisions in shared databases.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class RunRow(Base):
    """Row model for ``wp_agent_runs``.

    ``plan_state`` holds the serialized checkpoint; the engine is its only
    writer apart from the resume and approval markers set by the run service.
    """

    __tablename__ = "wp_agent_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    prompt: Mapped[str] = mapped_column(Text)
    model: Mapped[str] = mapped_column(String(128))
    tools: Mapped[List[str]] = mapped_column(JSONB)

    status: Mapped[str] = mapped_column(String(32), index=True)
    memory_key: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    plan_state: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    active_step_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requires_human_intervention: Mapped[bool] = mapped_column(Boolean, default=False)
    log_lines: Mapped[List[str]] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    checkpointed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AuditLogRow(Base):
    """Row model for ``wp_agent_audit_logs``.

    ``metadata`` is a reserved attribute on declarative classes, so the
    column is mapped as ``meta``.
    """

    __tablename__ = "wp_agent_audit_logs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), index=True)

    level: Mapped[str] = mapped_column(String(16))
    message: Mapped[str] = mapped_column(Text)
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONB)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class MemoryRow(Base):
    """Row model for ``wp_agent_memory`` (session scope)."""

    __tablename__ = "wp_agent_memory"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), index=True)

    content: Mapped[str] = mapped_column(Text)
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONB)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class LongTermMemoryRow(Base):
    """Row model for ``wp_agent_long_term_memory``."""

    __tablename__ = "wp_agent_long_term_memory"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    memory_key: Mapped[str] = mapped_column(String(256), index=True)
    run_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    content: Mapped[str] = mapped_column(Text)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[List[str]] = mapped_column(JSONB)
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSONB)
    importance: Mapped[int] = mapped_column(Integer, default=3)

    last_accessed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
