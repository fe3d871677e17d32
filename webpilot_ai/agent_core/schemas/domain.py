from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import Field

from .base import BaseSchema


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AgentRunStatus(str, Enum):
    queued = "queued"
    running = "running"
    waiting_human = "waiting_human"
    completed = "completed"
    failed = "failed"
    stopped = "stopped"
    canceled = "canceled"


TERMINAL_RUN_STATUSES = frozenset(
    {
        AgentRunStatus.completed,
        AgentRunStatus.failed,
        AgentRunStatus.stopped,
        AgentRunStatus.canceled,
    }
)

# Statuses eligible for bulk deletion with scope="terminal".
DELETABLE_RUN_STATUSES = frozenset(
    {
        AgentRunStatus.completed,
        AgentRunStatus.failed,
        AgentRunStatus.stopped,
        AgentRunStatus.waiting_human,
    }
)


class StepStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"
    skipped = "skipped"


class StepTool(str, Enum):
    playwright = "playwright"
    none = "none"


class StepPhase(str, Enum):
    observe = "observe"
    act = "act"
    verify = "verify"
    recover = "recover"


class TaskType(str, Enum):
    web_task = "web_task"
    extract_info = "extract_info"


class DecisionAction(str, Enum):
    tool = "tool"
    respond = "respond"
    wait_human = "wait_human"


class AuditLevel(str, Enum):
    info = "info"
    warning = "warning"
    error = "error"


class AgentRun(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))

    prompt: str
    model: str
    tools: List[str] = Field(default_factory=lambda: ["playwright"])

    status: AgentRunStatus = AgentRunStatus.queued
    memory_key: Optional[str] = None

    plan_state: Optional[Dict[str, Any]] = None
    active_step_id: Optional[str] = None

    error_message: Optional[str] = None
    requires_human_intervention: bool = False
    log_lines: List[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    checkpointed_at: Optional[datetime] = None


class AuditEntry(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    run_id: str

    level: AuditLevel = AuditLevel.info
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=_utc_now)


class MemoryItem(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    run_id: str

    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=_utc_now)


class LongTermMemoryItem(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    memory_key: str
    run_id: Optional[str] = None

    content: str
    summary: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    importance: int = Field(default=3, ge=1, le=5)

    last_accessed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
