from __future__ import annotations

"""Convenience factories for wiring the agent core.

These helpers assemble the engine, the run service and the queue worker from
a repository bundle and a model gateway, so application wiring and tests stay
concise. Deployments can still build ``EngineDeps`` by hand to inject their
own planner, validators or tool registry.
"""

from datetime import timedelta
from pathlib import Path
from typing import Optional, Protocol

from .audit import AuditLogger
from .gateway import ModelGateway
from .memory import MemoryStore
from .planning import LLMPlanner
from .repos import AuditRepository, MemoryRepository, NotProvisionedMemoryRepository, RunRepository
from .runtime import AgentEngine, ApprovalGate, EngineDeps
from .service import AgentService
from .tools import ToolRegistry
from .validators import LLMValidators
from .worker import AgentQueueWorker


class RepoBundle(Protocol):
    runs: RunRepository
    audits: AuditRepository
    memory: MemoryRepository


def build_engine_deps(
    *,
    repos: RepoBundle,
    gateway: ModelGateway,
    default_model: str,
    tools: Optional[ToolRegistry] = None,
    tool_timeout_seconds: float = 120.0,
    memory_provisioned: bool = True,
) -> EngineDeps:
    """Construct ``EngineDeps`` around one gateway and one repository bundle.

    With ``memory_provisioned=False`` the memory store is backed by
    ``NotProvisionedMemoryRepository``.
    """
    audit = AuditLogger(repos.audits)
    memory_repo = repos.memory if memory_provisioned else NotProvisionedMemoryRepository()
    return EngineDeps(
        runs=repos.runs,
        audit=audit,
        memory=MemoryStore(memory_repo, gateway),
        planner=LLMPlanner(gateway, audit),
        validators=LLMValidators(gateway, audit),
        tools=tools or ToolRegistry(),
        approvals=ApprovalGate(gateway, audit),
        default_model=default_model,
        tool_timeout_seconds=tool_timeout_seconds,
    )


def build_engine(deps: EngineDeps) -> AgentEngine:
    return AgentEngine(deps=deps)


def build_service(*, repos: RepoBundle, default_model: str, artifacts_dir: str | Path) -> AgentService:
    return AgentService(
        runs=repos.runs,
        audits=repos.audits,
        default_model=default_model,
        artifacts_dir=artifacts_dir,
    )


def build_worker(
    *,
    deps: EngineDeps,
    poll_seconds: float = 2.0,
    stuck_minutes: float = 10.0,
) -> AgentQueueWorker:
    """Construct a queue worker driving a fresh ``AgentEngine``."""
    return AgentQueueWorker(
        runs=deps.runs,
        engine=build_engine(deps),
        audit=deps.audit,
        poll_seconds=poll_seconds,
        stuck_after=timedelta(minutes=stuck_minutes),
    )
