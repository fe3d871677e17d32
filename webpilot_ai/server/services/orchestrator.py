from __future__ import annotations

import asyncio
import math
from datetime import datetime
from typing import AsyncGenerator, List, Optional, Set, Union

from webpilot_ai.agent_core.errors import RunNotFoundError
from webpilot_ai.agent_core.factory import build_engine_deps, build_service, build_worker
from webpilot_ai.agent_core.gateway import ModelGateway, OllamaChatGateway
from webpilot_ai.agent_core.repos.sql import SqlRepoBundle, build_sql_repos
from webpilot_ai.agent_core.schemas.domain import TERMINAL_RUN_STATUSES, AgentRun, AgentRunStatus, AuditEntry
from webpilot_ai.agent_core.tools import ToolRegistry
from webpilot_ai.core.logging_config import get_logger
from webpilot_ai.server.core.config import settings
from webpilot_ai.server.core.database import async_session_maker
from webpilot_ai.server.schemas import (
    AuditEvent,
    ErrorEvent,
    KeepAliveEvent,
    RunAction,
    RunActionType,
    RunStatusEvent,
)

logger = get_logger(__name__)

StreamEvent = Union[AuditEvent, RunStatusEvent, KeepAliveEvent, ErrorEvent]

# Statuses after which no further audit entries are expected.
_STREAM_CLOSING_STATUSES = frozenset(TERMINAL_RUN_STATUSES | {AgentRunStatus.waiting_human})

STREAM_PAGE_SIZE = 500

# Slack on top of one tool timeout before an idle stream is closed.
STREAM_IDLE_GRACE_SECONDS = 60.0


def idle_cycle_cap(poll_interval: float) -> int:
    """Number of idle polls a stream tolerates before it closes."""
    idle_seconds = settings.agent.tool_timeout_seconds + STREAM_IDLE_GRACE_SECONDS
    return max(1, math.ceil(idle_seconds / max(poll_interval, 0.5)))


class OrchestratorService:
    """
    Service layer between the API and the agent core.

    Owns the repository bundle, the model gateway, the run service and the
    queue worker of the process.
    """

    def __init__(
        self,
        *,
        session_factory=None,
        gateway: Optional[ModelGateway] = None,
        tools: Optional[ToolRegistry] = None,
        memory_provisioned: bool = True,
    ) -> None:
        self.repos: SqlRepoBundle = build_sql_repos(session_factory=session_factory or async_session_maker)
        self._owns_gateway = gateway is None
        self.gateway: ModelGateway = gateway or OllamaChatGateway(
            settings.ollama.base_url, timeout=settings.ollama.timeout_seconds
        )
        agent = settings.agent
        self.deps = build_engine_deps(
            repos=self.repos,
            gateway=self.gateway,
            default_model=settings.ollama.model,
            tools=tools,
            tool_timeout_seconds=agent.tool_timeout_seconds,
            memory_provisioned=memory_provisioned,
        )
        self.agent_service = build_service(
            repos=self.repos, default_model=settings.ollama.model, artifacts_dir=agent.artifacts_dir
        )
        self.worker = build_worker(
            deps=self.deps, poll_seconds=agent.poll_seconds, stuck_minutes=agent.stuck_run_minutes
        )

    async def start(self) -> None:
        if settings.agent.worker_enabled:
            await self.worker.start()
        else:
            logger.info("Agent queue worker disabled (AGENT_WORKER_ENABLED=false)")

    async def shutdown(self) -> None:
        await self.worker.stop()
        if self._owns_gateway and isinstance(self.gateway, OllamaChatGateway):
            await self.gateway.aclose()

    async def create_run(
        self,
        *,
        prompt: str,
        model: Optional[str] = None,
        tools: Optional[List[str]] = None,
        memory_key: Optional[str] = None,
        run_settings: Optional[dict] = None,
        preferences: Optional[dict] = None,
    ) -> AgentRun:
        return await self.agent_service.enqueue(
            prompt=prompt,
            model=model,
            tools=tools,
            memory_key=memory_key,
            settings=run_settings,
            preferences=preferences,
        )

    async def list_runs(
        self, status: Optional[AgentRunStatus] = None, limit: int = 100, offset: int = 0
    ) -> List[AgentRun]:
        return await self.agent_service.list(status=status, limit=limit, offset=offset)

    async def get_run(self, run_id: str) -> AgentRun:
        return await self.agent_service.get(run_id)

    async def list_audits(self, run_id: str, limit: int = 200) -> List[AuditEntry]:
        return await self.agent_service.list_audits(run_id, limit=limit)

    async def apply_action(self, run_id: str, action: RunAction) -> AgentRun:
        """Dispatch a stop, resume or approve action."""
        if action.action == RunActionType.stop:
            return await self.agent_service.stop(run_id)
        if action.action == RunActionType.resume:
            return await self.agent_service.resume(run_id, step_id=action.step_id)
        if not action.step_id:
            raise ValueError("stepId is required to approve a step")
        return await self.agent_service.approve_step(run_id, action.step_id)

    async def delete_run(self, run_id: str, *, force: bool = False) -> None:
        await self.agent_service.delete_run(run_id, force=force)

    async def delete_runs(self, scope: str = "terminal") -> List[str]:
        return await self.agent_service.delete_runs(scope)

    async def stream_events(
        self, run_id: str, *, poll_interval: float = 0.5, max_idle_cycles: Optional[int] = None
    ) -> AsyncGenerator[StreamEvent, None]:
        """
        Yield audit entries of a run as they are written.

        Polls the audit repository with a ``created_at`` cursor, so runs with
        long trails keep streaming their newest entries. A status event is
        emitted whenever the run status changes; the stream ends once the run
        is terminal or waiting for a human and has no unseen entries, or after
        ``max_idle_cycles`` polls without news. The default idle cap outlasts
        one tool timeout.
        """
        if max_idle_cycles is None:
            max_idle_cycles = idle_cycle_cap(poll_interval)
        seen: Set[str] = set()
        cursor: Optional[datetime] = None
        last_status: Optional[AgentRunStatus] = None
        idle_cycles = 0

        while True:
            try:
                run = await self.agent_service.get(run_id)
                entries = await self.repos.audits.list_since(run_id, cursor, limit=STREAM_PAGE_SIZE)
            except RunNotFoundError as e:
                yield ErrorEvent(error="Run not found", details=str(e))
                return
            except Exception as e:
                logger.error(f"Error streaming events for run {run_id}: {e}")
                yield ErrorEvent(error=str(e))
                await asyncio.sleep(poll_interval)
                continue

            fresh = [entry for entry in entries if entry.id not in seen]
            for entry in fresh:
                if cursor is None or entry.created_at > cursor:
                    # Only ids sharing the cursor timestamp can be returned again.
                    cursor = entry.created_at
                    seen.clear()
                seen.add(entry.id)
                yield AuditEvent(data=entry)
            page_full = bool(fresh) and len(entries) >= STREAM_PAGE_SIZE

            status_changed = run.status != last_status
            if status_changed:
                last_status = run.status
                yield RunStatusEvent(
                    run_id=run.id,
                    status=run.status,
                    active_step_id=run.active_step_id,
                    error_message=run.error_message,
                )

            if run.status in _STREAM_CLOSING_STATUSES and not fresh:
                break

            if fresh or status_changed:
                idle_cycles = 0
            else:
                idle_cycles += 1
                yield KeepAliveEvent()
                if idle_cycles >= max_idle_cycles:
                    break

            if not page_full:
                await asyncio.sleep(poll_interval)


# Global singleton
_orchestrator: Optional[OrchestratorService] = None


def init_orchestrator(**kwargs) -> OrchestratorService:
    """Create the process-wide orchestrator, replacing any previous one."""
    global _orchestrator
    _orchestrator = OrchestratorService(**kwargs)
    return _orchestrator


def get_orchestrator() -> OrchestratorService:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = OrchestratorService()
    return _orchestrator
