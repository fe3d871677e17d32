from __future__ import annotations

"""Run service: the control surface over agent runs.

``AgentService`` never executes a run itself. It inserts queued runs and
flips the control fields the engine reads at its step boundaries:

- ``enqueue``: insert a queued run with its settings and preferences.
- ``stop``: mark a run stopped; the engine halts at the next step boundary.
- ``resume``: re-queue a run with a resume signal on its checkpoint.
- ``approve_step``: grant the pending approval and re-queue the run.
- ``delete_run`` / ``delete_runs``: remove runs and their artifacts.

Execution is picked up by ``AgentQueueWorker``.
"""

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..core.monitoring import log_agent_run
from .audit import AuditLogger
from .errors import RunConflictError, RunNotFoundError
from .repos.interfaces import AuditRepository, RunRepository
from .runtime.checkpoint import CheckpointStore
from .schemas.checkpoint import Checkpoint
from .schemas.config import AgentPlanPreferences, AgentPlanSettings
from .schemas.domain import (
    DELETABLE_RUN_STATUSES,
    TERMINAL_RUN_STATUSES,
    AgentRun,
    AgentRunStatus,
    AuditEntry,
    StepStatus,
    _utc_now,
)

logger = logging.getLogger(__name__)

DELETE_SCOPES = ("terminal",)


class AgentService:
    """Enqueue and control agent runs."""

    def __init__(
        self,
        *,
        runs: RunRepository,
        audits: AuditRepository,
        default_model: str,
        artifacts_dir: str | Path,
    ) -> None:
        self._runs = runs
        self._audits = audits
        self._audit = AuditLogger(audits)
        self._checkpoints = CheckpointStore(runs, self._audit)
        self._default_model = default_model
        self._artifacts_dir = Path(artifacts_dir)

    async def enqueue(
        self,
        *,
        prompt: str,
        model: Optional[str] = None,
        tools: Optional[Sequence[str]] = None,
        memory_key: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
        preferences: Optional[Dict[str, Any]] = None,
    ) -> AgentRun:
        """
        Insert a new queued run.

        Args:
            prompt: The natural-language task; must not be blank.
            model: Default model of the run (falls back to the service default).
            tools: Tool names the run may use.
            memory_key: Long-term memory subject shared with other runs.
            settings: Untrusted budget overrides, clamped into range.
            preferences: Untrusted preference overrides.

        Raises:
            ValueError: If the prompt is blank.
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt must not be blank")
        run = AgentRun(
            prompt=prompt.strip(),
            model=(model or "").strip() or self._default_model,
            tools=list(tools) if tools else ["playwright"],
            memory_key=memory_key.strip() if memory_key and memory_key.strip() else None,
            plan_state={
                "settings": AgentPlanSettings.resolve(settings).model_dump(by_alias=True),
                "preferences": AgentPlanPreferences.resolve(preferences).model_dump(by_alias=True),
            },
        )
        await self._runs.create(run)
        await self._audit.info(run.id, "Agent run queued.", {"type": "run-queued", "model": run.model})
        log_agent_run(run.id, run.prompt, run.model)
        logger.info(f"Queued agent run {run.id}")
        return run

    async def get(self, run_id: str) -> AgentRun:
        run = await self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def list(
        self, status: Optional[AgentRunStatus] = None, limit: int = 100, offset: int = 0
    ) -> List[AgentRun]:
        return await self._runs.list(status=status, limit=limit, offset=offset)

    async def list_audits(self, run_id: str, limit: int = 200) -> List[AuditEntry]:
        await self.get(run_id)
        return await self._audits.list(run_id, limit=limit)

    async def stop(self, run_id: str) -> AgentRun:
        """Stop a run. Runs already in a terminal status are returned unchanged."""
        run = await self.get(run_id)
        if run.status in TERMINAL_RUN_STATUSES:
            return run
        await self._runs.update_status(run_id, status=AgentRunStatus.stopped, error_message="Stopped by user.")
        await self._audit.warning(run_id, "Agent run stopped by user.", {"type": "run-stop", "previous": run.status})
        return await self.get(run_id)

    async def resume(self, run_id: str, step_id: Optional[str] = None) -> AgentRun:
        """
        Re-queue a run and signal the engine to review its remaining plan.

        When ``step_id`` is given, that step becomes the active step and gets a
        fresh attempt budget. Otherwise a failed active step is reset.

        Raises:
            RunNotFoundError: If the run does not exist.
            RunConflictError: If the run is queued or running, or ``step_id``
                is not part of its plan.
        """
        run = await self.get(run_id)
        if run.status in (AgentRunStatus.queued, AgentRunStatus.running):
            raise RunConflictError(run_id, run.status.value, "run is already scheduled")

        checkpoint = Checkpoint.load(run.plan_state)
        if checkpoint is not None:
            target_id = step_id or checkpoint.active_step_id
            target = next((s for s in checkpoint.steps if s.id == target_id), None)
            if step_id and target is None:
                raise RunConflictError(run_id, run.status.value, f"step '{step_id}' is not part of the plan")
            if target is not None and (step_id or target.status == StepStatus.failed):
                target.status = StepStatus.pending
                target.attempts = 0
                checkpoint.branched_step_ids = [i for i in checkpoint.branched_step_ids if i != target.id]
                checkpoint.recovered_step_ids = [i for i in checkpoint.recovered_step_ids if i != target.id]
                checkpoint.active_step_id = target.id
            checkpoint.resume_requested_at = _utc_now()
            await self._checkpoints.persist(run_id, checkpoint)

        await self._runs.update_status(run_id, status=AgentRunStatus.queued)
        await self._audit.info(
            run_id, "Agent run resume requested.", {"type": "run-resume", "stepId": step_id, "previous": run.status}
        )
        return await self.get(run_id)

    async def approve_step(self, run_id: str, step_id: str) -> AgentRun:
        """Grant the pending approval of ``step_id`` and re-queue the run."""
        run = await self.get(run_id)
        checkpoint = Checkpoint.load(run.plan_state)
        if (
            run.status != AgentRunStatus.waiting_human
            or checkpoint is None
            or checkpoint.approval_requested_step_id != step_id
        ):
            raise RunConflictError(run_id, run.status.value, f"step '{step_id}' is not awaiting approval")

        checkpoint.approval_granted_step_id = step_id
        checkpoint.approval_requested_step_id = None
        checkpoint.active_step_id = step_id
        await self._checkpoints.persist(run_id, checkpoint)
        await self._runs.update_status(run_id, status=AgentRunStatus.queued)
        await self._audit.info(run_id, "Approval granted.", {"type": "approval-granted", "stepId": step_id})
        return await self.get(run_id)

    async def delete_run(self, run_id: str, *, force: bool = False) -> None:
        """
        Delete a run, its audit trail and its artifacts directory.

        Raises:
            RunNotFoundError: If the run does not exist.
            RunConflictError: If the run is running and ``force`` is not set.
        """
        run = await self.get(run_id)
        if run.status == AgentRunStatus.running and not force:
            raise RunConflictError(run_id, run.status.value, "stop the run before deleting it")
        await self._runs.delete(run_id)
        self._remove_artifacts(run_id)
        logger.info(f"Deleted agent run {run_id}")

    async def delete_runs(self, scope: str = "terminal") -> List[str]:
        """Delete every run in a deletable status; returns the deleted ids."""
        if scope not in DELETE_SCOPES:
            raise ValueError(f"unsupported delete scope: {scope}")
        deleted = await self._runs.delete_by_status(DELETABLE_RUN_STATUSES)
        for run_id in deleted:
            self._remove_artifacts(run_id)
        logger.info(f"Deleted {len(deleted)} agent runs (scope={scope})")
        return deleted

    def _remove_artifacts(self, run_id: str) -> None:
        shutil.rmtree(self._artifacts_dir / run_id, ignore_errors=True)
