"""Checkpoint persistence for the execution loop.

``CheckpointStore`` is the only writer of ``AgentRun.plan_state``. The engine
persists after every state transition; a write that fails is fatal for the
run and surfaces as ``CheckpointPersistenceError``.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..audit import AuditLogger
from ..errors import CheckpointPersistenceError
from ..repos.interfaces import RunRepository
from ..schemas.checkpoint import Checkpoint
from ..schemas.domain import AgentRun, _utc_now

logger = logging.getLogger(__name__)


class CheckpointStore:
    def __init__(self, runs: RunRepository, audit: AuditLogger) -> None:
        self._runs = runs
        self._audit = audit

    def load(self, run: AgentRun) -> Optional[Checkpoint]:
        """Checkpoint of ``run``, or None when the run has no plan yet."""
        return Checkpoint.load(run.plan_state)

    async def persist(self, run_id: str, checkpoint: Checkpoint) -> None:
        """
        Write the checkpoint and the active step pointer of a run.

        Args:
            run_id: The run identifier.
            checkpoint: The state to persist; ``updated_at`` is refreshed.

        Raises:
            CheckpointPersistenceError: When the repository write fails.
        """
        checkpoint.updated_at = _utc_now()
        try:
            await self._runs.save_plan_state(
                run_id, plan_state=checkpoint.dump(), active_step_id=checkpoint.active_step_id
            )
        except Exception as e:
            logger.error(f"Failed to persist checkpoint for run {run_id}: {e}")
            raise CheckpointPersistenceError(run_id, str(e)) from e
        await self._audit.info(
            run_id,
            "Checkpoint saved.",
            {
                "type": "checkpoint-save",
                "activeStepId": checkpoint.active_step_id,
                "stepCount": len(checkpoint.steps),
                "replanCount": checkpoint.replan_count,
            },
        )
