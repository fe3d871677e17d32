from __future__ import annotations

"""Background queue worker.

``AgentQueueWorker`` is owned by the process lifespan. It polls the run
repository for the oldest queued run, claims it (``queued`` -> ``running``) and
drives it through ``AgentEngine``. One run is driven at a time.

Every poll first re-queues runs that have been ``running`` without a
checkpoint write for longer than ``stuck_after``; their checkpoints get a
resume signal so the engine reviews the remaining plan. A run interrupted by
``stop`` is re-queued the same way before the worker exits, so a restarted
process picks it up again.
"""

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import List, Optional

from ..core.monitoring import log_error
from .audit import AuditLogger
from .repos.interfaces import RunRepository
from .runtime.checkpoint import CheckpointStore
from .runtime.engine import AgentEngine
from .schemas.checkpoint import Checkpoint
from .schemas.domain import AgentRunStatus, _utc_now

logger = logging.getLogger(__name__)


class AgentQueueWorker:
    def __init__(
        self,
        *,
        runs: RunRepository,
        engine: AgentEngine,
        audit: AuditLogger,
        poll_seconds: float = 2.0,
        stuck_after: timedelta = timedelta(minutes=10),
    ) -> None:
        self._runs = runs
        self._engine = engine
        self._audit = audit
        self._checkpoints = CheckpointStore(runs, audit)
        self._poll_seconds = poll_seconds
        self._stuck_after = stuck_after
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="agent-queue-worker")
        logger.info("Agent queue worker started")

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._stopping is not None:
            self._stopping.set()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Agent queue worker stopped")

    async def _loop(self) -> None:
        assert self._stopping is not None
        while not self._stopping.is_set():
            try:
                claimed = await self.poll()
            except Exception as e:
                logger.error(f"Agent queue poll failed: {e}")
                claimed = None
            if claimed is not None:
                continue
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_seconds)

    async def poll(self) -> Optional[str]:
        """Recover stuck runs, then claim and drive the oldest queued run.

        Returns the id of the driven run, or None when nothing was queued.
        """
        await self.recover_stuck_runs()
        run = await self._runs.claim_next_queued()
        if run is None:
            return None
        logger.info(f"Driving agent run {run.id}")
        await self._drive(run.id)
        return run.id

    async def _drive(self, run_id: str) -> None:
        try:
            await self._engine.run(run_id)
        except asyncio.CancelledError:
            await self._requeue_interrupted(run_id)
            raise
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.exception(f"Agent run {run_id} crashed: {message}")
            log_error(type(e).__name__, message, {"run_id": run_id})
            await self._runs.update_status(run_id, status=AgentRunStatus.failed, error_message=message)
            await self._audit.error(run_id, "Agent run crashed.", {"type": "run-crash", "error": message})

    async def recover_stuck_runs(self) -> List[str]:
        """Re-queue runs stuck in ``running``; returns their ids."""
        now = _utc_now()
        stale = await self._runs.list_stale_running(now - self._stuck_after)
        recovered: List[str] = []
        for run in stale:
            checkpoint = Checkpoint.load(run.plan_state)
            if checkpoint is not None:
                checkpoint.resume_requested_at = now
                await self._checkpoints.persist(run.id, checkpoint)
            await self._runs.update_status(run.id, status=AgentRunStatus.queued)
            await self._audit.warning(
                run.id, "Stuck run requeued.", {"type": "run-recovered", "lastUpdate": run.updated_at}
            )
            recovered.append(run.id)
        if recovered:
            logger.warning(f"Requeued {len(recovered)} stuck agent runs")
        return recovered

    async def _requeue_interrupted(self, run_id: str) -> None:
        try:
            run = await self._runs.get(run_id)
            if run is None or run.status != AgentRunStatus.running:
                return
            checkpoint = Checkpoint.load(run.plan_state)
            if checkpoint is not None:
                checkpoint.resume_requested_at = _utc_now()
                await self._checkpoints.persist(run_id, checkpoint)
            await self._runs.update_status(run_id, status=AgentRunStatus.queued)
            await self._audit.warning(run_id, "Interrupted run requeued.", {"type": "run-interrupted"})
            logger.warning(f"Agent run {run_id} interrupted by shutdown; requeued")
        except Exception as e:
            logger.error(f"Failed to requeue interrupted agent run {run_id}: {e}")
