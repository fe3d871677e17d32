from __future__ import annotations

"""Repository interface contracts.

The engine, the run service and the worker depend on these Protocols instead
of concrete persistence implementations.

Contract guidelines
-------------------

- All methods are async.
- Implementations must not leak SQLAlchemy sessions/transactions to callers.
- Updates for an unknown run id are no-ops.
- The audit repository is append-only.
- Writes are scoped to one run id, so concurrent runs never contend on the
  same run row.

The memory repository is a *soft* dependency: deployments without the memory
tables use ``NotProvisionedMemoryRepository``, which returns empty results
instead of failing.
"""

from datetime import datetime
from typing import Any, Collection, Dict, Optional, Protocol, Sequence

from ..schemas.domain import (
    AgentRun,
    AgentRunStatus,
    AuditEntry,
    LongTermMemoryItem,
    MemoryItem,
)


class RunRepository(Protocol):
    """Persist and query the lifecycle of an agent run."""

    async def create(self, run: AgentRun) -> None:
        """
        Create a new run record.

        Args:
            run: The initial run state to persist.
        """
        ...

    async def get(self, run_id: str) -> Optional[AgentRun]:
        """
        Retrieve a run by its ID.

        Args:
            run_id: The run identifier.

        Returns:
            The AgentRun object if found, else None.
        """
        ...

    async def list(
        self, status: Optional[AgentRunStatus] = None, limit: int = 100, offset: int = 0
    ) -> list[AgentRun]:
        """
        List runs newest first, optionally filtered by status.

        Args:
            status: Optional status filter.
            limit: Max number of records to return.
            offset: Pagination offset.
        """
        ...

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

        ``started_at`` is stamped on the first transition to running and
        ``finished_at`` on every transition to a terminal status.

        Args:
            run_id: The ID of the run to update.
            status: The new status.
            error_message: Human-readable failure reason (cleared when None).
            requires_human_intervention: Whether the run waits for a person.
        """
        ...

    async def save_plan_state(self, run_id: str, *, plan_state: Dict[str, Any], active_step_id: Optional[str]) -> None:
        """
        Persist the checkpoint blob and the active step pointer.

        Args:
            run_id: The run identifier.
            plan_state: Serialized checkpoint.
            active_step_id: The step the loop will execute next.
        """
        ...

    async def set_memory_key(self, run_id: str, memory_key: str) -> None:
        """Persist the resolved memory key of a run."""
        ...

    async def append_log(self, run_id: str, line: str) -> None:
        """Append one human-readable line to the run's log."""
        ...

    async def claim_next_queued(self) -> Optional[AgentRun]:
        """
        Mark the oldest queued run as running and return it.

        Returns:
            The claimed run (already in ``running`` status), or None when the
            queue is empty.
        """
        ...

    async def list_stale_running(self, updated_before: datetime) -> list[AgentRun]:
        """List running runs whose record was last touched before ``updated_before``."""
        ...

    async def delete(self, run_id: str) -> bool:
        """
        Delete a run and its audit entries.

        Returns:
            True when a run was deleted.
        """
        ...

    async def delete_by_status(self, statuses: Collection[AgentRunStatus]) -> list[str]:
        """
        Delete every run in one of ``statuses``.

        Returns:
            The ids of the deleted runs.
        """
        ...


class AuditRepository(Protocol):
    """Append-only store for audit entries."""

    async def append(self, entry: AuditEntry) -> None:
        """
        Append a new audit entry to a run's trail.

        Args:
            entry: The entry to persist.
        """
        ...

    async def list(self, run_id: str, limit: int = 200) -> list[AuditEntry]:
        """
        List audit entries for a run, oldest first.

        Args:
            run_id: The run identifier.
            limit: Max number of entries to return.
        """
        ...

    async def list_since(
        self, run_id: str, after: Optional[datetime] = None, limit: int = 200
    ) -> list[AuditEntry]:
        """
        List audit entries written at or after ``after``, oldest first.

        Entries sharing the ``after`` timestamp are included again; callers
        tracking a cursor drop the ids they have already seen.
        """
        ...


class MemoryRepository(Protocol):
    """Session (per run) and long-term (per memory key) memory."""

    async def add_memory(self, item: MemoryItem) -> Optional[MemoryItem]:
        """Append a session memory item; None when the store is unavailable."""
        ...

    async def list_memory(self, run_id: str, limit: int = 20) -> list[MemoryItem]:
        """
        Return the last ``limit`` session items of a run, oldest first.
        """
        ...

    async def add_long_term(self, item: LongTermMemoryItem) -> Optional[LongTermMemoryItem]:
        """Insert a long-term memory item; None when the store is unavailable."""
        ...

    async def list_long_term(
        self, memory_key: str, tags: Optional[Sequence[str]] = None, limit: int = 20
    ) -> list[LongTermMemoryItem]:
        """
        List long-term items of a memory key, most recently updated first.

        Every returned row has its ``last_accessed_at`` bumped to now.

        Args:
            memory_key: Logical subject shared across runs.
            tags: When given, only items carrying at least one of these tags.
            limit: Max number of items to return.
        """
        ...
