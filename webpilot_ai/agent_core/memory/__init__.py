"""Memory store: session memory, validated long-term memory and planner context."""

from .context import (
    RunContext,
    add_problem_solution_memory,
    build_self_improvement_playbook,
    prepare_run_context,
)
from .store import MemoryStore, MemoryValidation, MemoryWriteResult

__all__ = [
    "MemoryStore",
    "MemoryValidation",
    "MemoryWriteResult",
    "RunContext",
    "add_problem_solution_memory",
    "build_self_improvement_playbook",
    "prepare_run_context",
]
