from __future__ import annotations

"""Runtime dependency bundle and LangGraph state types.

The runtime engine is dependency-injected.

- ``EngineDeps`` collects the repositories, planner, validators and tools the
  engine needs.
- ``ExecutionContext`` is the mutable per-run state the nodes work on.
- ``_GraphState`` is the LangGraph state that carries the context between
  nodes.

Everything that must survive a restart lives in ``ExecutionContext.checkpoint``
and is persisted through ``CheckpointStore``; the remaining fields are
per-process counters that start fresh on every engine invocation.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, NotRequired, Optional, Required, Tuple, TypedDict

from ..audit import AuditLogger
from ..memory import MemoryStore, RunContext
from ..planning import LLMPlanner
from ..repos import RunRepository
from ..schemas.checkpoint import Checkpoint
from ..schemas.domain import AgentRun
from ..schemas.planning import PlanStep
from ..tools import ToolRegistry
from ..validators import LLMValidators
from .approvals import ApprovalGate
from .loop_guard import LoopGuard, StepTrace


@dataclass(frozen=True)
class EngineDeps:
    """Dependency bundle for ``AgentEngine``.

    This object is typically constructed by ``build_engine_deps`` and passed
    into the engine (or ``AgentQueueWorker``). It holds:

    - the run repository and the audit writer,
    - the memory store,
    - the model-backed planner and validators,
    - the tool registry used to dispatch playwright steps,
    - the human-approval gate.

    ``sleep`` is the coroutine used for loop-guard backoff; tests replace it.
    """

    runs: RunRepository
    audit: AuditLogger
    memory: MemoryStore
    planner: LLMPlanner
    validators: LLMValidators
    tools: ToolRegistry
    approvals: ApprovalGate

    default_model: str = "qwen3-vl:30b"
    tool_timeout_seconds: float = 120.0
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep


@dataclass
class ExecutionContext:
    """Mutable state of one engine invocation.

    Attributes
    ----------
    run:
        The run record as loaded at start.
    context:
        Resolved models, settings, preferences and memory context.
    checkpoint:
        The persisted plan state; ``checkpoint.steps`` is the live plan.
    index:
        Index of the step the loop executes next.
    hints:
        Tactical hints handed to the next tool step (search query, target
        URL, recovery selectors), consumed by the step that receives them.
    brief_key:
        ``(active step id, last error)`` the checkpoint brief was last
        requested for; the brief is refreshed only when it changes.
    """

    run: AgentRun
    context: RunContext
    checkpoint: Checkpoint
    index: int = 0
    loop_guard: Optional[LoopGuard] = None
    traces: List[StepTrace] = field(default_factory=list)
    hints: Dict[str, Any] = field(default_factory=dict)
    search_query: Optional[str] = None
    self_check_count: int = 0
    deferrals: Dict[str, int] = field(default_factory=dict)
    requires_human: bool = False
    halted: bool = False
    brief_key: Optional[Tuple[Optional[str], Optional[str]]] = None

    @property
    def steps(self) -> List[PlanStep]:
        return self.checkpoint.steps

    @property
    def current(self) -> Optional[PlanStep]:
        if 0 <= self.index < len(self.checkpoint.steps):
            return self.checkpoint.steps[self.index]
        return None

    @property
    def settings(self):
        return self.context.settings

    @property
    def prompt(self) -> str:
        return self.run.prompt


class _GraphState(TypedDict):
    """Mutable LangGraph state for a single engine run.

    Required keys:

    - ``run_id``: current run identifier.

    Optional keys:

    - ``ctx``: the ``ExecutionContext`` built by the ``prepare`` node.
    - ``_route``: routing decision of the last ``execute`` iteration
      (``continue``, ``pause`` or ``finish``).
    """

    run_id: Required[str]
    ctx: NotRequired[ExecutionContext]
    _route: NotRequired[str]
