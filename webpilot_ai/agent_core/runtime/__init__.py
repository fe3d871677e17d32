"""LangGraph-based execution runtime for agent runs.

The runtime takes a claimed run, builds or restores its plan and executes it
step by step with strong guarantees:

- every state transition is checkpointed on the run record (``CheckpointStore``),
- failed steps are retried, branched around or replanned,
- repetitive behaviour trips the ``LoopGuard``,
- sensitive steps can be held for human approval (``ApprovalGate``).

The main entry point is ``AgentEngine``.
"""

from .approvals import ApprovalDecision, ApprovalGate
from .checkpoint import CheckpointStore
from .engine import AgentEngine
from .loop_guard import LoopGuard, LoopSignal, StepTrace, detect_loop_pattern
from .models import EngineDeps, ExecutionContext

__all__ = [
    "AgentEngine",
    "ApprovalDecision",
    "ApprovalGate",
    "CheckpointStore",
    "EngineDeps",
    "ExecutionContext",
    "LoopGuard",
    "LoopSignal",
    "StepTrace",
    "detect_loop_pattern",
]
