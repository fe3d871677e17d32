"""Schemas and DTOs for the agent core."""

from .checkpoint import Checkpoint
from .config import AgentPlanPreferences, AgentPlanSettings, clamp_int
from .domain import (
    AgentRun,
    AgentRunStatus,
    AuditEntry,
    AuditLevel,
    DecisionAction,
    LongTermMemoryItem,
    MemoryItem,
    StepPhase,
    StepStatus,
    StepTool,
    TaskType,
)
from .planning import (
    AgentDecision,
    PlanGoal,
    PlanHierarchy,
    PlannerAlternative,
    PlannerCritique,
    PlannerMeta,
    PlanStep,
    PlanSubgoal,
    StepSpec,
)

__all__ = [
    "AgentRun",
    "AgentRunStatus",
    "AuditEntry",
    "AuditLevel",
    "DecisionAction",
    "LongTermMemoryItem",
    "MemoryItem",
    "StepPhase",
    "StepStatus",
    "StepTool",
    "TaskType",
    "Checkpoint",
    "AgentPlanSettings",
    "AgentPlanPreferences",
    "clamp_int",
    "AgentDecision",
    "PlanGoal",
    "PlanHierarchy",
    "PlannerAlternative",
    "PlannerCritique",
    "PlannerMeta",
    "PlanStep",
    "PlanSubgoal",
    "StepSpec",
]
