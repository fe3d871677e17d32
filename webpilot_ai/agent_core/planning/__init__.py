"""Planning components.

The planning subsystem turns a prompt, memory context and browser snapshot
into an ordered list of ``PlanStep`` records.

Output model
------------

- ``utils``: pure normalization of model output and the rule-based fallbacks
  (keyword plans, decisions, replan triggers, extraction and approval
  heuristics).
- ``planner.LLMPlanner``: the model-backed planner and its reviews. It never
  raises because of the model; every failure degrades to a fallback.

The planner does not execute tools; steps are consumed by
``webpilot_ai.agent_core.runtime.AgentEngine``.
"""

from .planner import (
    CheckpointBrief,
    LLMPlanner,
    PlanEvaluation,
    PlanRequest,
    PlanResult,
    PlanReview,
    PlanVerification,
    SelfCheckReview,
    SelfImprovementReview,
)

__all__ = [
    "CheckpointBrief",
    "LLMPlanner",
    "PlanEvaluation",
    "PlanRequest",
    "PlanResult",
    "PlanReview",
    "PlanVerification",
    "SelfCheckReview",
    "SelfImprovementReview",
]
