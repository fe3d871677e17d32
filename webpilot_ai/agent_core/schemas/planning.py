"""Plan data model shared by the planner, checkpoint store and runtime.

The planner receives loosely shaped JSON from a model and converts it into the
explicit record types defined here:

- ``StepSpec``: a step proposal as emitted by the model (not yet normalized).
- ``PlanGoal`` → ``PlanSubgoal`` → ``StepSpec``: the hierarchical form. Goal
  and subgoal ids are generated by the engine, never taken from the model.
- ``PlanStep``: an executable step with status and attempt accounting.

``PlannerMeta`` carries the self-critique, alternatives and success signals
used to augment a step list with synthetic safety/verification steps and to
build recovery branches.
"""

from __future__ import annotations

from typing import List, Optional, Union
from uuid import uuid4

from pydantic import ConfigDict, Field

from .base import BaseSchema
from .domain import DecisionAction, StepPhase, StepStatus, StepTool, TaskType


class StepSpec(BaseSchema):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: Optional[str] = None
    tool: Optional[str] = None
    expected_observation: Optional[str] = Field(default=None, alias="expectedObservation")
    success_criteria: Optional[str] = Field(default=None, alias="successCriteria")
    phase: Optional[str] = None
    priority: Optional[float] = None
    depends_on: Optional[List[Union[int, str]]] = Field(default=None, alias="dependsOn")
    goal_id: Optional[str] = Field(default=None, alias="goalId")
    subgoal_id: Optional[str] = Field(default=None, alias="subgoalId")


class PlanSubgoal(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str
    success_criteria: Optional[str] = None
    priority: Optional[float] = None
    depends_on: Optional[List[Union[int, str]]] = None
    steps: List[StepSpec] = Field(default_factory=list)


class PlanGoal(BaseSchema):
    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str
    success_criteria: Optional[str] = None
    priority: Optional[float] = None
    depends_on: Optional[List[Union[int, str]]] = None
    subgoals: List[PlanSubgoal] = Field(default_factory=list)


class PlanHierarchy(BaseSchema):
    goals: List[PlanGoal] = Field(default_factory=list)


class PlanStep(BaseSchema):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str
    status: StepStatus = StepStatus.pending
    tool: StepTool = StepTool.playwright
    expected_observation: Optional[str] = Field(default=None, alias="expectedObservation")
    success_criteria: Optional[str] = Field(default=None, alias="successCriteria")
    phase: Optional[StepPhase] = None
    priority: Optional[float] = None
    depends_on: Optional[List[str]] = Field(default=None, alias="dependsOn")
    goal_id: Optional[str] = Field(default=None, alias="goalId")
    subgoal_id: Optional[str] = Field(default=None, alias="subgoalId")
    attempts: int = 0
    max_attempts: int = Field(default=2, alias="maxAttempts")


class PlannerCritique(BaseSchema):
    assumptions: Optional[List[str]] = None
    risks: Optional[List[str]] = None
    unknowns: Optional[List[str]] = None
    safety_checks: Optional[List[str]] = None
    questions: Optional[List[str]] = None


class PlannerAlternative(BaseSchema):
    title: str
    rationale: Optional[str] = None
    steps: List[StepSpec] = Field(default_factory=list)


class PlannerMeta(BaseSchema):
    critique: Optional[PlannerCritique] = None
    alternatives: Optional[List[PlannerAlternative]] = None
    safety_checks: Optional[List[str]] = None
    questions: Optional[List[str]] = None
    task_type: Optional[TaskType] = None
    summary: Optional[str] = None
    constraints: Optional[List[str]] = None
    success_signals: Optional[List[str]] = None


class AgentDecision(BaseSchema):
    action: DecisionAction
    reason: str
    tool_name: Optional[str] = None
