"""Versioned checkpoint embedded in ``AgentRun.plan_state``.

The checkpoint is the only state the execution loop needs to resume a run
after an interruption. It is stored as an opaque JSON blob on the run record;
``Checkpoint.load`` and ``Checkpoint.dump`` are the single (de)serialization
boundary for that blob.

Resume signalling
-----------------

``resume_requested_at`` is written by the run service when a caller asks for
a resume; ``resume_processed_at`` is written by the engine once it has handled
that request. The resume is *dirty* while the two differ.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ConfigDict, Field, ValidationError

from .base import BaseSchema
from .config import AgentPlanPreferences, AgentPlanSettings
from .domain import TaskType, _utc_now
from .planning import PlanStep

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


def _read_steps(raw: Any) -> List[PlanStep]:
    steps: List[PlanStep] = []
    if not isinstance(raw, list):
        return steps
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            steps.append(PlanStep.model_validate(item))
        except ValidationError as e:
            logger.debug(f"Dropping unreadable checkpoint step: {e}")
    return steps


class Checkpoint(BaseSchema):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    version: int = CHECKPOINT_VERSION
    steps: List[PlanStep] = Field(default_factory=list)
    active_step_id: Optional[str] = Field(default=None, alias="activeStepId")
    last_error: Optional[str] = Field(default=None, alias="lastError")
    task_type: Optional[TaskType] = Field(default=None, alias="taskType")

    resume_requested_at: Optional[datetime] = Field(default=None, alias="resumeRequestedAt")
    resume_processed_at: Optional[datetime] = Field(default=None, alias="resumeProcessedAt")

    approval_requested_step_id: Optional[str] = Field(default=None, alias="approvalRequestedStepId")
    approval_granted_step_id: Optional[str] = Field(default=None, alias="approvalGrantedStepId")

    checkpoint_brief: Optional[str] = Field(default=None, alias="checkpointBrief")
    checkpoint_next_actions: Optional[List[str]] = Field(default=None, alias="checkpointNextActions")
    checkpoint_risks: Optional[List[str]] = Field(default=None, alias="checkpointRisks")
    checkpoint_step_id: Optional[str] = Field(default=None, alias="checkpointStepId")
    checkpoint_created_at: Optional[datetime] = Field(default=None, alias="checkpointCreatedAt")

    summary_checkpoint: int = Field(default=0, alias="summaryCheckpoint")
    replan_count: int = Field(default=0, alias="replanCount")
    branched_step_ids: List[str] = Field(default_factory=list, alias="branchedStepIds")
    recovered_step_ids: List[str] = Field(default_factory=list, alias="recoveredStepIds")
    alternative_steps: List[PlanStep] = Field(default_factory=list, alias="alternativeSteps")

    settings: Optional[AgentPlanSettings] = None
    preferences: Optional[AgentPlanPreferences] = None

    updated_at: datetime = Field(default_factory=_utc_now, alias="updatedAt")

    @property
    def resume_pending(self) -> bool:
        """Whether a resume request has not been processed yet."""
        return self.resume_requested_at is not None and self.resume_requested_at != self.resume_processed_at

    @classmethod
    def load(cls, payload: Any) -> Optional["Checkpoint"]:
        """Parse a persisted blob.

        Returns ``None`` unless ``payload`` is a mapping with a ``steps`` list.
        Step entries that cannot be parsed are dropped; malformed scalar fields
        fall back to their defaults instead of rejecting the whole checkpoint.
        """
        if not isinstance(payload, dict) or not isinstance(payload.get("steps"), list):
            return None

        steps = _read_steps(payload["steps"])
        alternatives = _read_steps(payload.get("alternativeSteps", payload.get("alternative_steps")))

        data: Dict[str, Any] = {k: v for k, v in payload.items() if k not in ("steps", "alternativeSteps", "alternative_steps")}
        data["settings"] = AgentPlanSettings.resolve(data.get("settings")) if data.get("settings") else None
        data["preferences"] = (
            AgentPlanPreferences.resolve(data.get("preferences")) if data.get("preferences") else None
        )
        try:
            cp = cls.model_validate(data)
        except ValidationError as e:
            logger.debug(f"Checkpoint fields unreadable, keeping steps only: {e}")
            cp = cls()
        cp.steps = steps
        cp.alternative_steps = alternatives
        return cp

    def dump(self) -> Dict[str, Any]:
        """Serialize to the JSON blob stored on the run record."""
        return self.model_dump(mode="json", by_alias=True)
