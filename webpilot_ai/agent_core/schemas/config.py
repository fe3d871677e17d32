"""Per-run plan settings and preferences.

``AgentPlanSettings`` bounds the engine's budgets (steps, attempts, replans,
self-checks, loop guard). Every field is clamped into a documented range; an
unusable value (missing, non-numeric, NaN) falls back to the default rather
than failing validation, because settings travel inside persisted
checkpoints and request payloads that the engine does not control.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Optional, Tuple

from pydantic import ConfigDict, Field, field_validator, model_validator

from .base import BaseSchema

# field -> (minimum, maximum, default)
SETTINGS_BOUNDS: Dict[str, Tuple[int, int, int]] = {
    "max_steps": (1, 20, 12),
    "max_step_attempts": (1, 5, 2),
    "max_replan_calls": (0, 6, 2),
    "replan_every_steps": (1, 10, 2),
    "max_self_checks": (0, 8, 4),
    "loop_guard_threshold": (1, 5, 2),
    "loop_backoff_base_ms": (250, 20000, 2000),
    "loop_backoff_max_ms": (1000, 60000, 12000),
}


def clamp_int(value: Any, minimum: int, maximum: int, fallback: int) -> int:
    """Round ``value`` and clamp it into ``[minimum, maximum]``.

    Numbers and numeric strings are accepted; anything else (including
    booleans, blank strings and non-finite numbers) yields ``fallback``.
    """
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value.strip())
        except ValueError:
            return fallback
    else:
        return fallback
    if not math.isfinite(numeric):
        return fallback
    # Half-up rounding; Python's round() is banker's rounding.
    return min(max(int(math.floor(numeric + 0.5)), minimum), maximum)


class AgentPlanSettings(BaseSchema):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    max_steps: int = Field(default=12, alias="maxSteps")
    max_step_attempts: int = Field(default=2, alias="maxStepAttempts")
    max_replan_calls: int = Field(default=2, alias="maxReplanCalls")
    replan_every_steps: int = Field(default=2, alias="replanEverySteps")
    max_self_checks: int = Field(default=4, alias="maxSelfChecks")
    loop_guard_threshold: int = Field(default=2, alias="loopGuardThreshold")
    loop_backoff_base_ms: int = Field(default=2000, alias="loopBackoffBaseMs")
    loop_backoff_max_ms: int = Field(default=12000, alias="loopBackoffMaxMs")

    @field_validator(*SETTINGS_BOUNDS.keys(), mode="before")
    @classmethod
    def _clamp(cls, value: Any, info) -> int:
        minimum, maximum, default = SETTINGS_BOUNDS[info.field_name]
        return clamp_int(value, minimum, maximum, default)

    @model_validator(mode="after")
    def _backoff_ceiling(self) -> "AgentPlanSettings":
        if self.loop_backoff_max_ms < self.loop_backoff_base_ms:
            self.loop_backoff_max_ms = self.loop_backoff_base_ms
        return self

    @classmethod
    def resolve(cls, raw: Any) -> "AgentPlanSettings":
        """Build settings from an untrusted mapping (``None`` gives defaults)."""
        if isinstance(raw, AgentPlanSettings):
            return raw
        return cls.model_validate(raw if isinstance(raw, dict) else {})


class AgentPlanPreferences(BaseSchema):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ignore_robots_txt: bool = Field(default=False, alias="ignoreRobotsTxt")
    require_human_approval: bool = Field(default=False, alias="requireHumanApproval")
    memory_validation_model: Optional[str] = Field(default=None, alias="memoryValidationModel")
    planner_model: Optional[str] = Field(default=None, alias="plannerModel")
    self_check_model: Optional[str] = Field(default=None, alias="selfCheckModel")
    loop_guard_model: Optional[str] = Field(default=None, alias="loopGuardModel")
    approval_gate_model: Optional[str] = Field(default=None, alias="approvalGateModel")
    memory_summarization_model: Optional[str] = Field(default=None, alias="memorySummarizationModel")

    @field_validator("ignore_robots_txt", "require_human_approval", mode="before")
    @classmethod
    def _truthy(cls, value: Any) -> bool:
        return bool(value)

    @field_validator(
        "memory_validation_model",
        "planner_model",
        "self_check_model",
        "loop_guard_model",
        "approval_gate_model",
        "memory_summarization_model",
        mode="before",
    )
    @classmethod
    def _model_name(cls, value: Any) -> Optional[str]:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    @classmethod
    def resolve(cls, raw: Any) -> "AgentPlanPreferences":
        """Build preferences from an untrusted mapping (``None`` gives defaults)."""
        if isinstance(raw, AgentPlanPreferences):
            return raw
        return cls.model_validate(raw if isinstance(raw, dict) else {})
