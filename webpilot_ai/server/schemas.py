"""
API Schemas.

This module contains Pydantic models used for API request bodies and response validation.
These schemas define the interface contract between the client and the server.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from webpilot_ai.agent_core.schemas.domain import AgentRunStatus, AuditEntry


class RunCreate(BaseModel):
    """
    Schema for creating a new agent run.

    Settings and preferences are untrusted overrides; the run service clamps
    them into range before they reach the engine.
    """

    prompt: str = Field(
        ...,
        min_length=1,
        description="The natural-language task for the agent.",
        examples=["Find the price of the cheapest 27 inch monitor on example-shop.com"],
    )
    model: Optional[str] = Field(
        default=None,
        description="Model name of the run. Defaults to the configured OLLAMA_MODEL.",
        examples=["qwen3-vl:30b"],
    )
    tools: Optional[List[str]] = Field(
        default=None,
        description="Tool names the run may use. Defaults to the browser tool.",
        examples=[["playwright"]],
    )
    memory_key: Optional[str] = Field(
        default=None,
        alias="memoryKey",
        description="Long-term memory subject shared across runs.",
        examples=["example-shop"],
    )
    settings: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Budget overrides (maxSteps, maxStepAttempts, replanEverySteps, ...).",
        examples=[{"maxSteps": 12, "maxStepAttempts": 2}],
    )
    preferences: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Behaviour preferences (requireHumanApproval, plannerModel, ...).",
        examples=[{"requireHumanApproval": True}],
    )

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "prompt": "Collect the titles of the 5 newest posts on news.example.com",
                "model": "qwen3-vl:30b",
                "memoryKey": "news-example",
                "settings": {"maxSteps": 10},
                "preferences": {"requireHumanApproval": False},
            }
        },
    )


class RunActionType(str, Enum):
    stop = "stop"
    resume = "resume"
    approve = "approve"


class RunAction(BaseModel):
    """
    Schema for a control action on a run.

    ``stepId`` is required for ``approve`` and optional for ``resume``.
    """

    action: RunActionType = Field(..., description="stop, resume or approve.")
    step_id: Optional[str] = Field(
        default=None,
        alias="stepId",
        description="Target step: the step to approve, or the step to resume from.",
    )

    model_config = ConfigDict(populate_by_name=True)


class DeleteRunsResponse(BaseModel):
    deleted: List[str] = Field(default_factory=list, description="Ids of the deleted runs.")
    scope: str = Field(default="terminal")


# ============================================================================
# Server-Sent Events (SSE) Schemas
# ============================================================================


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AuditEvent(BaseModel):
    """A single audit log entry streamed to the client."""

    event: Literal["audit"] = "audit"
    data: AuditEntry


class RunStatusEvent(BaseModel):
    """Emitted whenever the run status changes."""

    event: Literal["status"] = "status"
    run_id: str
    status: AgentRunStatus
    active_step_id: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class KeepAliveEvent(BaseModel):
    """Keep-alive event sent while the run produces no new audit entries."""

    event: Literal["keep_alive"] = "keep_alive"
    comment: str = "keep-alive"
    timestamp: datetime = Field(default_factory=_now)


class ErrorEvent(BaseModel):
    """Error event sent when the stream cannot read the run."""

    event: Literal["error"] = "error"
    error: str = Field(..., description="Error message.")
    details: Optional[str] = Field(default=None, description="Additional error details.")
    timestamp: datetime = Field(default_factory=_now)
