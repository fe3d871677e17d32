"""Error types for the agent core.

Only a few of these ever reach a run's terminal status: checkpoint
persistence failures and plan exhaustion fail the run. Model gateway and tool
errors are caught at their call sites and converted into fallbacks or step
failures.
"""

from __future__ import annotations

from typing import Optional


class AgentCoreError(Exception):
    """Base error for all agent core exceptions."""


class ModelGatewayError(AgentCoreError):
    """Raised when the completion endpoint fails or returns an unusable envelope."""

    def __init__(self, model: str, message: str, status_code: Optional[int] = None) -> None:
        self.model = model
        self.status_code = status_code
        suffix = f" ({status_code})" if status_code is not None else ""
        super().__init__(f"Model call failed for '{model}'{suffix}: {message}")


class ToolExecutionError(AgentCoreError):
    """Raised by tool executors for typed step failures.

    ``failure_type`` is one of the ``ToolFailureType`` values and drives the
    failure-recovery plan requested by the engine.
    """

    def __init__(self, message: str, failure_type: Optional[str] = None) -> None:
        self.failure_type = failure_type
        super().__init__(message)


class CheckpointPersistenceError(AgentCoreError):
    """Raised when a run checkpoint cannot be written."""

    def __init__(self, run_id: str, message: str) -> None:
        self.run_id = run_id
        super().__init__(f"Checkpoint persistence failed for run '{run_id}': {message}")


class PlanExhaustedError(AgentCoreError):
    """Raised when no plan, branch or replan can move a run forward."""


class RunNotFoundError(AgentCoreError):
    """Raised when a run id does not exist."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run not found: '{run_id}'")


class RunConflictError(AgentCoreError):
    """Raised when a control action conflicts with the run's current status."""

    def __init__(self, run_id: str, status: str, message: str) -> None:
        self.run_id = run_id
        self.status = status
        super().__init__(f"Run '{run_id}' is {status}: {message}")
