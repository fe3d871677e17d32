from __future__ import annotations

"""Tool executor protocol and execution data models.

A tool executor is the concrete execution unit for plan steps whose tool is
not ``none`` (today: the browser-automation driver).

The engine resolves ``PlanStep.tool`` through a ``ToolRegistry`` and calls
``execute`` with a ``ToolRequest``. Executors either return a ``ToolResult``
or raise ``ToolExecutionError`` with a typed ``failure_type``; both paths are
handled identically by the engine's retry policy.

Executors should:

- keep per-run browser state keyed by ``run_id``,
- return extracted data in ``ToolResult.items`` with an evidence snippet per
  item,
- never make planning or approval decisions themselves.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from ..schemas.domain import StepTool


class ToolFailureType(str, Enum):
    bad_selectors = "bad_selectors"
    login_stuck = "login_stuck"
    missing_extraction = "missing_extraction"
    timeout = "timeout"


@dataclass(frozen=True)
class ToolRequest:
    """Execution input for a single step attempt.

    Attributes
    ----------
    run_id:
        The run the step belongs to.
    step_id / title / expected_observation / success_criteria:
        The step being attempted.
    attempt:
        1-based attempt counter of the step.
    prompt:
        The run prompt (with the task type appended when known).
    hints:
        Tactical hints gathered by the engine (search-first query, target URL,
        recovery selectors, extraction plan).
    """

    run_id: str
    step_id: str
    title: str
    tool: StepTool
    attempt: int
    prompt: str
    expected_observation: Optional[str] = None
    success_criteria: Optional[str] = None
    extraction: bool = False
    hints: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """Structured tool execution result."""

    ok: bool
    output: Optional[str] = None
    error: Optional[str] = None
    failure_type: Optional[ToolFailureType] = None
    url: Optional[str] = None
    items: List[str] = field(default_factory=list)
    evidence: List[Dict[str, str]] = field(default_factory=list)
    search_results: List[Dict[str, str]] = field(default_factory=list)


class ToolExecutor(Protocol):
    """Protocol for tool executor implementations."""

    name: StepTool

    async def execute(self, request: ToolRequest) -> ToolResult: ...

    async def browser_context(self, run_id: str) -> Optional[Dict[str, Any]]:
        """
        Summarize the current browser state of a run.

        Returns:
            ``{url, title, domTextSample, logs, uiInventory}`` or None when the
            run has no browser session.
        """
        ...
