"""In-memory fakes shared by the unit tests.

The fakes implement the repository protocols, the model gateway and the
browser tool executor so the engine, the run service and the worker can be
exercised without a database, a model server or a browser.
"""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any, Awaitable, Callable, Collection, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from webpilot_ai.agent_core.audit import AuditLogger
from webpilot_ai.agent_core.errors import ModelGatewayError
from webpilot_ai.agent_core.memory import MemoryStore
from webpilot_ai.agent_core.planning import PlanRequest
from webpilot_ai.agent_core.planning.planner import CheckpointBrief, PlanResult, PlanReview, SelfCheckReview
from webpilot_ai.agent_core.runtime import ApprovalGate, EngineDeps
from webpilot_ai.agent_core.schemas.domain import (
    TERMINAL_RUN_STATUSES,
    AgentRun,
    AgentRunStatus,
    AuditEntry,
    DecisionAction,
    LongTermMemoryItem,
    MemoryItem,
    StepTool,
    _utc_now,
)
from webpilot_ai.agent_core.schemas.planning import AgentDecision, PlanStep
from webpilot_ai.agent_core.tools import ToolRegistry, ToolRequest, ToolResult
from webpilot_ai.agent_core.validators import LLMValidators

# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class FakeRunRepository:
    def __init__(self) -> None:
        self.rows: Dict[str, AgentRun] = {}
        self.status_updates: List[Tuple[str, AgentRunStatus]] = []
        self.saved_states: List[Dict[str, Any]] = []
        self.fail_saves = False

    async def create(self, run: AgentRun) -> None:
        self.rows[run.id] = run.model_copy(deep=True)

    async def get(self, run_id: str) -> Optional[AgentRun]:
        row = self.rows.get(run_id)
        return row.model_copy(deep=True) if row is not None else None

    async def list(
        self, status: Optional[AgentRunStatus] = None, limit: int = 100, offset: int = 0
    ) -> List[AgentRun]:
        rows = sorted(self.rows.values(), key=lambda r: r.created_at, reverse=True)
        if status is not None:
            rows = [r for r in rows if r.status == AgentRunStatus(status)]
        return [r.model_copy(deep=True) for r in rows[offset : offset + limit]]

    async def update_status(
        self,
        run_id: str,
        *,
        status: AgentRunStatus,
        error_message: Optional[str] = None,
        requires_human_intervention: bool = False,
    ) -> None:
        row = self.rows.get(run_id)
        if row is None:
            return
        status = AgentRunStatus(status)
        self.status_updates.append((run_id, status))
        now = _utc_now()
        row.status = status
        row.error_message = error_message
        row.requires_human_intervention = requires_human_intervention
        row.updated_at = now
        if status == AgentRunStatus.running and row.started_at is None:
            row.started_at = now
        if status in TERMINAL_RUN_STATUSES:
            row.finished_at = now

    async def save_plan_state(self, run_id: str, *, plan_state: Dict[str, Any], active_step_id: Optional[str]) -> None:
        if self.fail_saves:
            raise RuntimeError("database unavailable")
        row = self.rows.get(run_id)
        if row is None:
            return
        row.plan_state = copy.deepcopy(plan_state)
        row.active_step_id = active_step_id
        row.checkpointed_at = row.updated_at = _utc_now()
        self.saved_states.append(copy.deepcopy(plan_state))

    async def set_memory_key(self, run_id: str, memory_key: str) -> None:
        row = self.rows.get(run_id)
        if row is not None:
            row.memory_key = memory_key

    async def append_log(self, run_id: str, line: str) -> None:
        row = self.rows.get(run_id)
        if row is not None:
            row.log_lines = [*row.log_lines, line]

    async def claim_next_queued(self) -> Optional[AgentRun]:
        queued = sorted(
            (r for r in self.rows.values() if r.status == AgentRunStatus.queued), key=lambda r: r.created_at
        )
        if not queued:
            return None
        await self.update_status(queued[0].id, status=AgentRunStatus.running)
        return await self.get(queued[0].id)

    async def list_stale_running(self, updated_before: datetime) -> List[AgentRun]:
        return [
            r.model_copy(deep=True)
            for r in self.rows.values()
            if r.status == AgentRunStatus.running and r.updated_at < updated_before
        ]

    async def delete(self, run_id: str) -> bool:
        return self.rows.pop(run_id, None) is not None

    async def delete_by_status(self, statuses: Collection[AgentRunStatus]) -> List[str]:
        wanted = {AgentRunStatus(s) for s in statuses}
        doomed = [run_id for run_id, row in self.rows.items() if row.status in wanted]
        for run_id in doomed:
            del self.rows[run_id]
        return doomed


class FakeAuditRepository:
    def __init__(self) -> None:
        self.entries: List[AuditEntry] = []

    async def append(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    async def list(self, run_id: str, limit: int = 200) -> List[AuditEntry]:
        return [e for e in self.entries if e.run_id == run_id][:limit]

    async def list_since(self, run_id: str, after: Optional[datetime] = None, limit: int = 200) -> List[AuditEntry]:
        entries = [e for e in self.entries if e.run_id == run_id and (after is None or e.created_at >= after)]
        return sorted(entries, key=lambda e: e.created_at)[:limit]

    def messages(self, run_id: Optional[str] = None) -> List[str]:
        return [e.message for e in self.entries if run_id is None or e.run_id == run_id]

    def of_type(self, entry_type: str) -> List[AuditEntry]:
        return [e for e in self.entries if e.metadata.get("type") == entry_type]


class FakeMemoryRepository:
    def __init__(self) -> None:
        self.memory: List[MemoryItem] = []
        self.long_term: List[LongTermMemoryItem] = []

    async def add_memory(self, item: MemoryItem) -> Optional[MemoryItem]:
        self.memory.append(item)
        return item

    async def list_memory(self, run_id: str, limit: int = 20) -> List[MemoryItem]:
        return [m for m in self.memory if m.run_id == run_id][-limit:]

    async def add_long_term(self, item: LongTermMemoryItem) -> Optional[LongTermMemoryItem]:
        self.long_term.append(item)
        return item

    async def list_long_term(
        self, memory_key: str, tags: Optional[Sequence[str]] = None, limit: int = 20
    ) -> List[LongTermMemoryItem]:
        items = [i for i in self.long_term if i.memory_key == memory_key]
        if tags:
            items = [i for i in items if set(tags) & set(i.tags)]
        return items[:limit]


# ---------------------------------------------------------------------------
# Model gateway
# ---------------------------------------------------------------------------

Reply = Union[str, Exception, Callable[[List[Dict[str, str]]], str]]


class FakeGateway:
    """Gateway answering by system prompt; unknown prompts fail like an offline server."""

    def __init__(self, replies: Optional[Dict[str, Reply]] = None) -> None:
        self.replies: Dict[str, Reply] = dict(replies or {})
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, *, model: str, messages: List[Dict[str, str]], temperature: float = 0.2) -> str:
        system = messages[0]["content"]
        self.calls.append({"model": model, "system": system, "messages": messages, "temperature": temperature})
        for key, reply in self.replies.items():
            if key in system:
                if isinstance(reply, Exception):
                    raise reply
                return reply(messages) if callable(reply) else reply
        raise ModelGatewayError(model, "connection refused")

    def calls_for(self, system_prompt: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if system_prompt in c["system"]]


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class ScriptedPlanner:
    """Duck-typed ``LLMPlanner`` returning scripted results and recording calls."""

    def __init__(self) -> None:
        self.plans: List[List[PlanStep]] = []
        self.alternatives: List[PlanStep] = []
        self.branch_steps: List[PlanStep] = []
        self.periodic_review = PlanReview(should_replan=False, reason="On track.")
        self.resume_review = PlanReview(should_replan=False, reason="Nothing changed.", summary="Resume as planned.")
        self.self_check_result = SelfCheckReview(action="continue", reason="Looks fine.")
        self.loop_review = SelfCheckReview(action="continue", reason="Keep going.")
        self.adaptation = PlanReview(should_replan=False, reason="No change needed.")
        self.guard_result: Optional[List[PlanStep]] = None
        self.brief: Optional[CheckpointBrief] = None

        self.plan_requests: List[PlanRequest] = []
        self.branch_requests: List[PlanRequest] = []
        self.review_indices: List[int] = []
        self.resume_reviews = 0
        self.self_checks = 0
        self.loop_reviews: List[Dict[str, Any]] = []
        self.verifications = 0
        self.improvement_reviews: List[str] = []
        self.adaptation_indices: List[int] = []
        self.guarded: List[List[str]] = []
        self.briefs: List[Dict[str, Any]] = []

    @staticmethod
    def _decision() -> AgentDecision:
        return AgentDecision(action=DecisionAction.tool, reason="Scripted plan.", tool_name=StepTool.playwright.value)

    async def build_plan(self, request: PlanRequest) -> PlanResult:
        if request.mode == "branch":
            self.branch_requests.append(request)
            return PlanResult(
                decision=self._decision(),
                source="llm" if self.branch_steps else "heuristic",
                branch_steps=[s.model_copy(deep=True) for s in self.branch_steps],
            )
        index = len(self.plan_requests)
        self.plan_requests.append(request)
        steps = self.plans[index] if index < len(self.plans) else []
        return PlanResult(
            steps=[s.model_copy(deep=True) for s in steps],
            decision=self._decision(),
            source="llm",
            branch_steps=[s.model_copy(deep=True) for s in self.alternatives] if index == 0 else [],
        )

    async def review_plan(self, **kwargs: Any) -> PlanReview:
        self.review_indices.append(kwargs["current_index"])
        return self.periodic_review

    async def review_resume(self, **kwargs: Any) -> PlanReview:
        self.resume_reviews += 1
        return self.resume_review

    async def self_check(self, **kwargs: Any) -> SelfCheckReview:
        self.self_checks += 1
        return self.self_check_result

    async def loop_guard_review(self, **kwargs: Any) -> SelfCheckReview:
        self.loop_reviews.append(kwargs)
        return self.loop_review

    async def verify_plan(self, **kwargs: Any) -> None:
        self.verifications += 1
        return None

    async def self_improvement_review(self, **kwargs: Any) -> None:
        self.improvement_reviews.append(kwargs["status"])
        return None

    async def summarize_memory(self, **kwargs: Any) -> Optional[str]:
        return None

    async def checkpoint_brief(self, **kwargs: Any) -> Optional[CheckpointBrief]:
        self.briefs.append(kwargs)
        return self.brief

    async def mid_run_adaptation(self, **kwargs: Any) -> PlanReview:
        self.adaptation_indices.append(kwargs["current_index"])
        return self.adaptation

    async def guard_repetition(self, **kwargs: Any) -> List[PlanStep]:
        candidates = kwargs["candidate_steps"]
        self.guarded.append([s.title for s in candidates])
        if self.guard_result is None:
            return list(candidates)
        return [s.model_copy(deep=True) for s in self.guard_result]


# ---------------------------------------------------------------------------
# Browser tool
# ---------------------------------------------------------------------------

Outcome = Union[ToolResult, Exception]


class FakeBrowserTool:
    """Playwright stand-in; outcomes are scripted per step title.

    A list of outcomes is consumed one per attempt and its last element
    repeats. Titles without a script succeed.
    """

    name = StepTool.playwright

    def __init__(self) -> None:
        self.outcomes: Dict[str, List[Outcome]] = {}
        self.requests: List[ToolRequest] = []
        self.on_execute: Optional[Callable[[ToolRequest], Awaitable[None]]] = None
        self.context: Optional[Dict[str, Any]] = None

    def script(self, title: str, *outcomes: Outcome) -> None:
        self.outcomes[title] = list(outcomes)

    @property
    def titles(self) -> List[str]:
        return [r.title for r in self.requests]

    async def execute(self, request: ToolRequest) -> ToolResult:
        self.requests.append(request)
        if self.on_execute is not None:
            await self.on_execute(request)
        queue = self.outcomes.get(request.title)
        if not queue:
            return ToolResult(ok=True, output=f"Done: {request.title}")
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def browser_context(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self.context


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def runs_repo() -> FakeRunRepository:
    return FakeRunRepository()


@pytest.fixture
def audit_repo() -> FakeAuditRepository:
    return FakeAuditRepository()


@pytest.fixture
def memory_repo() -> FakeMemoryRepository:
    return FakeMemoryRepository()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def planner() -> ScriptedPlanner:
    return ScriptedPlanner()


@pytest.fixture
def browser() -> FakeBrowserTool:
    return FakeBrowserTool()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def engine_deps(runs_repo, audit_repo, memory_repo, gateway, planner, browser, sleeps) -> EngineDeps:
    audit = AuditLogger(audit_repo)
    tools = ToolRegistry()
    tools.register(browser)

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return EngineDeps(
        runs=runs_repo,
        audit=audit,
        memory=MemoryStore(memory_repo, gateway),
        planner=planner,
        validators=LLMValidators(gateway, audit),
        tools=tools,
        approvals=ApprovalGate(gateway, audit),
        default_model="test-model",
        tool_timeout_seconds=5.0,
        sleep=_sleep,
    )


@pytest.fixture
def make_run(runs_repo):
    """Insert a run (claimed, i.e. ``running``) and return it."""

    async def _make(
        prompt: str = "Open the dashboard and check the latest report",
        *,
        settings: Optional[Dict[str, Any]] = None,
        preferences: Optional[Dict[str, Any]] = None,
        status: AgentRunStatus = AgentRunStatus.running,
        plan_state: Optional[Dict[str, Any]] = None,
        memory_key: Optional[str] = None,
    ) -> AgentRun:
        state = plan_state if plan_state is not None else {}
        if settings is not None:
            state["settings"] = settings
        if preferences is not None:
            state["preferences"] = preferences
        run = AgentRun(
            prompt=prompt,
            model="test-model",
            status=status,
            plan_state=state or None,
            memory_key=memory_key,
        )
        await runs_repo.create(run)
        return run

    return _make
