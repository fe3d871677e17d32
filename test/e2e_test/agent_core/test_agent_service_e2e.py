"""End-to-end tests of the run lifecycle over the SQL repositories.

A run is enqueued through ``AgentService``, claimed by ``AgentQueueWorker`` and
driven by the real ``AgentEngine`` and ``LLMPlanner``. Only the model server
and the browser are replaced: the gateway answers the planner prompt and
fails every other call like an unreachable backend.
"""

import json
from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest

from webpilot_ai.agent_core.errors import ModelGatewayError
from webpilot_ai.agent_core.factory import build_engine_deps, build_service, build_worker
from webpilot_ai.agent_core.planning import prompts
from webpilot_ai.agent_core.repos.sql import build_sql_repos, create_all, create_engine, create_sessionmaker
from webpilot_ai.agent_core.schemas.checkpoint import Checkpoint
from webpilot_ai.agent_core.schemas.domain import AgentRunStatus, StepStatus, StepTool
from webpilot_ai.agent_core.tools import ToolRegistry, ToolRequest, ToolResult

PLANNER_PROMPT = "You are the planner for a browser automation agent"
PROMPT = "Open https://app.example.com and read the weekly summary"
PLAN = {
    "steps": [
        {"title": "Open the start page", "tool": "playwright"},
        {"title": "Read the weekly summary", "tool": "playwright"},
    ]
}


class PlannerOnlyGateway:
    def __init__(self, plan: Dict[str, Any]) -> None:
        self.plan = plan
        self.systems: List[str] = []

    async def complete(self, *, model: str, messages: List[Dict[str, str]], temperature: float = 0.2) -> str:
        system = messages[0]["content"]
        self.systems.append(system)
        if PLANNER_PROMPT in system:
            return json.dumps(self.plan)
        raise ModelGatewayError(model, "connection refused")


class RecordingBrowser:
    name = StepTool.playwright

    def __init__(self) -> None:
        self.titles: List[str] = []

    async def execute(self, request: ToolRequest) -> ToolResult:
        self.titles.append(request.title)
        return ToolResult(ok=True, output=f"Done: {request.title}", url="https://app.example.com")

    async def browser_context(self, run_id: str) -> Optional[Dict[str, Any]]:
        return None


@pytest.fixture
async def repos():
    engine = create_engine("sqlite+aiosqlite:///:memory:")
    await create_all(engine)
    yield build_sql_repos(session_factory=create_sessionmaker(engine))
    await engine.dispose()


@pytest.fixture
def browser() -> RecordingBrowser:
    return RecordingBrowser()


@pytest.fixture
def gateway() -> PlannerOnlyGateway:
    return PlannerOnlyGateway(PLAN)


@pytest.fixture
def service(repos, tmp_path):
    return build_service(repos=repos, default_model="test-model", artifacts_dir=tmp_path)


@pytest.fixture
def worker(repos, gateway, browser):
    tools = ToolRegistry()
    tools.register(browser)
    deps = build_engine_deps(
        repos=repos, gateway=gateway, default_model="test-model", tools=tools, tool_timeout_seconds=5.0
    )
    return build_worker(deps=deps, poll_seconds=0.01, stuck_minutes=5)


class TestRunLifecycle:
    @pytest.mark.asyncio
    async def test_queued_run_is_driven_to_completion(self, service, worker, browser, gateway, repos) -> None:
        run = await service.enqueue(prompt=PROMPT)

        claimed = await worker.poll()

        assert claimed == run.id
        stored = await service.get(run.id)
        assert stored.status == AgentRunStatus.completed
        assert stored.finished_at is not None
        assert browser.titles == ["Open the start page", "Read the weekly summary"]

        cp = Checkpoint.load(stored.plan_state)
        assert cp is not None
        assert [s.status for s in cp.steps] == [StepStatus.completed, StepStatus.completed]

        messages = [e.message for e in await service.list_audits(run.id, limit=1000)]
        assert messages[0] == "Agent run queued."
        assert "Plan created." in messages
        assert messages[-1] == "Agent run completed."
        assert any(PLANNER_PROMPT in s for s in gateway.systems)

    @pytest.mark.asyncio
    async def test_poll_without_queued_runs(self, worker) -> None:
        assert await worker.poll() is None

    @pytest.mark.asyncio
    async def test_stop_then_resume_requeues(self, service, worker) -> None:
        run = await service.enqueue(prompt=PROMPT)
        await service.stop(run.id)

        assert await worker.poll() is None

        resumed = await service.resume(run.id)
        assert resumed.status == AgentRunStatus.queued
        assert await worker.poll() == run.id
        assert (await service.get(run.id)).status == AgentRunStatus.completed

    @pytest.mark.asyncio
    async def test_stuck_running_run_is_requeued_with_resume_flag(self, service, worker, repos) -> None:
        run = await service.enqueue(prompt=PROMPT)
        checkpoint = Checkpoint.load({"steps": [{"id": "s1", "title": "Open the start page"}]})
        await repos.runs.save_plan_state(run.id, plan_state=checkpoint.dump(), active_step_id="s1")
        await repos.runs.update_status(run.id, status=AgentRunStatus.running)

        # Look far enough ahead that the fresh run already counts as stale.
        worker._stuck_after = timedelta(minutes=-1)
        recovered = await worker.recover_stuck_runs()

        assert recovered == [run.id]
        stored = await service.get(run.id)
        assert stored.status == AgentRunStatus.queued
        assert Checkpoint.load(stored.plan_state).resume_pending is True
        audits = await service.list_audits(run.id)
        assert audits[-1].metadata["type"] == "run-recovered"

    @pytest.mark.asyncio
    async def test_bulk_delete_keeps_active_runs(self, service, worker) -> None:
        finished = await service.enqueue(prompt=PROMPT)
        await worker.poll()
        queued = await service.enqueue(prompt=PROMPT)

        deleted = await service.delete_runs()

        assert deleted == [finished.id]
        assert (await service.get(queued.id)).status == AgentRunStatus.queued


def test_planner_prompt_marker_matches_prompt_text() -> None:
    assert PLANNER_PROMPT in prompts.plan_prompt(12)
