from __future__ import annotations

from pathlib import Path

import pytest

from webpilot_ai.agent_core.errors import RunConflictError, RunNotFoundError
from webpilot_ai.agent_core.schemas.checkpoint import Checkpoint
from webpilot_ai.agent_core.schemas.domain import AgentRunStatus, StepStatus
from webpilot_ai.agent_core.schemas.planning import PlanStep
from webpilot_ai.agent_core.service import AgentService


@pytest.fixture
def service(runs_repo, audit_repo, tmp_path: Path) -> AgentService:
    return AgentService(runs=runs_repo, audits=audit_repo, default_model="default-model", artifacts_dir=tmp_path)


def _plan_state(**fields) -> dict:
    cp = Checkpoint(
        steps=[
            PlanStep(id="s1", title="Open the dashboard", status=StepStatus.completed, attempts=1),
            PlanStep(id="s2", title="Open the report", status=StepStatus.failed, attempts=2),
            PlanStep(id="s3", title="Read the totals"),
        ],
        active_step_id="s2",
        branched_step_ids=["s2"],
        recovered_step_ids=["s2"],
        **fields,
    )
    return cp.dump()


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_resolves_defaults_and_clamps_settings(self, service, runs_repo, audit_repo) -> None:
        run = await service.enqueue(
            prompt="  Open the dashboard  ",
            model=" ",
            memory_key="  ",
            settings={"maxSteps": 999, "maxStepAttempts": "3", "unknown": 1},
            preferences={"requireHumanApproval": 1, "plannerModel": "planner-x"},
        )

        stored = await runs_repo.get(run.id)
        assert stored.status == AgentRunStatus.queued
        assert stored.prompt == "Open the dashboard"
        assert stored.model == "default-model"
        assert stored.memory_key is None
        assert stored.tools == ["playwright"]
        assert stored.plan_state["settings"]["maxSteps"] == 20
        assert stored.plan_state["settings"]["maxStepAttempts"] == 3
        assert "unknown" not in stored.plan_state["settings"]
        assert stored.plan_state["preferences"]["requireHumanApproval"] is True
        assert stored.plan_state["preferences"]["plannerModel"] == "planner-x"
        assert Checkpoint.load(stored.plan_state) is None
        assert audit_repo.of_type("run-queued")[0].metadata["model"] == "default-model"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("prompt", ["", "   "])
    async def test_blank_prompt_is_rejected(self, service, runs_repo, prompt) -> None:
        with pytest.raises(ValueError):
            await service.enqueue(prompt=prompt)
        assert runs_repo.rows == {}

    @pytest.mark.asyncio
    async def test_explicit_model_and_memory_key(self, service) -> None:
        run = await service.enqueue(prompt="p", model="llama3", memory_key=" shop ", tools=["playwright"])

        assert run.model == "llama3"
        assert run.memory_key == "shop"


class TestQueries:
    @pytest.mark.asyncio
    async def test_unknown_run(self, service) -> None:
        with pytest.raises(RunNotFoundError):
            await service.get("missing")
        with pytest.raises(RunNotFoundError):
            await service.list_audits("missing")

    @pytest.mark.asyncio
    async def test_list_filters_by_status(self, service, make_run) -> None:
        queued = await make_run(status=AgentRunStatus.queued)
        await make_run(status=AgentRunStatus.completed)

        runs = await service.list(status=AgentRunStatus.queued)

        assert [r.id for r in runs] == [queued.id]
        assert len(await service.list()) == 2


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_running_run(self, service, make_run, audit_repo) -> None:
        run = await make_run()

        stopped = await service.stop(run.id)

        assert stopped.status == AgentRunStatus.stopped
        assert stopped.error_message == "Stopped by user."
        assert audit_repo.of_type("run-stop")[0].metadata["previous"] == "running"

    @pytest.mark.asyncio
    async def test_stop_terminal_run_is_a_no_op(self, service, make_run, runs_repo, audit_repo) -> None:
        run = await make_run(status=AgentRunStatus.completed)

        result = await service.stop(run.id)

        assert result.status == AgentRunStatus.completed
        assert runs_repo.status_updates == []
        assert audit_repo.entries == []


class TestResume:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [AgentRunStatus.queued, AgentRunStatus.running])
    async def test_scheduled_run_cannot_resume(self, service, make_run, status) -> None:
        run = await make_run(status=status)

        with pytest.raises(RunConflictError):
            await service.resume(run.id)

    @pytest.mark.asyncio
    async def test_resume_resets_failed_active_step(self, service, make_run, audit_repo) -> None:
        run = await make_run(status=AgentRunStatus.failed, plan_state=_plan_state())

        resumed = await service.resume(run.id)

        assert resumed.status == AgentRunStatus.queued
        cp = Checkpoint.load(resumed.plan_state)
        step = cp.steps[1]
        assert step.status == StepStatus.pending
        assert step.attempts == 0
        assert cp.branched_step_ids == []
        assert cp.recovered_step_ids == []
        assert cp.resume_pending is True
        assert audit_repo.of_type("run-resume")[0].metadata["stepId"] is None

    @pytest.mark.asyncio
    async def test_resume_from_explicit_step(self, service, make_run) -> None:
        run = await make_run(status=AgentRunStatus.stopped, plan_state=_plan_state())

        resumed = await service.resume(run.id, step_id="s1")

        cp = Checkpoint.load(resumed.plan_state)
        assert cp.active_step_id == "s1"
        assert cp.steps[0].status == StepStatus.pending
        assert cp.steps[1].status == StepStatus.failed
        assert resumed.active_step_id == "s1"

    @pytest.mark.asyncio
    async def test_resume_unknown_step_conflicts(self, service, make_run) -> None:
        run = await make_run(status=AgentRunStatus.stopped, plan_state=_plan_state())

        with pytest.raises(RunConflictError):
            await service.resume(run.id, step_id="nope")

    @pytest.mark.asyncio
    async def test_resume_without_plan_just_requeues(self, service, make_run, runs_repo) -> None:
        run = await make_run(status=AgentRunStatus.stopped, settings={"maxSteps": 4})

        resumed = await service.resume(run.id)

        assert resumed.status == AgentRunStatus.queued
        assert runs_repo.saved_states == []


class TestApproval:
    @pytest.mark.asyncio
    async def test_approve_pending_step(self, service, make_run, audit_repo) -> None:
        run = await make_run(
            status=AgentRunStatus.waiting_human, plan_state=_plan_state(approval_requested_step_id="s3")
        )

        approved = await service.approve_step(run.id, "s3")

        assert approved.status == AgentRunStatus.queued
        cp = Checkpoint.load(approved.plan_state)
        assert cp.approval_granted_step_id == "s3"
        assert cp.approval_requested_step_id is None
        assert cp.active_step_id == "s3"
        assert audit_repo.of_type("approval-granted")

    @pytest.mark.asyncio
    async def test_approve_other_step_conflicts(self, service, make_run) -> None:
        run = await make_run(
            status=AgentRunStatus.waiting_human, plan_state=_plan_state(approval_requested_step_id="s3")
        )

        with pytest.raises(RunConflictError):
            await service.approve_step(run.id, "s2")

    @pytest.mark.asyncio
    async def test_approve_requires_waiting_run(self, service, make_run) -> None:
        run = await make_run(plan_state=_plan_state(approval_requested_step_id="s3"))

        with pytest.raises(RunConflictError):
            await service.approve_step(run.id, "s3")


class TestDelete:
    @pytest.mark.asyncio
    async def test_running_run_needs_force(self, service, make_run, runs_repo, tmp_path) -> None:
        run = await make_run()
        (tmp_path / run.id).mkdir()
        (tmp_path / run.id / "shot.png").write_bytes(b"png")

        with pytest.raises(RunConflictError):
            await service.delete_run(run.id)
        assert run.id in runs_repo.rows

        await service.delete_run(run.id, force=True)
        assert run.id not in runs_repo.rows
        assert not (tmp_path / run.id).exists()

    @pytest.mark.asyncio
    async def test_delete_unknown_run(self, service) -> None:
        with pytest.raises(RunNotFoundError):
            await service.delete_run("missing")

    @pytest.mark.asyncio
    async def test_terminal_scope_keeps_active_runs(self, service, make_run, runs_repo, tmp_path) -> None:
        running = await make_run()
        queued = await make_run(status=AgentRunStatus.queued)
        done = [
            await make_run(status=status)
            for status in (AgentRunStatus.completed, AgentRunStatus.failed, AgentRunStatus.waiting_human)
        ]
        for run in (running, *done):
            (tmp_path / run.id).mkdir()

        deleted = await service.delete_runs("terminal")

        assert sorted(deleted) == sorted(r.id for r in done)
        assert set(runs_repo.rows) == {running.id, queued.id}
        assert (tmp_path / running.id).exists()
        assert not any((tmp_path / r.id).exists() for r in done)

    @pytest.mark.asyncio
    async def test_unknown_scope(self, service) -> None:
        with pytest.raises(ValueError):
            await service.delete_runs("all")
