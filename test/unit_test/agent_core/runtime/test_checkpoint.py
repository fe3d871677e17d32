from __future__ import annotations

import pytest

from webpilot_ai.agent_core.audit import AuditLogger
from webpilot_ai.agent_core.errors import CheckpointPersistenceError
from webpilot_ai.agent_core.runtime.checkpoint import CheckpointStore
from webpilot_ai.agent_core.schemas.checkpoint import CHECKPOINT_VERSION, Checkpoint
from webpilot_ai.agent_core.schemas.domain import AgentRun, StepStatus, TaskType
from webpilot_ai.agent_core.schemas.planning import PlanStep


def test_load_rejects_payload_without_steps() -> None:
    assert Checkpoint.load(None) is None
    assert Checkpoint.load({"settings": {"maxSteps": 3}}) is None
    assert Checkpoint.load({"steps": "nope"}) is None


def test_load_drops_unreadable_steps() -> None:
    cp = Checkpoint.load(
        {
            "steps": [{"id": "s1", "title": "Open"}, {"id": "s2"}, "garbage", {"id": "s3", "title": "Read"}],
            "activeStepId": "s3",
        }
    )
    assert cp is not None
    assert [s.id for s in cp.steps] == ["s1", "s3"]
    assert cp.active_step_id == "s3"


def test_load_tolerates_malformed_fields() -> None:
    cp = Checkpoint.load({"steps": [{"id": "s1", "title": "Open"}], "replanCount": "many", "settings": {"maxSteps": 99}})
    assert cp is not None
    assert [s.id for s in cp.steps] == ["s1"]
    assert cp.replan_count == 0


def test_load_clamps_embedded_settings() -> None:
    cp = Checkpoint.load({"steps": [], "settings": {"maxSteps": 99}, "preferences": {"requireHumanApproval": 1}})
    assert cp.settings.max_steps == 20
    assert cp.preferences.require_human_approval is True


def test_dump_uses_camel_case_and_survives_reload() -> None:
    cp = Checkpoint(
        steps=[PlanStep(id="s1", title="Open", status=StepStatus.completed)],
        active_step_id="s1",
        task_type=TaskType.extract_info,
        branched_step_ids=["s1"],
    )
    blob = cp.dump()
    assert blob["version"] == CHECKPOINT_VERSION
    assert blob["activeStepId"] == "s1"
    assert blob["branchedStepIds"] == ["s1"]
    assert blob["taskType"] == "extract_info"

    again = Checkpoint.load(blob)
    assert again.steps[0].status == StepStatus.completed
    assert again.task_type == TaskType.extract_info


def test_resume_pending_until_processed() -> None:
    cp = Checkpoint()
    assert cp.resume_pending is False
    cp.resume_requested_at = cp.updated_at
    assert cp.resume_pending is True
    cp.resume_processed_at = cp.resume_requested_at
    assert cp.resume_pending is False


@pytest.mark.asyncio
async def test_store_persists_blob_and_active_step(runs_repo, audit_repo) -> None:
    run = AgentRun(prompt="p", model="m")
    await runs_repo.create(run)
    store = CheckpointStore(runs_repo, AuditLogger(audit_repo))

    await store.persist(run.id, Checkpoint(steps=[PlanStep(id="s1", title="Open")], active_step_id="s1"))

    stored = await runs_repo.get(run.id)
    assert stored.active_step_id == "s1"
    assert stored.checkpointed_at is not None
    assert store.load(stored).steps[0].id == "s1"
    assert audit_repo.of_type("checkpoint-save")[0].metadata["stepCount"] == 1


@pytest.mark.asyncio
async def test_store_raises_when_write_fails(runs_repo, audit_repo) -> None:
    runs_repo.fail_saves = True
    store = CheckpointStore(runs_repo, AuditLogger(audit_repo))
    with pytest.raises(CheckpointPersistenceError, match="database unavailable"):
        await store.persist("r1", Checkpoint())
    assert audit_repo.entries == []
