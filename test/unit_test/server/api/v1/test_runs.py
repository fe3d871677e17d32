from unittest.mock import MagicMock

import pytest
from httpx import AsyncClient

from webpilot_ai.agent_core.schemas.checkpoint import Checkpoint
from webpilot_ai.agent_core.schemas.domain import AgentRunStatus, AuditEntry
from webpilot_ai.agent_core.schemas.planning import PlanStep
from webpilot_ai.server.api.v1.runs import serialize_event
from webpilot_ai.server.schemas import AuditEvent

RUNS = "/api/v1/runs"


async def _create(client: AsyncClient, prompt: str = "Find the cheapest monitor on https://shop.example.com", **extra):
    response = await client.post(RUNS, json={"prompt": prompt, **extra})
    assert response.status_code == 201
    return response.json()


async def _set_status(orchestrator, run_id: str, status: AgentRunStatus) -> None:
    await orchestrator.repos.runs.update_status(run_id, status=status)


class TestCreateRun:
    @pytest.mark.asyncio
    async def test_create_run_queues_with_defaults(self, client: AsyncClient):
        data = await _create(client)

        assert data["status"] == "queued"
        assert data["model"] == "test-model"
        assert data["tools"] == ["playwright"]
        assert data["memory_key"] is None
        assert data["plan_state"]["settings"]["maxSteps"] == 12

    @pytest.mark.asyncio
    async def test_create_run_clamps_settings_and_keeps_memory_key(self, client: AsyncClient):
        data = await _create(
            client,
            model="qwen3-vl:8b",
            memoryKey="shop",
            settings={"maxSteps": 99, "maxStepAttempts": 0},
            preferences={"requireHumanApproval": True},
        )

        assert data["model"] == "qwen3-vl:8b"
        assert data["memory_key"] == "shop"
        assert data["plan_state"]["settings"]["maxSteps"] == 20
        assert data["plan_state"]["settings"]["maxStepAttempts"] == 1
        assert data["plan_state"]["preferences"]["requireHumanApproval"] is True

    @pytest.mark.asyncio
    async def test_create_run_rejects_empty_prompt(self, client: AsyncClient):
        response = await client.post(RUNS, json={"prompt": ""})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_create_run_rejects_blank_prompt(self, client: AsyncClient):
        response = await client.post(RUNS, json={"prompt": "   "})
        assert response.status_code == 400
        assert response.json()["detail"] == "prompt must not be blank"


class TestReadRuns:
    @pytest.mark.asyncio
    async def test_get_run(self, client: AsyncClient):
        created = await _create(client)

        response = await client.get(f"{RUNS}/{created['id']}")

        assert response.status_code == 200
        assert response.json()["id"] == created["id"]

    @pytest.mark.asyncio
    async def test_get_unknown_run_returns_404(self, client: AsyncClient):
        response = await client.get(f"{RUNS}/missing")

        assert response.status_code == 404
        assert response.json()["run_id"] == "missing"

    @pytest.mark.asyncio
    async def test_list_runs_filters_by_status(self, client: AsyncClient, orchestrator):
        first = await _create(client, prompt="first task")
        await _create(client, prompt="second task")
        await _set_status(orchestrator, first["id"], AgentRunStatus.stopped)

        all_runs = (await client.get(RUNS)).json()
        stopped = (await client.get(RUNS, params={"status": "stopped"})).json()

        assert len(all_runs) == 2
        assert [r["id"] for r in stopped] == [first["id"]]

    @pytest.mark.asyncio
    async def test_list_runs_validates_limit(self, client: AsyncClient):
        response = await client.get(RUNS, params={"limit": 0})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_audits(self, client: AsyncClient):
        created = await _create(client)

        response = await client.get(f"{RUNS}/{created['id']}/audits")

        assert response.status_code == 200
        entries = response.json()
        assert [e["message"] for e in entries] == ["Agent run queued."]
        assert entries[0]["metadata"]["type"] == "run-queued"

    @pytest.mark.asyncio
    async def test_list_audits_of_unknown_run_returns_404(self, client: AsyncClient):
        response = await client.get(f"{RUNS}/missing/audits")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_stream_of_unknown_run_returns_404(self, client: AsyncClient):
        response = await client.get(f"{RUNS}/missing/stream")
        assert response.status_code == 404


class TestRunActions:
    @pytest.mark.asyncio
    async def test_stop_run(self, client: AsyncClient):
        created = await _create(client)

        response = await client.post(f"{RUNS}/{created['id']}/actions", json={"action": "stop"})

        assert response.status_code == 200
        assert response.json()["status"] == "stopped"
        assert response.json()["error_message"] == "Stopped by user."

    @pytest.mark.asyncio
    async def test_resume_of_queued_run_conflicts(self, client: AsyncClient):
        created = await _create(client)

        response = await client.post(f"{RUNS}/{created['id']}/actions", json={"action": "resume"})

        assert response.status_code == 409
        assert response.json()["status"] == "queued"

    @pytest.mark.asyncio
    async def test_resume_of_stopped_run_requeues(self, client: AsyncClient):
        created = await _create(client)
        await client.post(f"{RUNS}/{created['id']}/actions", json={"action": "stop"})

        response = await client.post(f"{RUNS}/{created['id']}/actions", json={"action": "resume"})

        assert response.status_code == 200
        assert response.json()["status"] == "queued"

    @pytest.mark.asyncio
    async def test_approve_requires_step_id(self, client: AsyncClient):
        created = await _create(client)

        response = await client.post(f"{RUNS}/{created['id']}/actions", json={"action": "approve"})

        assert response.status_code == 400
        assert "stepId" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_approve_pending_step(self, client: AsyncClient, orchestrator):
        created = await _create(client)
        checkpoint = Checkpoint(
            steps=[PlanStep(id="s1", title="Submit the order")],
            active_step_id="s1",
            approval_requested_step_id="s1",
        )
        await orchestrator.repos.runs.save_plan_state(
            created["id"], plan_state=checkpoint.dump(), active_step_id="s1"
        )
        await _set_status(orchestrator, created["id"], AgentRunStatus.waiting_human)

        response = await client.post(
            f"{RUNS}/{created['id']}/actions", json={"action": "approve", "stepId": "s1"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "queued"
        assert body["plan_state"]["approvalGrantedStepId"] == "s1"

    @pytest.mark.asyncio
    async def test_approve_without_pending_approval_conflicts(self, client: AsyncClient):
        created = await _create(client)

        response = await client.post(
            f"{RUNS}/{created['id']}/actions", json={"action": "approve", "stepId": "s1"}
        )

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_action_is_rejected(self, client: AsyncClient):
        created = await _create(client)

        response = await client.post(f"{RUNS}/{created['id']}/actions", json={"action": "pause"})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_action_on_unknown_run_returns_404(self, client: AsyncClient):
        response = await client.post(f"{RUNS}/missing/actions", json={"action": "stop"})
        assert response.status_code == 404


class TestDeleteRuns:
    @pytest.mark.asyncio
    async def test_delete_run(self, client: AsyncClient):
        created = await _create(client)

        response = await client.delete(f"{RUNS}/{created['id']}")

        assert response.status_code == 204
        assert (await client.get(f"{RUNS}/{created['id']}")).status_code == 404

    @pytest.mark.asyncio
    async def test_delete_running_run_requires_force(self, client: AsyncClient, orchestrator):
        created = await _create(client)
        await _set_status(orchestrator, created["id"], AgentRunStatus.running)

        refused = await client.delete(f"{RUNS}/{created['id']}")
        forced = await client.delete(f"{RUNS}/{created['id']}", params={"force": "true"})

        assert refused.status_code == 409
        assert refused.json()["status"] == "running"
        assert forced.status_code == 204

    @pytest.mark.asyncio
    async def test_bulk_delete_removes_finished_runs_only(self, client: AsyncClient, orchestrator):
        finished = await _create(client, prompt="finished task")
        queued = await _create(client, prompt="queued task")
        await _set_status(orchestrator, finished["id"], AgentRunStatus.completed)

        response = await client.delete(RUNS)

        assert response.status_code == 200
        assert response.json() == {"deleted": [finished["id"]], "scope": "terminal"}
        assert (await client.get(f"{RUNS}/{queued['id']}")).status_code == 200

    @pytest.mark.asyncio
    async def test_bulk_delete_rejects_unknown_scope(self, client: AsyncClient):
        response = await client.delete(RUNS, params={"scope": "everything"})
        assert response.status_code == 400


class TestSerializeEvent:
    def test_serializes_audit_event(self):
        event = AuditEvent(data=AuditEntry(run_id="r1", message="Step started."))

        payload = serialize_event(event)

        assert '"event":"audit"' in payload
        assert "Step started." in payload

    def test_serialization_failure_becomes_error_event(self):
        broken = MagicMock()
        broken.model_dump_json.side_effect = ValueError("not serializable")

        payload = serialize_event(broken)

        assert '"event":"error"' in payload
        assert "Failed to serialize event" in payload
