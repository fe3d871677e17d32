"""
Agent Runs API Endpoints.

This module provides the primary interface for creating, controlling and
observing agent runs. Runs are executed by the background queue worker; the
endpoints here only enqueue runs and flip their control fields.

Includes:
- Run CRUD operations (create, list, get, delete, bulk delete)
- Control actions (stop, resume, approve)
- Audit trail listing and real-time streaming via Server-Sent Events (SSE)
"""

from typing import List, Optional

from fastapi import APIRouter, Query, Request, Response
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from webpilot_ai.agent_core.schemas.domain import AgentRun, AgentRunStatus, AuditEntry
from webpilot_ai.core.logging_config import get_logger
from webpilot_ai.server.schemas import DeleteRunsResponse, ErrorEvent, RunAction, RunCreate
from webpilot_ai.server.services.deps import OrchestratorDep

logger = get_logger(__name__)
router = APIRouter()


def serialize_event(event: BaseModel) -> str:
    """
    Serialize a Pydantic model event to JSON string.

    Args:
        event: Pydantic model emitted by the orchestrator stream.

    Returns:
        JSON string representation of the event
    """
    try:
        return event.model_dump_json()
    except ValueError as e:
        logger.error(f"Failed to serialize event: {e}", exc_info=True)
        return ErrorEvent(error="Failed to serialize event", details=str(e)).model_dump_json()


@router.post(
    "",
    response_model=AgentRun,
    status_code=201,
    summary="Create Agent Run",
    description="Queue a new agent run for the given prompt.",
    response_description="The queued agent run object.",
)
async def create_run(run_in: RunCreate, orchestrator: OrchestratorDep):
    """
    Create a new agent run.

    - **prompt**: The natural-language task.
    - **model**: Model name (optional).
    - **tools**: Tool names the run may use (optional).
    - **memoryKey**: Long-term memory subject (optional).
    - **settings** / **preferences**: Budget and behaviour overrides (optional).
    """
    logger.info(f"Creating new run, prompt: {run_in.prompt[:80]}")
    return await orchestrator.create_run(
        prompt=run_in.prompt,
        model=run_in.model,
        tools=run_in.tools,
        memory_key=run_in.memory_key,
        run_settings=run_in.settings,
        preferences=run_in.preferences,
    )


@router.get(
    "",
    response_model=List[AgentRun],
    summary="List Agent Runs",
    description="Retrieve agent runs, newest first, optionally filtered by status.",
)
async def list_runs(
    orchestrator: OrchestratorDep,
    status: Optional[AgentRunStatus] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
):
    return await orchestrator.list_runs(status=status, limit=limit, offset=offset)


@router.delete(
    "",
    response_model=DeleteRunsResponse,
    summary="Delete Finished Runs",
    description="Delete every run that is completed, failed, stopped or waiting for a human.",
)
async def delete_runs(orchestrator: OrchestratorDep, scope: str = "terminal"):
    deleted = await orchestrator.delete_runs(scope)
    return DeleteRunsResponse(deleted=deleted, scope=scope)


@router.get(
    "/{run_id}",
    response_model=AgentRun,
    summary="Get Run Details",
    description="Retrieve the current state of a run, including its checkpoint.",
    responses={404: {"description": "Run not found"}},
)
async def get_run(run_id: str, orchestrator: OrchestratorDep):
    return await orchestrator.get_run(run_id)


@router.post(
    "/{run_id}/actions",
    response_model=AgentRun,
    summary="Control Run",
    description="Stop a run, resume it (optionally from a given step) or approve its pending step.",
    responses={404: {"description": "Run not found"}, 409: {"description": "Action conflicts with run status"}},
)
async def run_action(run_id: str, action: RunAction, orchestrator: OrchestratorDep):
    """
    Apply a control action.

    - **stop**: the engine halts at the next step boundary.
    - **resume**: re-queue the run; the remaining plan is reviewed first.
    - **approve**: grant the pending approval of ``stepId`` and re-queue.
    """
    logger.info(f"Run {run_id}: action {action.action.value}")
    return await orchestrator.apply_action(run_id, action)


@router.delete(
    "/{run_id}",
    status_code=204,
    summary="Delete Run",
    description="Delete a run with its audit trail and artifacts.",
    responses={404: {"description": "Run not found"}, 409: {"description": "Run is running"}},
)
async def delete_run(run_id: str, orchestrator: OrchestratorDep, force: bool = False):
    await orchestrator.delete_run(run_id, force=force)
    return Response(status_code=204)


@router.get(
    "/{run_id}/audits",
    response_model=List[AuditEntry],
    summary="List Run Audit Entries",
    description="Retrieve the audit trail of a run in chronological order.",
)
async def list_run_audits(run_id: str, orchestrator: OrchestratorDep, limit: int = Query(default=200, ge=1, le=1000)):
    return await orchestrator.list_audits(run_id, limit=limit)


@router.get(
    "/{run_id}/stream",
    summary="Stream Run Audit Entries",
    description="Subscribe to a Server-Sent Events (SSE) stream of a run's audit entries and status changes.",
    responses={
        200: {
            "description": "SSE stream established",
            "content": {"text/event-stream": {"example": 'data: {"event": "keep_alive"}\n\n'}},
        }
    },
)
async def stream_run(run_id: str, request: Request, orchestrator: OrchestratorDep):
    """
    Stream a run via Server-Sent Events.

    The stream closes once the run is terminal or waiting for a human.
    """
    await orchestrator.get_run(run_id)
    logger.info(f"Starting event stream for run: {run_id}")

    async def event_generator():
        async for event in orchestrator.stream_events(run_id):
            if await request.is_disconnected():
                logger.info(f"Client disconnected from stream for run: {run_id}")
                break
            yield serialize_event(event)

    return EventSourceResponse(event_generator())
