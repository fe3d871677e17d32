"""
Health Check Endpoints.

This module provides basic system status endpoints (health, version)
used for monitoring and deployment verification.
"""

from fastapi import APIRouter

from webpilot_ai.server.services.deps import OrchestratorDep

router = APIRouter()


@router.get(
    "/health",
    summary="Health Check",
    description="Check the operational status of the API server and its queue worker.",
    response_description="Status object.",
)
async def health_check(orchestrator: OrchestratorDep):
    """
    Health check endpoint.

    Returns a status indicator plus whether the queue worker is running.
    """
    return {"status": "ok", "worker": "running" if orchestrator.worker.running else "stopped"}


@router.get(
    "/version",
    summary="Get Version",
    description="Retrieve version information for the API server.",
    response_description="Version object.",
)
async def version():
    """
    Get API version.

    Returns the current semantic version of the API and supported schema version.
    """
    return {"version": "0.1.0", "schema_version": "v1"}
