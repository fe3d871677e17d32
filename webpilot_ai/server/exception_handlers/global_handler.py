"""
Exception Handlers for the FastAPI Application.

Agent core errors are mapped to client errors:

- ``RunNotFoundError`` -> 404
- ``RunConflictError`` -> 409
- ``ValueError`` (blank prompt, unknown delete scope, missing step id) -> 400

Any other exception goes through the global handler, which logs the request
context with an error id and returns 500.
"""

import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from webpilot_ai.agent_core.errors import RunConflictError, RunNotFoundError
from webpilot_ai.core.logging_config import get_logger

logger = get_logger(__name__)


async def run_not_found_handler(request: Request, exc: RunNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc), "run_id": exc.run_id})


async def run_conflict_handler(request: Request, exc: RunConflictError) -> JSONResponse:
    logger.info(f"Conflict in {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "run_id": exc.run_id, "status": exc.status},
    )


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler to log detailed error information.

    Args:
        request: The HTTP request that caused the exception
        exc: The exception that was raised

    Returns:
        JSONResponse with error details and error ID
    """
    error_id = id(exc)

    logger.error(
        f"Unhandled exception [{error_id}] in {request.method} {request.url.path}: {str(exc)}",
        exc_info=True,
        extra={
            "error_id": error_id,
            "method": request.method,
            "path": request.url.path,
            "query_params": dict(request.query_params),
            "client": request.client.host if request.client else "unknown",
            "error_type": type(exc).__name__,
            "traceback": traceback.format_exc(),
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error_id": error_id,
            "error_type": type(exc).__name__,
        },
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """
    Register exception handlers with the FastAPI application.

    Args:
        app: The FastAPI application instance
    """
    app.add_exception_handler(RunNotFoundError, run_not_found_handler)
    app.add_exception_handler(RunConflictError, run_conflict_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)
    logger.debug("Exception handlers registered successfully")
