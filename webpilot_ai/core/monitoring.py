"""
Monitoring and Tracing Configuration Module.

This module provides optional integration with Pydantic Logfire for tracing
the agent runner:
- Agent run lifecycle (start, terminal status, duration)
- Model gateway calls and token usage
- API endpoint tracing
- Database operation monitoring

Logfire stays dormant unless ``LOGFIRE_ENABLED`` is set and a token is
available; every ``log_*`` helper is a no-op until ``initialize_logfire`` has
configured it.
"""

import logging
import os
from typing import Optional

import logfire
from fastapi import FastAPI

logger = logging.getLogger(__name__)

# Logfire configuration from environment
LOGFIRE_ENABLED = os.getenv("LOGFIRE_ENABLED", "false").lower() in ("true", "1", "yes")
LOGFIRE_TOKEN = os.getenv("LOGFIRE_TOKEN", "")
LOGFIRE_ENVIRONMENT = os.getenv("LOGFIRE_ENVIRONMENT", "development")
LOGFIRE_SERVICE_NAME = os.getenv("LOGFIRE_SERVICE_NAME", "webpilot-ai-server")
LOGFIRE_SERVICE_VERSION = os.getenv("LOGFIRE_SERVICE_VERSION", "0.1.0")

# Feature flags
LOGFIRE_TRACE_SQLALCHEMY = os.getenv("LOGFIRE_TRACE_SQLALCHEMY", "true").lower() in ("true", "1", "yes")
LOGFIRE_TRACE_HTTPX = os.getenv("LOGFIRE_TRACE_HTTPX", "true").lower() in ("true", "1", "yes")
LOGFIRE_TRACE_FASTAPI = os.getenv("LOGFIRE_TRACE_FASTAPI", "true").lower() in ("true", "1", "yes")

_configured = False


def initialize_logfire(app: FastAPI | None = None) -> None:
    """
    Initialize Logfire for monitoring and tracing.

    Args:
        app: FastAPI application instance for endpoint instrumentation (optional).

    The initialization is conditional on the ``LOGFIRE_ENABLED`` environment
    variable and a configured ``LOGFIRE_TOKEN``.
    """
    global _configured

    if not LOGFIRE_ENABLED:
        logger.info("Logfire monitoring is disabled. Set LOGFIRE_ENABLED=true to enable.")
        return

    if not LOGFIRE_TOKEN:
        logger.warning("Logfire is enabled but LOGFIRE_TOKEN is not set. Monitoring will not work.")
        return

    try:
        logfire.configure(
            token=LOGFIRE_TOKEN,
            service_name=LOGFIRE_SERVICE_NAME,
            service_version=LOGFIRE_SERVICE_VERSION,
            environment=LOGFIRE_ENVIRONMENT,
        )
    except Exception as e:
        logger.error(f"Failed to initialize Logfire: {e}", exc_info=True)
        return
    _configured = True

    if LOGFIRE_TRACE_SQLALCHEMY:
        try:
            logfire.instrument_sqlalchemy()
            logger.info("Logfire: SQLAlchemy instrumentation enabled")
        except Exception as e:
            logger.warning(f"Failed to instrument SQLAlchemy: {e}")

    if LOGFIRE_TRACE_HTTPX:
        try:
            logfire.instrument_httpx()
            logger.info("Logfire: HTTPX instrumentation enabled")
        except Exception as e:
            logger.warning(f"Failed to instrument HTTPX: {e}")

    if LOGFIRE_TRACE_FASTAPI and app is not None:
        try:
            logfire.instrument_fastapi(app=app)
            logger.info("Logfire: FastAPI instrumentation enabled")
        except Exception as e:
            logger.warning(f"Failed to instrument FastAPI: {e}")

    logger.info(f"Logfire monitoring initialized: environment={LOGFIRE_ENVIRONMENT}, service={LOGFIRE_SERVICE_NAME}")


def log_agent_run(run_id: str, prompt: str, model: str) -> None:
    """
    Log the enqueueing of an agent run.

    Args:
        run_id: The unique identifier for the run
        prompt: The natural-language task
        model: The run's default model
    """
    if not _configured:
        return
    try:
        logfire.info("Agent run queued", run_id=run_id, prompt=prompt, model=model)
    except Exception:
        logger.debug(f"Could not log agent run to Logfire: run_id={run_id}")


def log_agent_completion(run_id: str, status: str, duration_ms: float) -> None:
    """
    Log the terminal status of an agent run.

    Args:
        run_id: The unique identifier for the run
        status: The terminal status (completed, failed, waiting_human, ...)
        duration_ms: Wall time spent driving the run in milliseconds
    """
    if not _configured:
        return
    try:
        logfire.info("Agent run finished", run_id=run_id, status=status, duration_ms=duration_ms)
    except Exception:
        logger.debug(f"Could not log agent completion to Logfire: run_id={run_id}")


def log_llm_call(model: str, tokens_used: int) -> None:
    """
    Log a model gateway call with token usage.

    Args:
        model: The model name
        tokens_used: Prompt plus completion tokens reported by the backend
    """
    if not _configured:
        return
    try:
        logfire.info("LLM call completed", model=model, tokens_used=tokens_used)
    except Exception:
        logger.debug(f"Could not log LLM call to Logfire: model={model}")


def log_error(error_type: str, error_message: str, context: Optional[dict] = None) -> None:
    """
    Log an error with context for debugging.

    Args:
        error_type: Type of error
        error_message: Error message
        context: Additional context dictionary
    """
    if not _configured:
        return
    try:
        logfire.error(f"{error_type}: {error_message}", **(context or {}))
    except Exception:
        logger.debug(f"Could not log error to Logfire: {error_type}")


def log_api_request(method: str, path: str, status_code: int, duration_ms: float) -> None:
    """
    Log an API request with its outcome.

    Args:
        method: HTTP method
        path: Request path
        status_code: Response status code
        duration_ms: Handling time in milliseconds
    """
    if not _configured:
        return
    try:
        logfire.info(
            "API request", method=method, path=path, status_code=status_code, duration_ms=duration_ms
        )
    except Exception:
        logger.debug(f"Could not log API request to Logfire: {method} {path}")
