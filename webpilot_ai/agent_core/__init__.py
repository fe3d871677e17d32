"""Autonomous task-execution engine for browser-automation agents.

This package contains the "engine room" of the agent runner.

Design overview
---------------

A run is a natural-language prompt that the engine turns into an ordered,
hierarchical plan of steps and executes against an external tool (the
browser-automation driver):

- ``planning``: model-backed plan building and reviews with rule-based
  fallbacks.
- ``memory``: session and validated long-term memory that feeds the planner.
- ``runtime``: the LangGraph execution loop with checkpointing, loop guard and
  human-approval gate.
- ``validators``: model-backed extraction validation and recovery tactics.
- ``repos``: persistence interfaces and async SQLAlchemy implementations.

Typical usage
-------------

1. ``AgentService.enqueue`` inserts a queued run.
2. ``AgentQueueWorker`` claims it and drives ``AgentEngine``.
3. Callers observe the run record and its audit trail, and steer it with
   ``stop``, ``resume`` and ``approve_step``.
"""

from .errors import (
    AgentCoreError,
    CheckpointPersistenceError,
    ModelGatewayError,
    PlanExhaustedError,
    RunConflictError,
    RunNotFoundError,
    ToolExecutionError,
)
from .factory import build_engine, build_engine_deps, build_service, build_worker
from .runtime import AgentEngine, EngineDeps
from .schemas.domain import AgentRun, AgentRunStatus, AuditEntry
from .service import AgentService
from .worker import AgentQueueWorker

__all__ = [
    "AgentCoreError",
    "AgentEngine",
    "AgentQueueWorker",
    "AgentRun",
    "AgentRunStatus",
    "AgentService",
    "AuditEntry",
    "CheckpointPersistenceError",
    "EngineDeps",
    "ModelGatewayError",
    "PlanExhaustedError",
    "RunConflictError",
    "RunNotFoundError",
    "ToolExecutionError",
    "build_engine",
    "build_engine_deps",
    "build_service",
    "build_worker",
]
