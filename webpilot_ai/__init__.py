"""WebPilot-AI.

This package contains a task-execution engine that turns a natural-language
request into a persisted, auditable browser-automation run.

High-level architecture
-----------------------

A run is a plan of browser steps that a model-backed planner writes and
revises while the steps execute:

- **Planning**: the planner asks the model for a structured plan, reviews it
  periodically, branches into recovery steps after failures and falls back to
  heuristic plans when the model is unusable.
- **Execution**: a LangGraph loop drives the plan one step at a time, retries
  failed attempts, checks for repeated failures (loop guard) and pauses for a
  human before sensitive steps.
- **Checkpointing**: every transition is written to the run record, so a run
  resumes exactly where it stopped after a crash, a stop or an approval.

Core subpackages
----------------

- ``webpilot_ai.agent_core``:

  - Model gateway, planner, validators and memory store.
  - The execution engine, checkpoint store, loop guard and approval gate.
  - Repository interfaces and SQL implementations for persistence.
  - The run service and the queue worker.

- ``webpilot_ai.server``:

  - FastAPI endpoints to create, control and stream runs.

Typical workflow
----------------

Most integrations should use ``webpilot_ai.agent_core.service.AgentService``:

1. Enqueue an ``AgentRun``.
2. The queue worker claims it and the engine plans and executes it.
3. If a step needs approval, the run waits for a human and keeps its checkpoint.
4. ``approve_step`` or ``resume`` re-queues the run from the checkpoint.
"""
