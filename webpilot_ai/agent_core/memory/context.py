"""Planner context assembly and problem/solution memories."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from ..audit import AuditLogger
from ..repos.interfaces import RunRepository
from ..schemas.config import AgentPlanPreferences, AgentPlanSettings
from ..schemas.domain import AgentRun, LongTermMemoryItem
from .store import MemoryStore, MemoryWriteResult

logger = logging.getLogger(__name__)

SESSION_CONTEXT_ITEMS = 8
LONG_TERM_CONTEXT_ITEMS = 4
PROBLEM_SOLUTION_CONTEXT_ITEMS = 4
SELF_IMPROVEMENT_CONTEXT_ITEMS = 3
MAX_CONTEXT_ENTRIES = 10
MAX_PLAYBOOK_LINES = 6

PROBLEM_SOLUTION_TAG = "problem-solution"
SELF_IMPROVEMENT_TAG = "self-improvement"


@dataclass
class RunContext:
    """Everything the engine needs to plan a run, resolved once at start."""

    memory_key: str
    memory_context: List[str]
    settings: AgentPlanSettings
    preferences: AgentPlanPreferences
    resolved_model: str
    planner_model: str
    self_check_model: str
    loop_guard_model: str
    approval_gate_model: Optional[str]
    memory_summarization_model: str
    memory_validation_model: str
    browser_context: Optional[Dict[str, Any]]


async def add_problem_solution_memory(
    store: MemoryStore,
    *,
    memory_key: Optional[str],
    run_id: str,
    problem: Optional[str],
    countermeasure: Optional[str],
    validation_model: str,
    context: Optional[Dict[str, Any]] = None,
    tags: Sequence[str] = (),
    prompt: Optional[str] = None,
    summarization_model: Optional[str] = None,
) -> Optional[MemoryWriteResult]:
    """Record how a problem was countered, for future runs on the same key.

    No-op when the memory key, problem or countermeasure is missing.
    """
    if not memory_key or not problem or not countermeasure:
        return None
    summary = f"Problem: {problem} · Countermeasure: {countermeasure}"
    return await store.validate_and_add_long_term_memory(
        memory_key=memory_key,
        run_id=run_id,
        content=summary,
        summary=summary,
        tags=[PROBLEM_SOLUTION_TAG, *tags],
        metadata={"problem": problem, "countermeasure": countermeasure, **(context or {})},
        importance=4,
        validation_model=validation_model,
        prompt=prompt,
        summarization_model=summarization_model,
    )


def build_self_improvement_playbook(items: Sequence[LongTermMemoryItem]) -> Optional[str]:
    """Condense self-improvement memories into a short guardrail list."""
    lines: List[str] = []
    for item in items:
        for key, label in (("guardrails", "Guardrail"), ("improvements", "Improvement"), ("toolAdjustments", "Tool")):
            values = item.metadata.get(key)
            if not isinstance(values, list):
                continue
            for value in values:
                if isinstance(value, str) and value.strip():
                    lines.append(f"- {label}: {value.strip()}")
    lines = list(dict.fromkeys(lines))[:MAX_PLAYBOOK_LINES]
    if not lines:
        return None
    return "\n".join(["Self-improvement playbook:", *lines])


def _model_or(preferred: Optional[str], fallback: str) -> str:
    return preferred if preferred else fallback


async def prepare_run_context(
    run: AgentRun,
    *,
    store: MemoryStore,
    runs: RunRepository,
    audit: AuditLogger,
    default_model: str,
    browser_context: Optional[Dict[str, Any]] = None,
) -> RunContext:
    """Resolve the memory key, models and memory context of a run.

    The run prompt is appended to session memory; the context is the last
    session items followed by long-term, problem/solution and
    self-improvement memories and the playbook, keeping the last entries.
    """
    memory_key = run.memory_key
    if not memory_key:
        memory_key = run.id
        await runs.set_memory_key(run.id, memory_key)

    await store.add_memory(run.id, run.prompt, {"source": "user"})
    session = [item.content for item in await store.list_memory(run.id, limit=SESSION_CONTEXT_ITEMS)]

    long_term = await store.list_long_term_memory(memory_key, limit=LONG_TERM_CONTEXT_ITEMS)
    problems = await store.list_long_term_memory(
        memory_key, tags=[PROBLEM_SOLUTION_TAG], limit=PROBLEM_SOLUTION_CONTEXT_ITEMS
    )
    improvements = await store.list_long_term_memory(
        memory_key, tags=[SELF_IMPROVEMENT_TAG], limit=SELF_IMPROVEMENT_CONTEXT_ITEMS
    )
    playbook = build_self_improvement_playbook(improvements)
    long_term_context = [
        f"Long-term memory: {item.summary or item.content}"
        for item in [*long_term, *problems, *improvements]
        if item.summary or item.content
    ]
    memory_context = [*session, *long_term_context, *([playbook] if playbook else [])][-MAX_CONTEXT_ENTRIES:]

    plan_state = run.plan_state or {}
    settings = AgentPlanSettings.resolve(plan_state.get("settings"))
    preferences = AgentPlanPreferences.resolve(plan_state.get("preferences"))
    resolved_model = run.model or default_model
    planner_model = _model_or(preferences.planner_model, resolved_model)

    if improvements:
        await audit.info(
            run.id, "Self-improvement memory loaded.", {"type": "self-improvement-context", "count": len(improvements)}
        )
    if playbook:
        await audit.info(run.id, "Self-improvement playbook ready.", {"type": "self-improvement-playbook"})
    await audit.info(
        run.id,
        "Planner context prepared.",
        {
            "type": "planner-context",
            "prompt": run.prompt,
            "model": planner_model,
            "memory": memory_context,
            "browserContext": browser_context,
        },
    )

    return RunContext(
        memory_key=memory_key,
        memory_context=memory_context,
        settings=settings,
        preferences=preferences,
        resolved_model=resolved_model,
        planner_model=planner_model,
        self_check_model=_model_or(preferences.self_check_model, planner_model),
        loop_guard_model=_model_or(preferences.loop_guard_model, planner_model),
        approval_gate_model=preferences.approval_gate_model,
        memory_summarization_model=_model_or(preferences.memory_summarization_model, resolved_model),
        memory_validation_model=_model_or(preferences.memory_validation_model, resolved_model),
        browser_context=browser_context,
    )
