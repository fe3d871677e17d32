from __future__ import annotations

"""LangGraph runtime engine.

``AgentEngine`` drives one claimed run from its prompt (or its checkpoint) to a
terminal status.

Execution model
---------------

- ``prepare`` resolves the run context and either builds a new plan (cold
  start) or restores the checkpoint (warm start, with a resume review when a
  resume was requested).
- ``execute`` runs exactly one step attempt per iteration and routes to
  ``continue``, ``pause`` (approval required) or ``finish``.
  After a successful step the periodic review, the mid-run adaptation (every
  ``MID_RUN_INTERVAL`` completed steps) and the self check may replace the
  remaining steps; replacements pass through the planner's repetition guard.
  The checkpoint brief is refreshed whenever the active step or the last
  error changes.
- ``pause`` parks the run in ``waiting_human``.
- ``finish`` maps the plan to a terminal status and runs the final reviews.

Every state transition is persisted through ``CheckpointStore`` so a restarted
process resumes at the active step.

Failure policy
--------------

A failed attempt is retried in place until ``max_attempts``. The last failure
marks the step failed and triggers recovery, in order: a failure-recovery plan
for typed failures (hints for the next attempt), a recovery branch inserted
after the failed step (once per step), a full replan while the replan budget
lasts. When nothing is left the run fails, or waits for a human when the error
says a person is needed.
"""

import asyncio
import logging
import re
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from langgraph.graph import END, StateGraph

from ...core.monitoring import log_agent_completion, log_error
from ..errors import CheckpointPersistenceError, PlanExhaustedError, RunNotFoundError, ToolExecutionError
from ..memory import add_problem_solution_memory, prepare_run_context
from ..memory.context import MAX_CONTEXT_ENTRIES, SESSION_CONTEXT_ITEMS
from ..memory.store import prompt_target_host
from ..planning import PlanRequest
from ..planning.utils import (
    append_task_type_to_prompt,
    first_pending_index,
    is_extraction_step,
    should_evaluate_replan,
)
from ..schemas.checkpoint import Checkpoint
from ..schemas.domain import AgentRunStatus, StepStatus, StepTool, TaskType, _utc_now
from ..schemas.planning import PlanStep
from ..tools import ToolFailureType, ToolRequest, ToolResult
from ..validators import EvidenceItem
from .approvals import approval_pending
from .checkpoint import CheckpointStore
from .loop_guard import LoopGuard, StepTrace, detect_loop_pattern, record_trace
from .models import EngineDeps, ExecutionContext, _GraphState

logger = logging.getLogger(__name__)

GRAPH_RECURSION_LIMIT = 1000
SUMMARY_INTERVAL = 5
MID_RUN_INTERVAL = 3
MAX_DEFERRALS = 3
MAX_REQUIRED_COUNT = 100

HUMAN_REQUIRED_PATTERN = re.compile(r"requires human|cloudflare challenge", re.IGNORECASE)
EXPLICIT_URL_PATTERN = re.compile(r"https?://", re.IGNORECASE)
_FIRST_INTEGER = re.compile(r"\b(\d+)\b")

_HALTED_STATUSES = (AgentRunStatus.stopped, AgentRunStatus.canceled)
_RECOVERABLE_FAILURES = (
    ToolFailureType.bad_selectors,
    ToolFailureType.login_stuck,
    ToolFailureType.missing_extraction,
)


def _failure_type(value: Optional[str]) -> Optional[ToolFailureType]:
    try:
        return ToolFailureType(value) if value else None
    except ValueError:
        return None


def resolve_active_index(checkpoint: Checkpoint) -> int:
    """Index of the checkpointed active step, else the first unfinished one."""
    if checkpoint.active_step_id:
        for idx, step in enumerate(checkpoint.steps):
            if step.id == checkpoint.active_step_id:
                return idx
    return first_pending_index(checkpoint.steps)


def required_item_count(prompt: str) -> int:
    match = _FIRST_INTEGER.search(prompt)
    if not match:
        return 1
    return min(max(int(match.group(1)), 1), MAX_REQUIRED_COUNT)


def extraction_type_for(prompt: str, step: PlanStep) -> str:
    return "emails" if "email" in f"{prompt} {step.title}".lower() else "product_names"


def is_step_done(step: PlanStep, checkpoint: Checkpoint) -> bool:
    if step.status == StepStatus.completed:
        return True
    return step.status in (StepStatus.failed, StepStatus.skipped) and step.id in checkpoint.recovered_step_ids


class AgentEngine:
    """Execute agent runs as a LangGraph state machine.

    The engine is orchestration only: planning decisions come from
    ``LLMPlanner``, tool work from the executors in ``EngineDeps.tools`` and
    validation from ``LLMValidators``.
    """

    def __init__(self, *, deps: EngineDeps) -> None:
        """
        Initialize the AgentEngine.

        Args:
            deps: The runtime dependencies (repositories, planner, tools, etc.).
        """
        self._deps = deps
        self._checkpoints = CheckpointStore(deps.runs, deps.audit)
        self._graph = self._build_graph()

    def _build_graph(self):
        """Build and compile the LangGraph state machine."""
        g: StateGraph = StateGraph(_GraphState)
        g.add_node("prepare", self._node_prepare)
        g.add_node("execute", self._node_execute)
        g.add_node("pause", self._node_pause)
        g.add_node("finish", self._node_finish)

        g.set_entry_point("prepare")
        g.add_edge("prepare", "execute")

        g.add_conditional_edges(
            "execute",
            self._route_after_execute,
            {
                "continue": "execute",
                "pause": "pause",
                "finish": "finish",
            },
        )
        g.add_edge("pause", END)
        g.add_edge("finish", END)
        return g.compile()

    async def run(self, run_id: str) -> None:
        """Drive a claimed run until it finishes, pauses or is halted.

        Checkpoint persistence failures and plan exhaustion fail the run with
        their message. Other errors propagate to the caller.
        """
        state: _GraphState = {"run_id": run_id}
        try:
            await self._graph.ainvoke(state, config={"recursion_limit": GRAPH_RECURSION_LIMIT})
        except (CheckpointPersistenceError, PlanExhaustedError) as e:
            logger.error(f"Agent run {run_id} failed: {e}")
            log_error(type(e).__name__, str(e), {"run_id": run_id})
            await self._deps.runs.update_status(run_id, status=AgentRunStatus.failed, error_message=str(e))
            await self._deps.audit.error(run_id, "Agent run failed.", {"type": "run-failed", "error": str(e)})

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def _node_prepare(self, state: _GraphState) -> _GraphState:
        """Resolve the run context and the plan to execute."""
        deps = self._deps
        run_id = state["run_id"]
        run = await deps.runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)

        await deps.audit.info(run_id, "Agent loop started.", {"type": "loop-start", "model": run.model})
        browser_context = await deps.tools.browser_context(run_id)
        context = await prepare_run_context(
            run,
            store=deps.memory,
            runs=deps.runs,
            audit=deps.audit,
            default_model=deps.default_model,
            browser_context=browser_context,
        )
        checkpoint = self._checkpoints.load(run)
        if checkpoint is None or not checkpoint.steps:
            ctx = ExecutionContext(run=run, context=context, checkpoint=Checkpoint())
            await self._cold_start(ctx)
        else:
            ctx = ExecutionContext(run=run, context=context, checkpoint=checkpoint)
            await self._warm_start(ctx)

        settings = context.settings
        ctx.loop_guard = LoopGuard(
            threshold=settings.loop_guard_threshold,
            backoff_base_ms=settings.loop_backoff_base_ms,
            backoff_max_ms=settings.loop_backoff_max_ms,
        )
        return {"run_id": run_id, "ctx": ctx}

    async def _node_execute(self, state: _GraphState) -> _GraphState:
        """Execute one attempt of the active step."""
        route = await self._execute_step(state["ctx"])
        return {"run_id": state["run_id"], "ctx": state["ctx"], "_route": route}

    def _route_after_execute(self, state: _GraphState) -> str:
        """Route the graph after an execute iteration."""
        return state.get("_route", "finish")

    async def _node_pause(self, state: _GraphState) -> _GraphState:
        """Park the run until a person approves the pending step."""
        ctx = state["ctx"]
        step = ctx.current
        title = step.title if step else "unknown step"
        await self._persist(ctx)
        await self._deps.runs.update_status(
            ctx.run.id,
            status=AgentRunStatus.waiting_human,
            error_message=f"Approval required: {title}",
            requires_human_intervention=True,
        )
        await self._deps.audit.warning(
            ctx.run.id,
            "Approval required.",
            {
                "type": "approval-required",
                "stepId": ctx.checkpoint.approval_requested_step_id,
                "stepTitle": title,
            },
        )
        return state

    async def _node_finish(self, state: _GraphState) -> _GraphState:
        """Map the plan to a terminal status and run the final reviews."""
        ctx = state["ctx"]
        deps = self._deps
        run = ctx.run
        if ctx.halted:
            await deps.audit.info(run.id, "Agent loop halted.", {"type": "loop-halt"})
            return state

        cp = ctx.checkpoint
        cp.approval_requested_step_id = None
        cp.approval_granted_step_id = None
        status, error = self._terminal_status(ctx)
        await self._persist(ctx)

        if cp.steps:
            await deps.planner.verify_plan(
                run_id=run.id,
                model=ctx.context.planner_model,
                prompt=run.prompt,
                steps=cp.steps,
                memory=ctx.context.memory_context,
                browser_context=await deps.tools.browser_context(run.id),
            )
        await self._record_self_improvement(ctx, status)

        await deps.runs.update_status(
            run.id,
            status=status,
            error_message=error,
            requires_human_intervention=status == AgentRunStatus.waiting_human,
        )
        messages = {
            AgentRunStatus.completed: "Agent run completed.",
            AgentRunStatus.waiting_human: "Agent run waiting for human input.",
        }
        await deps.audit.log(
            run.id,
            "info" if status == AgentRunStatus.completed else "warning",
            messages.get(status, "Agent run failed."),
            {"type": "run-finish", "status": status.value, "error": error},
        )
        started_at = run.started_at or run.created_at
        log_agent_completion(run.id, status.value, (time.time() - started_at.timestamp()) * 1000)
        return state

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def _cold_start(self, ctx: ExecutionContext) -> None:
        deps = self._deps
        run = ctx.run
        context = ctx.context
        settings = context.settings
        result = await deps.planner.build_plan(
            PlanRequest(
                run_id=run.id,
                prompt=run.prompt,
                model=context.planner_model,
                memory=context.memory_context,
                browser_context=context.browser_context,
                max_steps=settings.max_steps,
                max_step_attempts=settings.max_step_attempts,
                repetition_model=context.loop_guard_model,
            )
        )
        if not result.steps:
            raise PlanExhaustedError("Planner produced no executable steps.")

        ctx.checkpoint = Checkpoint(
            steps=result.steps,
            active_step_id=result.steps[0].id,
            task_type=result.meta.task_type if result.meta else None,
            alternative_steps=result.branch_steps,
            settings=settings,
            preferences=context.preferences,
        )
        ctx.index = 0
        await deps.audit.info(
            run.id,
            "Plan created.",
            {
                "type": "plan",
                "steps": result.steps,
                "source": result.source,
                "decision": result.decision,
                "hierarchy": result.hierarchy,
                "plannerMeta": result.meta,
            },
        )
        if result.branch_steps:
            await deps.audit.info(
                run.id,
                "Plan branch created.",
                {"type": "plan-branch", "branchSteps": result.branch_steps, "reason": "plan-alternatives"},
            )
        await self._decide_search_first(ctx)
        await self._persist(ctx)

    async def _decide_search_first(self, ctx: ExecutionContext) -> None:
        run = ctx.run
        if not any(step.tool == StepTool.playwright for step in ctx.steps):
            return
        if EXPLICIT_URL_PATTERN.search(run.prompt):
            return
        host = prompt_target_host(run.prompt)
        model = ctx.context.planner_model
        decision = await self._deps.validators.decide_search_first(
            run.id,
            model,
            prompt=run.prompt,
            target_url=f"https://{host}" if host else None,
            has_explicit_url=False,
        )
        if decision is None or not decision.use_search_first:
            return
        query = decision.query or await self._deps.validators.build_search_query(run.id, model, prompt=run.prompt)
        if query:
            ctx.search_query = query
            ctx.hints["searchQuery"] = query

    async def _warm_start(self, ctx: ExecutionContext) -> None:
        deps = self._deps
        run = ctx.run
        cp = ctx.checkpoint
        context = ctx.context
        settings = context.settings
        for step in cp.steps:
            if step.status == StepStatus.in_progress:
                step.status = StepStatus.pending
        ctx.index = resolve_active_index(cp)
        await deps.audit.info(
            run.id,
            "Checkpoint loaded.",
            {"type": "checkpoint-load", "activeStepId": cp.active_step_id, "stepCount": len(cp.steps)},
        )

        if not cp.resume_pending:
            return

        review = await deps.planner.review_resume(
            model=context.planner_model,
            prompt=run.prompt,
            memory=context.memory_context,
            browser_context=context.browser_context,
            remaining_steps=cp.steps[ctx.index :],
            last_error=cp.last_error,
            max_steps=settings.max_steps,
            max_step_attempts=settings.max_step_attempts,
        )
        if review.should_replan and review.steps:
            self._replace_remaining(ctx, ctx.index, review.steps)
            if review.meta and review.meta.task_type:
                cp.task_type = review.meta.task_type
            await deps.audit.warning(
                run.id,
                "Resume plan refreshed.",
                {"type": "resume-replan", "steps": cp.steps, "reason": review.reason, "activeStepId": cp.active_step_id},
            )
        else:
            await deps.audit.info(
                run.id,
                "Resume summary prepared.",
                {"type": "resume-summary", "summary": review.summary, "reason": review.reason},
            )

        await self._update_brief(ctx, force=True)
        cp.resume_processed_at = cp.resume_requested_at
        await self._persist(ctx)

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    async def _execute_step(self, ctx: ExecutionContext) -> str:
        deps = self._deps
        run_id = ctx.run.id
        cp = ctx.checkpoint

        latest = await deps.runs.get(run_id)
        if latest is None or latest.status in _HALTED_STATUSES:
            ctx.halted = True
            if latest is not None:
                await self._persist(ctx)
            return "finish"

        step = ctx.current
        if step is None:
            return "finish"
        if step.status != StepStatus.pending:
            ctx.index += 1
            return "continue"

        gate = self._dependency_gate(ctx, step)
        if gate is not None:
            return await self._apply_dependency_gate(ctx, step, gate)

        if approval_pending(cp, ctx.context.preferences, step):
            decision = await deps.approvals.evaluate(
                run_id, step, prompt=ctx.prompt, model=ctx.context.approval_gate_model
            )
            if decision.required:
                cp.approval_requested_step_id = step.id
                cp.active_step_id = step.id
                return "pause"

        step.attempts += 1
        step.status = StepStatus.in_progress
        cp.active_step_id = step.id
        await self._persist(ctx)

        result = await self._run_tool(ctx, step)
        step_index = ctx.index

        if result.ok:
            await self._on_success(ctx, step, result)
        else:
            await self._on_failure(ctx, step, result)
        await self._update_brief(ctx)

        route = await self._guard_loop(ctx, step, step_index, result)
        if route is not None:
            return route

        if result.ok:
            return await self._after_success(ctx, step, step_index)
        if step.status == StepStatus.failed:
            return await self._recover(ctx, step, result)
        return "continue"

    def _dependency_gate(self, ctx: ExecutionContext, step: PlanStep) -> Optional[Tuple[str, Optional[int]]]:
        """``("skip", None)``, ``("defer", dep_index)`` or None when runnable."""
        if not step.depends_on:
            return None
        positions = {s.id: idx for idx, s in enumerate(ctx.steps)}
        defer_after: Optional[int] = None
        for dep_id in step.depends_on:
            idx = positions.get(dep_id)
            if idx is None:
                continue
            dep = ctx.steps[idx]
            if is_step_done(dep, ctx.checkpoint):
                continue
            if dep.status in (StepStatus.failed, StepStatus.skipped):
                return ("skip", None)
            if idx > ctx.index:
                defer_after = idx if defer_after is None else max(defer_after, idx)
        if defer_after is None:
            return None
        if ctx.deferrals.get(step.id, 0) >= MAX_DEFERRALS:
            return ("skip", None)
        return ("defer", defer_after)

    async def _apply_dependency_gate(
        self, ctx: ExecutionContext, step: PlanStep, gate: Tuple[str, Optional[int]]
    ) -> str:
        action, dep_index = gate
        cp = ctx.checkpoint
        if action == "skip":
            step.status = StepStatus.skipped
            ctx.index += 1
            cp.active_step_id = ctx.current.id if ctx.current else None
            await self._deps.audit.warning(
                ctx.run.id,
                "Step skipped.",
                {"type": "step-skip", "stepId": step.id, "stepTitle": step.title, "dependsOn": step.depends_on},
            )
        else:
            ctx.deferrals[step.id] = ctx.deferrals.get(step.id, 0) + 1
            steps = cp.steps
            steps.pop(ctx.index)
            steps.insert(dep_index, step)
            cp.active_step_id = ctx.current.id if ctx.current else None
            await self._deps.audit.info(
                ctx.run.id,
                "Step deferred.",
                {"type": "step-defer", "stepId": step.id, "stepTitle": step.title, "dependsOn": step.depends_on},
            )
        await self._persist(ctx)
        return "continue"

    async def _run_tool(self, ctx: ExecutionContext, step: PlanStep) -> ToolResult:
        deps = self._deps
        run_id = ctx.run.id
        if step.tool == StepTool.none:
            return ToolResult(ok=True, output="No tool required.")
        if not deps.tools.has(step.tool):
            return ToolResult(ok=False, error=f"No executor registered for tool '{step.tool.value}'.")

        task_type = ctx.checkpoint.task_type
        extraction = is_extraction_step(step, ctx.prompt, task_type)
        request = ToolRequest(
            run_id=run_id,
            step_id=step.id,
            title=step.title,
            tool=step.tool,
            attempt=step.attempts,
            prompt=append_task_type_to_prompt(ctx.prompt, TaskType.extract_info if extraction else task_type),
            expected_observation=step.expected_observation,
            success_criteria=step.success_criteria,
            extraction=extraction,
            hints=dict(ctx.hints),
        )
        tool_context = {
            "type": "tool-execution",
            "toolName": step.tool.value,
            "stepId": step.id,
            "stepTitle": step.title,
            "attempt": step.attempts,
            "extraction": extraction,
        }
        await deps.audit.info(run_id, "Tool execution started.", tool_context)

        started = time.monotonic()
        timeout = deps.tool_timeout_seconds
        try:
            result = await asyncio.wait_for(deps.tools.get(step.tool).execute(request), timeout=timeout)
        except asyncio.TimeoutError:
            result = ToolResult(
                ok=False,
                error=f"Tool execution timed out after {timeout:g}s.",
                failure_type=ToolFailureType.timeout,
            )
        except ToolExecutionError as e:
            result = ToolResult(ok=False, error=str(e), failure_type=_failure_type(e.failure_type))
        await deps.audit.log(
            run_id,
            "info" if result.ok else "error",
            "Tool execution finished.",
            {
                **tool_context,
                "ok": result.ok,
                "error": result.error,
                "failureType": result.failure_type,
                "durationMs": int((time.monotonic() - started) * 1000),
            },
        )
        if result.ok and extraction:
            result = await self._validate_extraction(ctx, step, result)
        return result

    async def _validate_extraction(self, ctx: ExecutionContext, step: PlanStep, result: ToolResult) -> ToolResult:
        deps = self._deps
        run_id = ctx.run.id
        model = ctx.context.resolved_model
        extraction_type = extraction_type_for(ctx.prompt, step)
        required = required_item_count(ctx.prompt)
        items = await deps.validators.normalize_extraction_items(
            prompt=ctx.prompt, extraction_type=extraction_type, items=result.items, model=model
        )
        evidence = [
            EvidenceItem(item=e["item"], snippet=e["snippet"])
            for e in result.evidence
            if isinstance(e.get("item"), str) and isinstance(e.get("snippet"), str)
        ]
        browser = await deps.tools.browser_context(run_id) or {}
        validation = await deps.validators.validate_extraction(
            run_id,
            model,
            prompt=ctx.prompt,
            url=result.url or browser.get("url"),
            extraction_type=extraction_type,
            required_count=required,
            items=items,
            dom_text_sample=browser.get("domTextSample") or "",
            target_hostname=prompt_target_host(ctx.prompt),
            evidence=evidence,
            step_id=step.id,
            step_label=step.title,
        )
        if validation.valid:
            return replace(result, items=validation.accepted_items or items)
        detail = "; ".join(validation.issues) or f"missing {validation.missing_count} item(s)"
        return replace(
            result,
            ok=False,
            error=f"Extraction validation failed: {detail}",
            failure_type=ToolFailureType.missing_extraction,
            items=validation.accepted_items,
        )

    async def _on_success(self, ctx: ExecutionContext, step: PlanStep, result: ToolResult) -> None:
        deps = self._deps
        cp = ctx.checkpoint
        step.status = StepStatus.completed
        cp.last_error = None
        ctx.hints = {}
        if ctx.search_query and result.search_results:
            url = await deps.validators.pick_search_result(
                ctx.run.id,
                ctx.context.planner_model,
                query=ctx.search_query,
                prompt=ctx.prompt,
                results=result.search_results,
            )
            ctx.search_query = None
            if url:
                ctx.hints["targetUrl"] = url
        ctx.index += 1
        cp.active_step_id = ctx.current.id if ctx.current else None
        await deps.audit.info(
            ctx.run.id,
            "Plan updated.",
            {"type": "plan-update", "result": "completed", "stepId": step.id, "activeStepId": cp.active_step_id},
        )
        await self._persist(ctx)

    async def _on_failure(self, ctx: ExecutionContext, step: PlanStep, result: ToolResult) -> None:
        deps = self._deps
        cp = ctx.checkpoint
        error = result.error or "Tool failed."
        cp.last_error = error
        final = step.attempts >= step.max_attempts
        step.status = StepStatus.failed if final else StepStatus.pending
        cp.active_step_id = step.id
        await deps.audit.log(
            ctx.run.id,
            "error" if final else "warning",
            "Step failed." if final else "Step attempt failed.",
            {
                "type": "step-failed" if final else "step-retry",
                "stepId": step.id,
                "stepTitle": step.title,
                "attempts": step.attempts,
                "maxAttempts": step.max_attempts,
                "error": error,
                "failureType": result.failure_type,
            },
        )
        await self._persist(ctx)

    # ------------------------------------------------------------------
    # Reviews after a step
    # ------------------------------------------------------------------

    async def _guard_loop(
        self, ctx: ExecutionContext, step: PlanStep, step_index: int, result: ToolResult
    ) -> Optional[str]:
        deps = self._deps
        cp = ctx.checkpoint
        settings = ctx.settings
        guard = ctx.loop_guard
        ctx.traces = record_trace(
            ctx.traces,
            StepTrace(
                title=step.title,
                status=StepStatus.completed if result.ok else StepStatus.failed,
                tool=step.tool.value,
                url=result.url,
                error=None if result.ok else result.error,
            ),
        )
        signal = detect_loop_pattern(ctx.traces)
        if guard is None or not guard.observe(signal):
            return None

        await deps.audit.warning(
            ctx.run.id,
            "Loop guard backoff applied.",
            {"type": "loop-backoff", "backoffMs": guard.backoff_ms, "streak": guard.streak, "loop": signal},
        )
        await deps.sleep(guard.backoff_ms / 1000)
        if not guard.can_review or cp.replan_count >= settings.max_replan_calls:
            return None

        browser = await deps.tools.browser_context(ctx.run.id)
        review = await deps.planner.loop_guard_review(
            run_id=ctx.run.id,
            model=ctx.context.loop_guard_model,
            prompt=ctx.prompt,
            memory=ctx.context.memory_context,
            browser_context=browser,
            steps=cp.steps,
            completed_index=step_index,
            loop_signal=signal.model_dump(mode="json"),
            last_error=cp.last_error,
            max_steps=settings.max_steps,
            max_step_attempts=settings.max_step_attempts,
        )
        guard.reviewed()
        if review.action == "wait_human":
            ctx.requires_human = True
            cp.last_error = review.reason or "Loop guard requested human input."
            await self._persist(ctx)
            return "finish"
        if review.action == "replan" and review.steps:
            if step.status == StepStatus.failed:
                cp.recovered_step_ids.append(step.id)
            position = step_index if step.status == StepStatus.pending else step_index + 1
            self._replace_remaining(ctx, position, await self._guard_repetition(ctx, position, review.steps))
            cp.replan_count += 1
            cp.last_error = None
            await deps.audit.warning(
                ctx.run.id,
                "Plan re-evaluated.",
                {"type": "plan-replan", "steps": cp.steps, "reason": review.reason or "loop-guard", "stepId": step.id},
            )
            await self._persist(ctx)
            return "continue"
        return None

    async def _after_success(self, ctx: ExecutionContext, step: PlanStep, step_index: int) -> str:
        deps = self._deps
        cp = ctx.checkpoint
        settings = ctx.settings
        context = ctx.context
        replanned = False

        if (
            should_evaluate_replan(step_index, cp.steps, settings.replan_every_steps)
            and cp.replan_count < settings.max_replan_calls
        ):
            review = await deps.planner.review_plan(
                model=context.planner_model,
                prompt=ctx.prompt,
                memory=context.memory_context,
                browser_context=await deps.tools.browser_context(ctx.run.id),
                steps=cp.steps,
                current_index=step_index,
                last_error=cp.last_error,
                trigger="periodic",
                signals=[f"Completed step: {step.title}"],
                max_steps=settings.max_steps,
                max_step_attempts=settings.max_step_attempts,
            )
            if review.should_replan and review.steps:
                guarded = await self._guard_repetition(ctx, step_index + 1, review.steps)
                self._replace_remaining(ctx, step_index + 1, guarded)
                cp.replan_count += 1
                replanned = True
                if review.meta and review.meta.task_type:
                    cp.task_type = review.meta.task_type
                await deps.audit.warning(
                    ctx.run.id,
                    "Plan re-evaluated.",
                    {"type": "plan-replan", "steps": cp.steps, "reason": review.reason or "periodic", "stepId": step.id},
                )
                await self._persist(ctx)

        completed = sum(1 for s in cp.steps if s.status == StepStatus.completed)
        if not replanned and completed % MID_RUN_INTERVAL == 0 and cp.replan_count < settings.max_replan_calls:
            adaptation = await deps.planner.mid_run_adaptation(
                model=context.planner_model,
                prompt=ctx.prompt,
                memory=context.memory_context,
                browser_context=await deps.tools.browser_context(ctx.run.id),
                steps=cp.steps,
                current_index=step_index,
                last_error=cp.last_error,
                max_steps=settings.max_steps,
                max_step_attempts=settings.max_step_attempts,
            )
            if adaptation.should_replan and adaptation.steps:
                guarded = await self._guard_repetition(ctx, step_index + 1, adaptation.steps)
                self._replace_remaining(ctx, step_index + 1, guarded)
                cp.replan_count += 1
                await deps.audit.warning(
                    ctx.run.id,
                    "Plan adapted mid-run.",
                    {"type": "plan-adapt", "steps": cp.steps, "reason": adaptation.reason, "stepId": step.id},
                )
                await self._persist(ctx)

        if ctx.self_check_count < settings.max_self_checks:
            ctx.self_check_count += 1
            check = await deps.planner.self_check(
                model=context.self_check_model,
                prompt=ctx.prompt,
                memory=context.memory_context,
                browser_context=await deps.tools.browser_context(ctx.run.id),
                step=step,
                steps=cp.steps,
                last_error=cp.last_error,
                max_steps=settings.max_steps,
                max_step_attempts=settings.max_step_attempts,
            )
            await deps.audit.info(
                ctx.run.id,
                "Self-check completed.",
                {
                    "type": "self-check",
                    "stepId": step.id,
                    "stepTitle": step.title,
                    "action": check.action,
                    "reason": check.reason,
                    "notes": check.notes,
                    "questions": check.questions,
                    "blockers": check.blockers,
                    "confidence": check.confidence,
                },
            )
            if check.action == "wait_human":
                ctx.requires_human = True
                cp.last_error = check.reason or "Self-check requested human input."
                await self._persist(ctx)
                return "finish"
            if check.action == "replan" and check.steps:
                guarded = await self._guard_repetition(ctx, step_index + 1, check.steps)
                self._replace_remaining(ctx, step_index + 1, guarded)
                await deps.audit.warning(
                    ctx.run.id,
                    "Plan replaced by self-check.",
                    {"type": "self-check-replan", "steps": cp.steps, "reason": check.reason, "stepId": step.id},
                )
                await self._persist(ctx)

        await self._maybe_summarize(ctx)
        return "continue"

    async def _maybe_summarize(self, ctx: ExecutionContext) -> None:
        deps = self._deps
        cp = ctx.checkpoint
        completed = sum(1 for s in cp.steps if s.status == StepStatus.completed)
        if completed - cp.summary_checkpoint < SUMMARY_INTERVAL:
            return
        session = [item.content for item in await deps.memory.list_memory(ctx.run.id, limit=SESSION_CONTEXT_ITEMS)]
        summary = await deps.planner.summarize_memory(
            run_id=ctx.run.id,
            model=ctx.context.memory_summarization_model,
            prompt=ctx.prompt,
            memory=session,
            steps=cp.steps,
        )
        cp.summary_checkpoint = completed
        if summary:
            await deps.memory.add_memory(ctx.run.id, summary, {"source": "planner-summary"})
            ctx.context.memory_context = [*ctx.context.memory_context, summary][-MAX_CONTEXT_ENTRIES:]
        await self._persist(ctx)

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def _recover(self, ctx: ExecutionContext, step: PlanStep, result: ToolResult) -> str:
        deps = self._deps
        run = ctx.run
        cp = ctx.checkpoint
        context = ctx.context
        settings = ctx.settings
        error = cp.last_error or "Tool failed."
        failed_index = ctx.index

        if result.failure_type in _RECOVERABLE_FAILURES:
            browser = await deps.tools.browser_context(run.id) or {}
            plan = await deps.validators.build_failure_recovery_plan(
                run.id,
                context.resolved_model,
                failure_type=result.failure_type.value,
                prompt=run.prompt,
                url=result.url or browser.get("url"),
                dom_text_sample=browser.get("domTextSample") or "",
                ui_inventory=browser.get("uiInventory"),
                step_id=step.id,
            )
            if plan is not None:
                ctx.hints["recovery"] = plan.model_dump(exclude_none=True)

        if step.id not in cp.branched_step_ids:
            cp.branched_step_ids.append(step.id)
            branch = await deps.planner.build_plan(
                PlanRequest(
                    run_id=run.id,
                    prompt=run.prompt,
                    model=context.planner_model,
                    memory=context.memory_context,
                    browser_context=await deps.tools.browser_context(run.id),
                    max_steps=settings.max_steps,
                    max_step_attempts=settings.max_step_attempts,
                    mode="branch",
                    failed_step=step,
                    last_error=error,
                    task_type=cp.task_type,
                )
            )
            branch_steps = branch.branch_steps
            if not branch_steps and cp.alternative_steps:
                branch_steps, cp.alternative_steps = cp.alternative_steps, []
            if branch_steps:
                insert_at = failed_index + 1
                cp.steps[insert_at:insert_at] = branch_steps
                cp.recovered_step_ids.append(step.id)
                ctx.index = insert_at
                cp.active_step_id = branch_steps[0].id
                await deps.audit.warning(
                    run.id,
                    "Plan branch created.",
                    {
                        "type": "plan-branch",
                        "failedStepId": step.id,
                        "branchSteps": branch_steps,
                        "reason": "step-failed",
                        "lastError": error,
                    },
                )
                await self._remember_recovery(ctx, step, error, "Created branch steps for failed step.", "branch")
                await self._persist(ctx)
                return "continue"

        if cp.replan_count < settings.max_replan_calls:
            replan = await deps.planner.build_plan(
                PlanRequest(
                    run_id=run.id,
                    prompt=run.prompt,
                    model=context.planner_model,
                    memory=[*context.memory_context, f"Last error: {error}"],
                    browser_context=await deps.tools.browser_context(run.id),
                    max_steps=settings.max_steps,
                    max_step_attempts=settings.max_step_attempts,
                    last_error=error,
                    task_type=cp.task_type,
                    repetition_model=context.loop_guard_model,
                )
            )
            if replan.steps:
                cp.steps = replan.steps
                cp.alternative_steps = replan.branch_steps
                cp.replan_count += 1
                if replan.meta and replan.meta.task_type:
                    cp.task_type = replan.meta.task_type
                ctx.index = 0
                cp.active_step_id = replan.steps[0].id
                await deps.audit.warning(
                    run.id,
                    "Plan created.",
                    {
                        "type": "plan",
                        "steps": replan.steps,
                        "source": replan.source,
                        "reason": "replan-after-failure",
                        "hierarchy": replan.hierarchy,
                        "plannerMeta": replan.meta,
                    },
                )
                await self._remember_recovery(ctx, step, error, "Replanned after failure.", "replan")
                await self._persist(ctx)
                return "continue"

        ctx.requires_human = bool(HUMAN_REQUIRED_PATTERN.search(error))
        return "finish"

    async def _remember_recovery(
        self, ctx: ExecutionContext, step: PlanStep, problem: str, countermeasure: str, tag: str
    ) -> None:
        context = ctx.context
        await add_problem_solution_memory(
            self._deps.memory,
            memory_key=context.memory_key,
            run_id=ctx.run.id,
            problem=problem,
            countermeasure=countermeasure,
            validation_model=context.memory_validation_model,
            context={"stepId": step.id, "stepTitle": step.title},
            tags=[tag],
            prompt=ctx.prompt,
            summarization_model=context.memory_summarization_model,
        )

    # ------------------------------------------------------------------
    # Finish
    # ------------------------------------------------------------------

    def _terminal_status(self, ctx: ExecutionContext) -> Tuple[AgentRunStatus, Optional[str]]:
        cp = ctx.checkpoint
        if ctx.requires_human:
            return AgentRunStatus.waiting_human, cp.last_error or "Human input required."
        if cp.steps and all(is_step_done(s, cp) for s in cp.steps):
            return AgentRunStatus.completed, None
        error = cp.last_error or "Plan did not complete."
        if HUMAN_REQUIRED_PATTERN.search(error):
            return AgentRunStatus.waiting_human, error
        return AgentRunStatus.failed, error

    async def _record_self_improvement(self, ctx: ExecutionContext, status: AgentRunStatus) -> None:
        deps = self._deps
        run = ctx.run
        context = ctx.context
        review = await deps.planner.self_improvement_review(
            run_id=run.id,
            model=context.planner_model,
            prompt=run.prompt,
            status=status.value,
            steps=ctx.steps,
            last_error=ctx.checkpoint.last_error,
            memory=context.memory_context,
        )
        if review is None:
            return
        lines: List[str] = ["Self-improvement review", review.summary]
        for label, values in (
            ("Mistakes", review.mistakes),
            ("Improvements", review.improvements),
            ("Guardrails", review.guardrails),
            ("Tool adjustments", review.tool_adjustments),
        ):
            if values:
                lines.append(f"{label}: {' | '.join(values)}")
        content = "\n".join(lines)
        await deps.memory.add_memory(run.id, content, {"source": "self-improvement"})
        metadata: Dict[str, Any] = {
            "status": status.value,
            "mistakes": review.mistakes,
            "improvements": review.improvements,
            "guardrails": review.guardrails,
            "toolAdjustments": review.tool_adjustments,
        }
        await deps.memory.validate_and_add_long_term_memory(
            memory_key=context.memory_key,
            run_id=run.id,
            content=content,
            summary=review.summary,
            tags=["self-improvement"],
            metadata=metadata,
            importance=3,
            validation_model=context.memory_validation_model,
            prompt=run.prompt,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _replace_remaining(self, ctx: ExecutionContext, position: int, new_steps: List[PlanStep]) -> None:
        """Replace the plan from ``position`` onward, within the step budget."""
        cp = ctx.checkpoint
        slots = max(1, ctx.settings.max_steps - position)
        cp.steps = [*cp.steps[:position], *new_steps[:slots]]
        ctx.index = position
        cp.active_step_id = cp.steps[position].id if position < len(cp.steps) else None

    async def _guard_repetition(
        self, ctx: ExecutionContext, position: int, candidates: List[PlanStep]
    ) -> List[PlanStep]:
        cp = ctx.checkpoint
        settings = ctx.settings
        return await self._deps.planner.guard_repetition(
            run_id=ctx.run.id,
            model=ctx.context.loop_guard_model,
            prompt=ctx.prompt,
            completed_steps=[s for s in cp.steps[:position] if s.status == StepStatus.completed],
            current_plan=cp.steps,
            candidate_steps=candidates,
            max_steps=max(1, settings.max_steps - position),
            max_step_attempts=settings.max_step_attempts,
        )

    async def _update_brief(self, ctx: ExecutionContext, *, force: bool = False) -> None:
        """Refresh the checkpoint brief when the active step or the last error moved."""
        cp = ctx.checkpoint
        key = (cp.active_step_id, cp.last_error)
        if cp.active_step_id is None or (key == ctx.brief_key and not force):
            return
        ctx.brief_key = key
        brief = await self._deps.planner.checkpoint_brief(
            run_id=ctx.run.id,
            model=ctx.context.memory_summarization_model,
            prompt=ctx.prompt,
            steps=cp.steps,
            last_error=cp.last_error,
            browser_context=await self._deps.tools.browser_context(ctx.run.id),
            active_step_id=cp.active_step_id,
        )
        if brief is None:
            return
        cp.checkpoint_brief = brief.summary
        cp.checkpoint_next_actions = brief.next_actions
        cp.checkpoint_risks = brief.risks
        cp.checkpoint_step_id = cp.active_step_id
        cp.checkpoint_created_at = _utc_now()
        await self._persist(ctx)

    async def _persist(self, ctx: ExecutionContext) -> None:
        await self._checkpoints.persist(ctx.run.id, ctx.checkpoint)

