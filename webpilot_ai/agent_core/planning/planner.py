"""Model-backed planning for agent runs.

This module defines ``LLMPlanner``, the planner used by the execution loop.

Responsibilities
----------------

- Turn a prompt, memory context and browser snapshot into an ordered list of
  ``PlanStep`` records (``build_plan``), either as a fresh plan or as a
  recovery branch for a failed step.
- Refine a fresh plan before it runs: expand a flat reply into a goal
  hierarchy, enrich the hierarchy, drop duplicate steps, guard against
  repeated work, grade the plan (a score below ``PLAN_SCORE_THRESHOLD``
  swaps in the revised steps) and optimize the step order.
- Review a running plan at periodic checkpoints and on resume, optionally
  producing replacement steps (``review_plan`` / ``review_resume``).
- Provide the auxiliary reviews the loop consults: post-step self checks,
  final verification, self-improvement notes, memory summaries and
  checkpoint briefs.

Failure semantics
-----------------

The planner never raises because of the model. Any gateway error or
undecodable reply is logged at debug level and converted into the documented
fallback: keyword-driven steps for ``build_plan``, "no replan" for reviews,
``continue`` for self checks and ``None`` for the optional reviews. The
refinement calls return the plan they were given unchanged.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import Field

from ..audit import AuditLogger
from ..gateway import ModelGateway, request_json
from ..schemas.base import BaseSchema
from ..schemas.domain import AuditLevel, TaskType
from ..schemas.planning import AgentDecision, PlanHierarchy, PlannerMeta, PlanStep, StepSpec
from . import prompts
from .utils import (
    MAX_BRANCH_STEPS,
    build_branch_steps_from_alternatives,
    build_fallback_steps,
    build_plan_steps_from_specs,
    coerce_step_spec,
    decide_next_action,
    flatten_plan_hierarchy,
    normalize_decision,
    normalize_plan_hierarchy,
    normalize_planner_meta,
    normalize_string_list,
)

logger = logging.getLogger(__name__)

MAX_BRANCH_STEP_SPECS = 4
PLANNER_TEMPERATURE = 0.2
PLAN_SCORE_THRESHOLD = 70


class PlanRequest(BaseSchema):
    run_id: str
    prompt: str
    model: str
    memory: List[str] = Field(default_factory=list)
    browser_context: Optional[Dict[str, Any]] = None
    max_steps: int = 12
    max_step_attempts: int = 2
    mode: Literal["plan", "branch"] = "plan"
    failed_step: Optional[PlanStep] = None
    last_error: Optional[str] = None
    task_type: Optional[TaskType] = None
    repetition_model: Optional[str] = None


class PlanResult(BaseSchema):
    steps: List[PlanStep] = Field(default_factory=list)
    decision: AgentDecision
    source: Literal["llm", "heuristic"]
    hierarchy: Optional[PlanHierarchy] = None
    meta: Optional[PlannerMeta] = None
    branch_steps: List[PlanStep] = Field(default_factory=list)


class PlanReview(BaseSchema):
    should_replan: bool = False
    reason: Optional[str] = None
    summary: Optional[str] = None
    steps: List[PlanStep] = Field(default_factory=list)
    hierarchy: Optional[PlanHierarchy] = None
    meta: Optional[PlannerMeta] = None


class SelfCheckReview(BaseSchema):
    action: Literal["continue", "replan", "wait_human"] = "continue"
    reason: Optional[str] = None
    notes: List[str] = Field(default_factory=list)
    questions: List[str] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None
    steps: List[PlanStep] = Field(default_factory=list)


class PlanEvaluation(BaseSchema):
    score: float = 100.0
    issues: List[str] = Field(default_factory=list)
    revised_steps: List[PlanStep] = Field(default_factory=list)


class PlanVerification(BaseSchema):
    verdict: Literal["pass", "partial", "fail"]
    evidence: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)
    follow_up: Optional[str] = None


class SelfImprovementReview(BaseSchema):
    summary: str
    mistakes: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    guardrails: List[str] = Field(default_factory=list)
    tool_adjustments: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None


class CheckpointBrief(BaseSchema):
    summary: str
    next_actions: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _confidence(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return min(max(float(value), 0.0), 1.0)


def step_view(step: PlanStep) -> Dict[str, Any]:
    """Compact JSON view of a step for model payloads."""
    return step.model_dump(
        mode="json",
        by_alias=True,
        include={"id", "title", "status", "tool", "expected_observation", "success_criteria", "phase", "attempts"},
    )


def _specs_from(parsed: Dict[str, Any], hierarchy: Optional[PlanHierarchy], key: str = "steps") -> List[StepSpec]:
    if hierarchy is not None:
        return flatten_plan_hierarchy(hierarchy)
    raw = parsed.get(key)
    if not isinstance(raw, list):
        return []
    return [coerce_step_spec(item) for item in raw]


class LLMPlanner:
    """Planner backed by a ``ModelGateway``.

    Every public method takes the model id explicitly so callers can route
    reviews to dedicated models (planner, self-check, summarization).
    """

    def __init__(self, gateway: ModelGateway, audit: AuditLogger) -> None:
        self._gateway = gateway
        self._audit = audit

    async def _ask(
        self, *, model: str, system_prompt: str, payload: Dict[str, Any], purpose: str
    ) -> Optional[Dict[str, Any]]:
        try:
            return await request_json(
                self._gateway,
                model=model,
                system_prompt=system_prompt,
                payload=payload,
                temperature=PLANNER_TEMPERATURE,
            )
        except Exception as e:
            logger.debug(f"Planner {purpose} call failed for model '{model}': {e}")
            return None

    # ------------------------------------------------------------------
    # Plans and branches
    # ------------------------------------------------------------------

    def _fallback(self, request: PlanRequest) -> PlanResult:
        steps = [] if request.mode == "branch" else build_fallback_steps(
            request.prompt, request.max_steps, request.max_step_attempts
        )
        decision = (
            normalize_decision(None, steps, request.prompt, request.memory)
            if steps
            else decide_next_action(request.prompt, request.memory)
        )
        return PlanResult(steps=steps, decision=decision, source="heuristic")

    async def build_plan(self, request: PlanRequest) -> PlanResult:
        """Build a plan (``mode="plan"``) or recovery branch (``mode="branch"``).

        Args:
            request: Prompt, context and budgets for the plan.

        Returns:
            A ``PlanResult``. ``source`` is ``"heuristic"`` whenever the model
            produced nothing usable.
        """
        system_prompt = (
            prompts.branch_prompt(MAX_BRANCH_STEP_SPECS)
            if request.mode == "branch"
            else prompts.plan_prompt(request.max_steps)
        )
        payload: Dict[str, Any] = {
            "prompt": request.prompt,
            "memory": request.memory,
            "browserContext": request.browser_context,
            "maxSteps": request.max_steps,
        }
        if request.task_type is not None:
            payload["taskType"] = request.task_type.value
        if request.mode == "branch":
            payload["failedStep"] = step_view(request.failed_step) if request.failed_step else None
            payload["lastError"] = request.last_error

        parsed = await self._ask(
            model=request.model, system_prompt=system_prompt, payload=payload, purpose=request.mode
        )
        if parsed is None:
            return self._fallback(request)

        meta = normalize_planner_meta(parsed)
        hierarchy = normalize_plan_hierarchy(parsed)

        if request.mode == "branch":
            key = "branchSteps" if isinstance(parsed.get("branchSteps"), list) else "steps"
            specs = _specs_from(parsed, None, key)[:MAX_BRANCH_STEP_SPECS]
            branch = build_plan_steps_from_specs(
                [s.model_copy(update={"phase": s.phase or "recover"}) for s in specs],
                None,
                False,
                request.max_step_attempts,
            )
            if not branch:
                branch = build_branch_steps_from_alternatives(
                    meta.alternatives, request.max_step_attempts, MAX_BRANCH_STEP_SPECS
                )
            decision = normalize_decision(parsed.get("decision"), branch, request.prompt, request.memory)
            return PlanResult(
                decision=decision,
                source="llm" if branch else "heuristic",
                meta=meta,
                branch_steps=branch,
            )

        flat = _specs_from(parsed, None)
        if hierarchy is None and flat:
            hierarchy = await self.expand_hierarchy(
                run_id=request.run_id, model=request.model, prompt=request.prompt, specs=flat
            )
        if hierarchy is not None:
            enriched = await self.enrich_hierarchy(
                run_id=request.run_id, model=request.model, prompt=request.prompt, hierarchy=hierarchy
            )
            hierarchy = enriched or hierarchy

        specs = _specs_from(parsed, hierarchy)[: request.max_steps]
        if not specs:
            return self._fallback(request).model_copy(update={"meta": meta})

        steps = build_plan_steps_from_specs(specs, meta, True, request.max_step_attempts)
        steps = await self._refine(request, steps)
        branch = build_branch_steps_from_alternatives(meta.alternatives, request.max_step_attempts, MAX_BRANCH_STEPS)
        decision = normalize_decision(parsed.get("decision"), steps, request.prompt, request.memory)
        return PlanResult(
            steps=steps,
            decision=decision,
            source="llm",
            hierarchy=hierarchy,
            meta=meta,
            branch_steps=branch,
        )

    # ------------------------------------------------------------------
    # Plan refinement
    # ------------------------------------------------------------------

    async def _refine(self, request: PlanRequest, steps: List[PlanStep]) -> List[PlanStep]:
        limit = max(request.max_steps, len(steps))
        guard_model = request.repetition_model or request.model
        steps = await self.dedupe_steps(
            run_id=request.run_id,
            model=guard_model,
            prompt=request.prompt,
            steps=steps,
            max_step_attempts=request.max_step_attempts,
        )
        steps = await self.guard_repetition(
            run_id=request.run_id,
            model=guard_model,
            prompt=request.prompt,
            completed_steps=[],
            current_plan=steps,
            candidate_steps=steps,
            max_steps=limit,
            max_step_attempts=request.max_step_attempts,
        )
        evaluation = await self.evaluate_plan(
            run_id=request.run_id,
            model=request.model,
            prompt=request.prompt,
            steps=steps,
            memory=request.memory,
            browser_context=request.browser_context,
            max_steps=limit,
            max_step_attempts=request.max_step_attempts,
        )
        if evaluation is not None and evaluation.score < PLAN_SCORE_THRESHOLD and evaluation.revised_steps:
            steps = evaluation.revised_steps
        return await self.optimize_plan(
            model=request.model,
            prompt=request.prompt,
            steps=steps,
            max_steps=limit,
            max_step_attempts=request.max_step_attempts,
        )

    async def expand_hierarchy(
        self, *, run_id: str, model: str, prompt: str, specs: Sequence[StepSpec]
    ) -> Optional[PlanHierarchy]:
        """Group a flat step list into goals and subgoals, or ``None``."""
        payload = {
            "prompt": prompt,
            "steps": [s.model_dump(mode="json", by_alias=True, exclude_none=True) for s in specs],
        }
        parsed = await self._ask(
            model=model, system_prompt=prompts.PLAN_EXPAND_PROMPT, payload=payload, purpose="expand"
        )
        hierarchy = normalize_plan_hierarchy(parsed) if parsed else None
        if hierarchy is None or not flatten_plan_hierarchy(hierarchy):
            return None
        await self._audit.info(
            run_id, "Plan hierarchy expanded.", {"type": "plan-hierarchy", "goals": len(hierarchy.goals)}
        )
        return hierarchy

    async def enrich_hierarchy(
        self, *, run_id: str, model: str, prompt: str, hierarchy: PlanHierarchy
    ) -> Optional[PlanHierarchy]:
        """Fill in criteria, phases and dependencies; ``None`` keeps the input."""
        payload = {"prompt": prompt, "hierarchy": hierarchy.model_dump(mode="json", by_alias=True)}
        parsed = await self._ask(
            model=model, system_prompt=prompts.PLAN_ENRICH_PROMPT, payload=payload, purpose="enrich"
        )
        enriched = normalize_plan_hierarchy(parsed) if parsed else None
        if enriched is None or not flatten_plan_hierarchy(enriched):
            return None
        await self._audit.info(
            run_id, "Plan hierarchy enriched.", {"type": "plan-hierarchy", "goals": len(enriched.goals)}
        )
        return enriched

    async def dedupe_steps(
        self,
        *,
        run_id: str,
        model: str,
        prompt: str,
        steps: Sequence[PlanStep],
        max_step_attempts: int = 2,
    ) -> List[PlanStep]:
        """Drop duplicate steps. The result is never longer than the input."""
        if len(steps) < 2:
            return list(steps)
        payload = {"prompt": prompt, "steps": [step_view(s) for s in steps]}
        parsed = await self._ask(
            model=model, system_prompt=prompts.PLAN_DEDUPE_PROMPT, payload=payload, purpose="dedupe"
        )
        specs = _specs_from(parsed, None) if parsed else []
        deduped = build_plan_steps_from_specs(specs[: len(steps)], None, False, max_step_attempts)
        if not deduped:
            return list(steps)
        await self._audit.info(
            run_id,
            "Plan dedupe completed.",
            {"type": "plan-dedupe", "beforeCount": len(steps), "afterCount": len(deduped)},
        )
        return deduped

    async def guard_repetition(
        self,
        *,
        run_id: str,
        model: str,
        prompt: str,
        completed_steps: Sequence[PlanStep],
        current_plan: Sequence[PlanStep],
        candidate_steps: Sequence[PlanStep],
        max_steps: int,
        max_step_attempts: int = 2,
    ) -> List[PlanStep]:
        """Rework candidate steps that would repeat finished work.

        Runs only for two or more candidates. An unusable reply keeps the
        candidates as they are.
        """
        if len(candidate_steps) < 2:
            return list(candidate_steps)
        payload = {
            "prompt": prompt,
            "completedSteps": [step_view(s) for s in completed_steps],
            "currentPlan": [step_view(s) for s in current_plan],
            "candidateSteps": [step_view(s) for s in candidate_steps],
            "maxSteps": max_steps,
        }
        parsed = await self._ask(
            model=model, system_prompt=prompts.REPETITION_GUARD_PROMPT, payload=payload, purpose="repetition-guard"
        )
        specs = _specs_from(parsed, None) if parsed else []
        guarded = build_plan_steps_from_specs(specs[:max_steps], None, False, max_step_attempts)
        if not guarded:
            return list(candidate_steps)
        await self._audit.info(
            run_id,
            "Repetition guard applied.",
            {
                "type": "repetition-guard",
                "reason": _text(parsed.get("reason")),
                "beforeCount": len(candidate_steps),
                "afterCount": len(guarded),
            },
        )
        return guarded

    async def evaluate_plan(
        self,
        *,
        run_id: str,
        model: str,
        prompt: str,
        steps: Sequence[PlanStep],
        memory: Sequence[str],
        browser_context: Optional[Dict[str, Any]],
        max_steps: int = 12,
        max_step_attempts: int = 2,
    ) -> Optional[PlanEvaluation]:
        """Grade a plan from 0 to 100. A missing score counts as 100."""
        payload = {
            "prompt": prompt,
            "steps": [step_view(s) for s in steps],
            "memory": list(memory),
            "browserContext": browser_context,
        }
        parsed = await self._ask(
            model=model, system_prompt=prompts.PLAN_EVALUATION_PROMPT, payload=payload, purpose="evaluate"
        )
        if parsed is None:
            return None
        score = parsed.get("score")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            score = 100.0
        revised = build_plan_steps_from_specs(
            _specs_from(parsed, None, "revisedSteps")[:max_steps], None, False, max_step_attempts
        )
        evaluation = PlanEvaluation(
            score=min(max(float(score), 0.0), 100.0),
            issues=normalize_string_list(parsed.get("issues")),
            revised_steps=revised,
        )
        await self._audit.log(
            run_id,
            AuditLevel.info if evaluation.score >= PLAN_SCORE_THRESHOLD else AuditLevel.warning,
            "Plan evaluated.",
            {
                "type": "plan-evaluation",
                "score": evaluation.score,
                "issues": evaluation.issues,
                "revisedSteps": len(revised),
            },
        )
        return evaluation

    async def optimize_plan(
        self,
        *,
        model: str,
        prompt: str,
        steps: Sequence[PlanStep],
        max_steps: int = 12,
        max_step_attempts: int = 2,
    ) -> List[PlanStep]:
        if len(steps) < 2:
            return list(steps)
        payload = {"prompt": prompt, "steps": [step_view(s) for s in steps], "maxSteps": max_steps}
        parsed = await self._ask(
            model=model, system_prompt=prompts.PLAN_OPTIMIZE_PROMPT, payload=payload, purpose="optimize"
        )
        specs = _specs_from(parsed, None, "optimizedSteps") if parsed else []
        optimized = build_plan_steps_from_specs(specs[:max_steps], None, False, max_step_attempts)
        return optimized or list(steps)

    # ------------------------------------------------------------------
    # Replan reviews
    # ------------------------------------------------------------------

    async def _review(
        self,
        *,
        model: str,
        system_prompt: str,
        payload: Dict[str, Any],
        max_steps: int,
        max_step_attempts: int,
        purpose: str,
        flag: str = "shouldReplan",
    ) -> PlanReview:
        parsed = await self._ask(model=model, system_prompt=system_prompt, payload=payload, purpose=purpose)
        if parsed is None:
            return PlanReview(should_replan=False, reason="Plan review unavailable.")

        meta = normalize_planner_meta(parsed)
        hierarchy = normalize_plan_hierarchy(parsed)
        reason = _text(parsed.get("reason"))
        summary = _text(parsed.get("summary")) or reason
        if parsed.get(flag) is not True:
            return PlanReview(should_replan=False, reason=reason, summary=summary, meta=meta)

        specs = _specs_from(parsed, hierarchy)[:max_steps]
        steps = build_plan_steps_from_specs(specs, meta, False, max_step_attempts)
        if not steps:
            steps = build_branch_steps_from_alternatives(meta.alternatives, max_step_attempts, max_steps)
        if not steps:
            return PlanReview(should_replan=False, reason=reason, summary=summary, meta=meta)
        return PlanReview(
            should_replan=True,
            reason=reason,
            summary=summary,
            steps=steps,
            hierarchy=hierarchy,
            meta=meta,
        )

    async def review_plan(
        self,
        *,
        model: str,
        prompt: str,
        memory: Sequence[str],
        browser_context: Optional[Dict[str, Any]],
        steps: Sequence[PlanStep],
        current_index: int,
        last_error: Optional[str],
        trigger: str,
        signals: Optional[Sequence[str]] = None,
        max_steps: int = 12,
        max_step_attempts: int = 2,
    ) -> PlanReview:
        """Periodic (or loop-triggered) review of the remaining plan."""
        payload = {
            "prompt": prompt,
            "memory": list(memory),
            "browserContext": browser_context,
            "completedSteps": [step_view(s) for s in steps[: current_index + 1]],
            "remainingSteps": [step_view(s) for s in steps[current_index + 1 :]],
            "lastError": last_error,
            "trigger": trigger,
            "signals": list(signals or []),
        }
        return await self._review(
            model=model,
            system_prompt=prompts.adaptive_review_prompt(max_steps),
            payload=payload,
            max_steps=max_steps,
            max_step_attempts=max_step_attempts,
            purpose=f"review:{trigger}",
        )

    async def review_resume(
        self,
        *,
        model: str,
        prompt: str,
        memory: Sequence[str],
        browser_context: Optional[Dict[str, Any]],
        remaining_steps: Sequence[PlanStep],
        last_error: Optional[str],
        max_steps: int = 12,
        max_step_attempts: int = 2,
    ) -> PlanReview:
        """Review the remaining plan of a run that is being resumed."""
        payload = {
            "prompt": prompt,
            "memory": list(memory),
            "browserContext": browser_context,
            "remainingSteps": [step_view(s) for s in remaining_steps],
            "lastError": last_error,
        }
        return await self._review(
            model=model,
            system_prompt=prompts.resume_review_prompt(max_steps),
            payload=payload,
            max_steps=max_steps,
            max_step_attempts=max_step_attempts,
            purpose="resume",
        )

    async def mid_run_adaptation(
        self,
        *,
        model: str,
        prompt: str,
        memory: Sequence[str],
        browser_context: Optional[Dict[str, Any]],
        steps: Sequence[PlanStep],
        current_index: int,
        last_error: Optional[str],
        max_steps: int = 12,
        max_step_attempts: int = 2,
    ) -> PlanReview:
        """Ask whether the remaining plan should adapt to what the run has seen so far.

        Without replacement steps the planner's alternatives are used; with
        neither the review reports no change.
        """
        payload = {
            "prompt": prompt,
            "memory": list(memory),
            "browserContext": browser_context,
            "completedSteps": [step_view(s) for s in steps[: current_index + 1]],
            "remainingSteps": [step_view(s) for s in steps[current_index + 1 :]],
            "lastError": last_error,
            "maxSteps": max_steps,
        }
        return await self._review(
            model=model,
            system_prompt=prompts.MID_RUN_ADAPTATION_PROMPT,
            payload=payload,
            max_steps=max_steps,
            max_step_attempts=max_step_attempts,
            purpose="mid-run",
            flag="shouldAdapt",
        )

    # ------------------------------------------------------------------
    # Auxiliary reviews
    # ------------------------------------------------------------------

    async def self_check(
        self,
        *,
        model: str,
        prompt: str,
        memory: Sequence[str],
        browser_context: Optional[Dict[str, Any]],
        step: PlanStep,
        steps: Sequence[PlanStep],
        last_error: Optional[str],
        max_steps: int = 12,
        max_step_attempts: int = 2,
    ) -> SelfCheckReview:
        payload = {
            "prompt": prompt,
            "memory": list(memory),
            "browserContext": browser_context,
            "currentStep": step_view(step),
            "steps": [step_view(s) for s in steps],
            "lastError": last_error,
        }
        parsed = await self._ask(
            model=model, system_prompt=prompts.SELF_CHECK_PROMPT, payload=payload, purpose="self-check"
        )
        if parsed is None:
            return SelfCheckReview(action="continue", reason="Self-check unavailable.")

        action = parsed.get("action")
        if action not in ("continue", "replan", "wait_human"):
            action = "continue"
        steps_out: List[PlanStep] = []
        if action == "replan":
            meta = normalize_planner_meta(parsed)
            specs = _specs_from(parsed, normalize_plan_hierarchy(parsed))[:max_steps]
            steps_out = build_plan_steps_from_specs(specs, meta, False, max_step_attempts)
            if not steps_out:
                steps_out = build_branch_steps_from_alternatives(meta.alternatives, max_step_attempts, max_steps)
            if not steps_out:
                action = "continue"
        return SelfCheckReview(
            action=action,
            reason=_text(parsed.get("reason")),
            notes=normalize_string_list(parsed.get("notes")),
            questions=normalize_string_list(parsed.get("questions")),
            blockers=normalize_string_list(parsed.get("blockers")),
            confidence=_confidence(parsed.get("confidence")),
            steps=steps_out,
        )

    async def verify_plan(
        self,
        *,
        run_id: str,
        model: str,
        prompt: str,
        steps: Sequence[PlanStep],
        memory: Sequence[str],
        browser_context: Optional[Dict[str, Any]],
    ) -> Optional[PlanVerification]:
        payload = {
            "prompt": prompt,
            "steps": [step_view(s) for s in steps],
            "memory": list(memory),
            "browserContext": browser_context,
        }
        parsed = await self._ask(model=model, system_prompt=prompts.VERIFY_PROMPT, payload=payload, purpose="verify")
        if parsed is None:
            return None
        verdict = parsed.get("verdict") if parsed.get("verdict") in ("pass", "partial", "fail") else "fail"
        result = PlanVerification(
            verdict=verdict,
            evidence=normalize_string_list(parsed.get("evidence")),
            missing=normalize_string_list(parsed.get("missing")),
            follow_up=_text(parsed.get("followUp")),
        )
        await self._audit.log(
            run_id,
            AuditLevel.info if verdict == "pass" else AuditLevel.warning,
            "Plan verification completed.",
            {"type": "plan-verification", **result.model_dump()},
        )
        return result

    async def self_improvement_review(
        self,
        *,
        run_id: str,
        model: str,
        prompt: str,
        status: str,
        steps: Sequence[PlanStep],
        last_error: Optional[str],
        memory: Sequence[str],
    ) -> Optional[SelfImprovementReview]:
        payload = {
            "prompt": prompt,
            "status": status,
            "steps": [step_view(s) for s in steps],
            "lastError": last_error,
            "memory": list(memory),
        }
        parsed = await self._ask(
            model=model, system_prompt=prompts.SELF_IMPROVEMENT_PROMPT, payload=payload, purpose="self-improvement"
        )
        summary = _text(parsed.get("summary")) if parsed else None
        if parsed is None or summary is None:
            return None
        review = SelfImprovementReview(
            summary=summary,
            mistakes=normalize_string_list(parsed.get("mistakes")),
            improvements=normalize_string_list(parsed.get("improvements")),
            guardrails=normalize_string_list(parsed.get("guardrails")),
            tool_adjustments=normalize_string_list(parsed.get("toolAdjustments")),
            confidence=_confidence(parsed.get("confidence")),
        )
        await self._audit.info(
            run_id, "Self-improvement review completed.", {"type": "self-improvement", **review.model_dump()}
        )
        return review

    async def summarize_memory(
        self,
        *,
        run_id: str,
        model: str,
        prompt: str,
        memory: Sequence[str],
        steps: Sequence[PlanStep],
    ) -> Optional[str]:
        """Summarize recent progress into one packed memory entry.

        The packed form is the summary line followed by optional
        ``Decisions: a | b`` and ``Risks: c | d`` lines.
        """
        payload = {"prompt": prompt, "memory": list(memory), "steps": [step_view(s) for s in steps]}
        parsed = await self._ask(model=model, system_prompt=prompts.SUMMARY_PROMPT, payload=payload, purpose="summary")
        summary = _text(parsed.get("summary")) if parsed else None
        if parsed is None or summary is None:
            return None
        decisions = normalize_string_list(parsed.get("keyDecisions"))
        risks = normalize_string_list(parsed.get("risks"))
        lines = [summary]
        if decisions:
            lines.append(f"Decisions: {' | '.join(decisions)}")
        if risks:
            lines.append(f"Risks: {' | '.join(risks)}")
        packed = "\n".join(lines)
        await self._audit.info(
            run_id,
            "Planner memory summary created.",
            {"type": "memory-summary", "summary": summary, "keyDecisions": decisions, "risks": risks},
        )
        return packed

    async def checkpoint_brief(
        self,
        *,
        run_id: str,
        model: str,
        prompt: str,
        steps: Sequence[PlanStep],
        last_error: Optional[str],
        browser_context: Optional[Dict[str, Any]],
        active_step_id: Optional[str] = None,
    ) -> Optional[CheckpointBrief]:
        payload = {
            "prompt": prompt,
            "steps": [step_view(s) for s in steps],
            "activeStepId": active_step_id,
            "lastError": last_error,
            "browserContext": browser_context,
        }
        parsed = await self._ask(
            model=model, system_prompt=prompts.CHECKPOINT_BRIEF_PROMPT, payload=payload, purpose="checkpoint-brief"
        )
        summary = _text(parsed.get("summary")) if parsed else None
        if parsed is None or summary is None:
            return None
        brief = CheckpointBrief(
            summary=summary,
            next_actions=normalize_string_list(parsed.get("nextActions")),
            risks=normalize_string_list(parsed.get("risks")),
        )
        await self._audit.info(run_id, "Checkpoint brief created.", {"type": "checkpoint-brief", **brief.model_dump()})
        return brief

    async def loop_guard_review(
        self,
        *,
        run_id: str,
        model: str,
        prompt: str,
        memory: Sequence[str],
        browser_context: Optional[Dict[str, Any]],
        steps: Sequence[PlanStep],
        completed_index: int,
        loop_signal: Dict[str, Any],
        last_error: Optional[str],
        max_steps: int = 12,
        max_step_attempts: int = 2,
    ) -> SelfCheckReview:
        """Ask the model whether a detected loop calls for a deviation.

        ``replan`` without usable steps degrades to ``continue``; a failed
        call also yields ``continue`` (the caller still backs off).
        """
        payload = {
            "prompt": prompt,
            "memory": list(memory),
            "browserContext": browser_context,
            "lastError": last_error,
            "loopSignal": loop_signal,
            "completedStepIndex": completed_index,
            "currentPlan": [step_view(s) for s in steps],
            "maxSteps": max_steps,
        }
        parsed = await self._ask(
            model=model, system_prompt=prompts.LOOP_GUARD_PROMPT, payload=payload, purpose="loop-guard"
        )
        if parsed is None:
            return SelfCheckReview(action="continue", reason="Loop guard review unavailable.")

        action = parsed.get("action") if parsed.get("action") in ("replan", "wait_human") else "continue"
        steps_out: List[PlanStep] = []
        if action == "replan":
            meta = normalize_planner_meta(parsed)
            specs = _specs_from(parsed, normalize_plan_hierarchy(parsed))
            steps_out = build_plan_steps_from_specs(specs, meta, True, max_step_attempts)[:max_steps]
            if not steps_out:
                steps_out = build_branch_steps_from_alternatives(meta.alternatives, max_step_attempts, max_steps)
            if not steps_out:
                action = "continue"
        review = SelfCheckReview(
            action=action,
            reason=_text(parsed.get("reason")),
            questions=normalize_string_list(parsed.get("questions")),
            notes=normalize_string_list(parsed.get("evidence")),
            steps=steps_out,
        )
        await self._audit.info(
            run_id,
            "Loop guard completed.",
            {"type": "loop-guard", "action": review.action, "reason": review.reason, "loop": loop_signal},
        )
        return review
