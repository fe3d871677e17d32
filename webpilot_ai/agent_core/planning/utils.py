"""Deterministic plan utilities.

Everything in this module is pure: it turns loosely shaped planner output into
typed plan records and supplies the rule-based fallbacks used whenever the
model is unavailable or unhelpful. No function here performs I/O.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from ..schemas.domain import DecisionAction, StepPhase, StepStatus, StepTool, TaskType
from ..schemas.planning import (
    AgentDecision,
    PlanGoal,
    PlanHierarchy,
    PlannerAlternative,
    PlannerCritique,
    PlannerMeta,
    PlanStep,
    PlanSubgoal,
    StepSpec,
)

DEFAULT_STEP_TITLE = "Review the page state."
DEFAULT_GOAL_TITLE = "Primary objective"
DEFAULT_SUBGOAL_TITLE = "Supporting task"
MAX_SYNTHETIC_STEPS = 3
MAX_BRANCH_STEPS = 6

LOGIN_PLAN = [
    "Open the target website.",
    "Locate the sign-in form.",
    "Fill in the credentials.",
    "Submit the form and wait for the next page.",
    "Verify the expected page or account state.",
]
BROWSE_PLAN = [
    "Open the target URL.",
    "Wait for the page to finish loading.",
    "Locate the requested content.",
    "Capture the relevant details.",
]

_LOGIN_KEYWORDS = ("login", "log in", "sign in", "signin")
_BROWSE_KEYWORDS = ("browse", "website")
_SENTENCE_SPLIT = re.compile(r"[.!?]\s+")
_EXTRACT_VERB = re.compile(r"(extract|collect|find|list|get)\b")
_EXTRACT_TARGET = re.compile(r"(product|email)")
_APPROVAL_PATTERN = re.compile(
    r"login|log in|sign in|signup|register|checkout|purchase|pay|payment|card|delete|remove|cancel|"
    r"unsubscribe|transfer|withdraw|submit order|place order|invoice|billing|confirm|approve|admin",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Scalar coercion
# ---------------------------------------------------------------------------


def _clean_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def normalize_string_list(value: Any) -> List[str]:
    """Keep trimmed, non-empty string entries of a list; anything else is ``[]``."""
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _dedupe(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(items))


def normalize_phase(value: Any) -> Optional[StepPhase]:
    if not isinstance(value, str):
        return None
    try:
        return StepPhase(value.strip().lower())
    except ValueError:
        return None


def normalize_task_type(value: Any) -> Optional[TaskType]:
    try:
        return TaskType(value)
    except ValueError:
        return None


def coerce_step_spec(raw: Any) -> StepSpec:
    """Convert a model-provided step object into a ``StepSpec``.

    Fields with the wrong type are dropped rather than rejected.
    """
    if isinstance(raw, StepSpec):
        return raw
    data: Dict[str, Any] = raw if isinstance(raw, dict) else {}
    depends_on = data.get("dependsOn", data.get("depends_on"))
    if isinstance(depends_on, list):
        depends_on = [d for d in depends_on if isinstance(d, str) or (isinstance(d, int) and not isinstance(d, bool))]
    else:
        depends_on = None
    return StepSpec(
        title=data.get("title") if isinstance(data.get("title"), str) else None,
        tool=data.get("tool") if isinstance(data.get("tool"), str) else None,
        expected_observation=_clean_str(data.get("expectedObservation", data.get("expected_observation"))),
        success_criteria=_clean_str(data.get("successCriteria", data.get("success_criteria"))),
        phase=data.get("phase") if isinstance(data.get("phase"), str) else None,
        priority=_number(data.get("priority")),
        depends_on=depends_on,
        goal_id=_clean_str(data.get("goalId", data.get("goal_id"))),
        subgoal_id=_clean_str(data.get("subgoalId", data.get("subgoal_id"))),
    )


# ---------------------------------------------------------------------------
# Planner metadata
# ---------------------------------------------------------------------------


def normalize_critique(value: Any) -> Optional[PlannerCritique]:
    """Normalize a critique object; ``None`` when every list is empty."""
    if not isinstance(value, dict):
        return None
    lists = {
        "assumptions": normalize_string_list(value.get("assumptions")),
        "risks": normalize_string_list(value.get("risks")),
        "unknowns": normalize_string_list(value.get("unknowns")),
        "safety_checks": normalize_string_list(value.get("safetyChecks", value.get("safety_checks"))),
        "questions": normalize_string_list(value.get("questions")),
    }
    if not any(lists.values()):
        return None
    return PlannerCritique(**{k: (v or None) for k, v in lists.items()})


def normalize_alternatives(value: Any) -> Optional[List[PlannerAlternative]]:
    """Keep alternatives that have a title and at least one step."""
    if not isinstance(value, list):
        return None
    out: List[PlannerAlternative] = []
    for entry in value:
        if not isinstance(entry, dict):
            continue
        title = _clean_str(entry.get("title"))
        steps = entry.get("steps") if isinstance(entry.get("steps"), list) else []
        if not title or not steps:
            continue
        out.append(
            PlannerAlternative(
                title=title,
                rationale=_clean_str(entry.get("rationale")),
                steps=[coerce_step_spec(s) for s in steps],
            )
        )
    return out or None


def normalize_planner_meta(parsed: Dict[str, Any]) -> PlannerMeta:
    """Extract ``PlannerMeta`` from a planner response.

    ``critique`` and ``selfCritique`` are both accepted. Safety checks and
    questions are the de-duplicated union of the critique's lists and the
    top-level lists. Every list is present only when non-empty.
    """
    critique = normalize_critique(parsed.get("critique") or parsed.get("selfCritique"))
    safety_checks = _dedupe(
        [*(critique.safety_checks if critique and critique.safety_checks else [])]
        + normalize_string_list(parsed.get("safetyChecks"))
    )
    questions = _dedupe(
        [*(critique.questions if critique and critique.questions else [])]
        + normalize_string_list(parsed.get("questions"))
    )
    constraints = normalize_string_list(parsed.get("constraints"))
    success_signals = normalize_string_list(parsed.get("successSignals"))
    return PlannerMeta(
        critique=critique,
        alternatives=normalize_alternatives(parsed.get("alternatives")),
        safety_checks=safety_checks or None,
        questions=questions or None,
        task_type=normalize_task_type(parsed.get("taskType")),
        summary=_clean_str(parsed.get("summary")),
        constraints=constraints or None,
        success_signals=success_signals or None,
    )


# ---------------------------------------------------------------------------
# Step construction
# ---------------------------------------------------------------------------


def build_safety_steps(meta: Optional[PlannerMeta], max_step_attempts: int) -> List[PlanStep]:
    if meta is None:
        return []
    checks = [*(meta.safety_checks or [])]
    if meta.critique and meta.critique.safety_checks:
        checks += meta.critique.safety_checks
    checks = _dedupe(c.strip() for c in checks if c.strip())
    return [
        PlanStep(
            title=f"Safety check: {check}",
            tool=StepTool.none,
            phase=StepPhase.observe,
            max_attempts=max_step_attempts,
        )
        for check in checks[:MAX_SYNTHETIC_STEPS]
    ]


def build_verification_steps(meta: Optional[PlannerMeta], max_step_attempts: int) -> List[PlanStep]:
    if meta is None or not meta.success_signals:
        return []
    return [
        PlanStep(
            title=f"Verify: {signal}",
            tool=StepTool.none,
            phase=StepPhase.verify,
            max_attempts=max_step_attempts,
        )
        for signal in meta.success_signals[:MAX_SYNTHETIC_STEPS]
    ]


def resolve_dependencies(value: Optional[Sequence[Any]], specs: Sequence[StepSpec], ids: Sequence[str]) -> Optional[List[str]]:
    """Resolve ``depends_on`` entries to step ids of the same batch.

    Integers are indices into ``specs`` (the ``step-<idx>`` convention);
    strings are matched case-insensitively against spec titles. Entries that
    are out of range or unresolvable are dropped.
    """
    if not value:
        return None
    resolved: List[str] = []
    for entry in value:
        idx: Optional[int] = None
        if isinstance(entry, int) and not isinstance(entry, bool):
            idx = entry if 0 <= entry < len(specs) else None
        elif isinstance(entry, str) and entry.strip():
            name = entry.strip().lower()
            idx = next(
                (i for i, spec in enumerate(specs) if (spec.title or "").strip().lower() == name),
                None,
            )
        if idx is not None and ids[idx] not in resolved:
            resolved.append(ids[idx])
    return resolved or None


def build_plan_steps_from_specs(
    specs: Sequence[Any],
    meta: Optional[PlannerMeta] = None,
    include_safety: bool = False,
    max_step_attempts: int = 2,
) -> List[PlanStep]:
    """Build executable steps from step specs.

    Output is ``safety (<=3) + one step per spec + verification (<=3)``, the
    synthetic steps only when ``include_safety`` is set. Every step starts
    with ``attempts=0`` and ``max_attempts=max_step_attempts``.
    """
    typed = [coerce_step_spec(s) for s in specs]
    ids = [str(uuid4()) for _ in typed]
    planned = [
        PlanStep(
            id=step_id,
            title=_clean_str(spec.title) or DEFAULT_STEP_TITLE,
            tool=StepTool.none if spec.tool == "none" else StepTool.playwright,
            expected_observation=_clean_str(spec.expected_observation),
            success_criteria=_clean_str(spec.success_criteria),
            phase=normalize_phase(spec.phase),
            priority=_number(spec.priority),
            depends_on=resolve_dependencies(spec.depends_on, typed, ids),
            goal_id=spec.goal_id,
            subgoal_id=spec.subgoal_id,
            max_attempts=max_step_attempts,
        )
        for step_id, spec in zip(ids, typed)
    ]

    if not include_safety:
        return planned
    return [
        *build_safety_steps(meta, max_step_attempts),
        *planned,
        *build_verification_steps(meta, max_step_attempts),
    ]


def build_branch_steps_from_alternatives(
    alternatives: Optional[Sequence[PlannerAlternative]],
    max_step_attempts: int,
    max_steps: int,
) -> List[PlanStep]:
    """Flatten planner alternatives into a recovery branch.

    Alternative steps default to phase ``recover``; an alternative without
    steps contributes a single title-only step.
    """
    if not alternatives:
        return []
    specs: List[StepSpec] = []
    for alt in alternatives:
        if alt.steps:
            for spec in alt.steps:
                specs.append(spec.model_copy(update={"phase": spec.phase or StepPhase.recover.value}))
        elif alt.title.strip():
            specs.append(StepSpec(title=alt.title.strip(), tool=StepTool.playwright.value, phase=StepPhase.recover.value))
    if not specs:
        return []
    return build_plan_steps_from_specs(specs, None, True, max_step_attempts)[: max(max_steps, 0)]


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------


def _depends(value: Any) -> Optional[List[Any]]:
    return list(value) if isinstance(value, list) else None


def normalize_plan_hierarchy(parsed: Dict[str, Any]) -> Optional[PlanHierarchy]:
    """Build a ``PlanHierarchy`` from a ``goals`` payload.

    Goal and subgoal ids are freshly generated. Non-list ``dependsOn`` becomes
    ``None`` and non-numeric ``priority`` becomes ``None``.
    """
    goals_raw = parsed.get("goals")
    if not isinstance(goals_raw, list) or not goals_raw:
        return None
    goals: List[PlanGoal] = []
    for goal in goals_raw:
        if not isinstance(goal, dict):
            goal = {}
        subgoals: List[PlanSubgoal] = []
        for sub in goal.get("subgoals") if isinstance(goal.get("subgoals"), list) else []:
            if not isinstance(sub, dict):
                sub = {}
            steps = sub.get("steps") if isinstance(sub.get("steps"), list) else []
            subgoals.append(
                PlanSubgoal(
                    title=_clean_str(sub.get("title")) or DEFAULT_SUBGOAL_TITLE,
                    success_criteria=_clean_str(sub.get("successCriteria")),
                    priority=_number(sub.get("priority")),
                    depends_on=_depends(sub.get("dependsOn")),
                    steps=[coerce_step_spec(s) for s in steps],
                )
            )
        goals.append(
            PlanGoal(
                title=_clean_str(goal.get("title")) or DEFAULT_GOAL_TITLE,
                success_criteria=_clean_str(goal.get("successCriteria")),
                priority=_number(goal.get("priority")),
                depends_on=_depends(goal.get("dependsOn")),
                subgoals=subgoals,
            )
        )
    return PlanHierarchy(goals=goals)


def flatten_plan_hierarchy(hierarchy: PlanHierarchy) -> List[StepSpec]:
    """Flatten goals → subgoals → steps, keeping back-references.

    Priority propagates downward: step priority wins, else subgoal, else goal.
    """
    out: List[StepSpec] = []
    for goal in hierarchy.goals:
        for sub in goal.subgoals:
            for spec in sub.steps:
                priority = spec.priority
                if priority is None:
                    priority = sub.priority if sub.priority is not None else goal.priority
                out.append(spec.model_copy(update={"priority": priority, "goal_id": goal.id, "subgoal_id": sub.id}))
    return out


# ---------------------------------------------------------------------------
# Rule-based fallbacks
# ---------------------------------------------------------------------------


def _mentions(text: str, keywords: Iterable[str]) -> bool:
    return any(k in text for k in keywords)


def build_plan(prompt: str, max_steps: int = 12) -> List[str]:
    """Keyword-driven fallback plan titles."""
    normalized = prompt.strip()
    if not normalized:
        return []
    lower = normalized.lower()
    if _mentions(lower, _LOGIN_KEYWORDS):
        steps = list(LOGIN_PLAN)
    elif _mentions(lower, _BROWSE_KEYWORDS):
        steps = list(BROWSE_PLAN)
    else:
        steps = [s.strip() for s in _SENTENCE_SPLIT.split(normalized) if s.strip()]
    return steps[:max_steps]


def build_fallback_steps(prompt: str, max_steps: int, max_step_attempts: int) -> List[PlanStep]:
    return [
        PlanStep(title=title, tool=StepTool.playwright, phase=StepPhase.act, max_attempts=max_step_attempts)
        for title in build_plan(prompt, max_steps)
    ]


def decide_next_action(prompt: str, memory: Sequence[str]) -> AgentDecision:
    lower = prompt.lower()
    if _mentions(lower, _BROWSE_KEYWORDS):
        return AgentDecision(
            action=DecisionAction.tool, reason="Prompt implies browser automation.", tool_name=StepTool.playwright.value
        )
    if _mentions(lower, _LOGIN_KEYWORDS):
        return AgentDecision(
            action=DecisionAction.tool, reason="Prompt includes a login flow.", tool_name=StepTool.playwright.value
        )
    if memory:
        return AgentDecision(action=DecisionAction.respond, reason="Sufficient context to respond.")
    return AgentDecision(action=DecisionAction.wait_human, reason="Not enough context; human input required.")


def normalize_decision(
    decision: Any,
    steps: Sequence[PlanStep],
    prompt: str,
    memory: Sequence[str],
) -> AgentDecision:
    """Honor an explicit model decision, else derive one from the plan."""
    raw = decision if isinstance(decision, dict) else {}
    action = raw.get("action")
    reason = _clean_str(raw.get("reason"))
    if action == DecisionAction.tool.value:
        return AgentDecision(
            action=DecisionAction.tool,
            reason=reason or "LLM planner selected tool execution.",
            tool_name=_clean_str(raw.get("toolName")) or StepTool.playwright.value,
        )
    if action == DecisionAction.respond.value:
        return AgentDecision(action=DecisionAction.respond, reason=reason or "LLM planner selected response.")
    if action == DecisionAction.wait_human.value:
        return AgentDecision(action=DecisionAction.wait_human, reason=reason or "LLM planner requires human input.")
    if steps:
        return AgentDecision(
            action=DecisionAction.tool,
            reason="Plan generated; execute tool steps.",
            tool_name=StepTool.playwright.value,
        )
    return decide_next_action(prompt, memory)


# ---------------------------------------------------------------------------
# Runtime predicates
# ---------------------------------------------------------------------------


def should_evaluate_replan(step_index: int, steps: Sequence[PlanStep], replan_every_steps: int) -> bool:
    """Whether a periodic replan review is due after completing ``step_index``.

    Only plans with at least three steps are reviewed, and only when
    ``step_index + 1`` is a non-zero multiple of ``replan_every_steps``.

    The completion of the last step also counts (a 6-step plan with
    ``replan_every_steps=2`` is reviewed after indices 1, 3 and 5), so this
    end-of-plan review may append steps to a plan whose steps are all done.
    """
    if len(steps) < 3 or replan_every_steps < 1:
        return False
    next_index = step_index + 1
    if step_index < 0 or next_index > len(steps):
        return False
    return next_index % replan_every_steps == 0


def append_task_type_to_prompt(prompt: str, task_type: Optional[TaskType]) -> str:
    if not task_type:
        return prompt
    return f"{prompt}\n\nTask type: {TaskType(task_type).value}"


def is_extraction_step(step: PlanStep, prompt: str, task_type: Optional[TaskType]) -> bool:
    if task_type == TaskType.extract_info:
        return True
    combined = f"{step.title} {step.expected_observation or ''} {prompt}".lower()
    return bool(_EXTRACT_VERB.search(combined)) and bool(_EXTRACT_TARGET.search(combined))


def requires_human_approval(step: PlanStep, prompt: str) -> bool:
    """Heuristic approval check for sensitive actions (tool steps only)."""
    if step.tool == StepTool.none:
        return False
    text = f"{step.title} {step.expected_observation or ''} {step.success_criteria or ''} {prompt}"
    return bool(_APPROVAL_PATTERN.search(text))


def first_pending_index(steps: Sequence[PlanStep]) -> int:
    """Index of the first step that is not completed, else ``0``."""
    for idx, step in enumerate(steps):
        if step.status != StepStatus.completed:
            return idx
    return 0
