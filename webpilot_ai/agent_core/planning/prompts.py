"""System prompts for the model-backed planner and validators.

Every prompt asks for a single JSON object; replies are decoded with the
tolerant helpers in ``gateway.json_decode``.
"""

from __future__ import annotations


def plan_prompt(max_steps: int) -> str:
    return (
        "You are the planner for a browser automation agent. "
        "Return only JSON with keys: decision, goals, critique, alternatives, taskType, summary, "
        "constraints, successSignals. "
        "decision is {action: tool|respond|wait_human, reason, toolName}. "
        "goals is a list of 2-4 goals {title, successCriteria, priority, dependsOn, subgoals}; each goal has "
        "1-3 subgoals {title, successCriteria, priority, dependsOn, steps}. "
        "Each step is {title, tool: playwright|none, expectedObservation, successCriteria, phase: "
        "observe|act|verify|recover, priority, dependsOn}. "
        f"Use at most {max_steps} steps in total. If you cannot build goals, return a flat steps list instead. "
        "critique is {assumptions, risks, unknowns, safetyChecks, questions}. "
        "alternatives is a list of {title, rationale, steps}. taskType is web_task or extract_info."
    )


def branch_prompt(max_steps: int) -> str:
    return (
        "You are the recovery planner for a browser automation agent. A planned step failed. "
        "Return only JSON with keys: decision, branchSteps, critique, alternatives, taskType, summary, "
        "constraints, successSignals. "
        "branchSteps is a list of 1-4 alternate steps {title, tool: playwright|none, expectedObservation, "
        "successCriteria, phase, dependsOn} that work around the failed step. "
        f"Never return more than {max_steps} steps."
    )


def adaptive_review_prompt(max_steps: int) -> str:
    return (
        "You review the progress of a browser automation agent at a periodic checkpoint. "
        "Decide whether the remaining plan still fits the browser state. "
        "Return only JSON with keys: shouldReplan (boolean), reason, goals or steps, critique, alternatives, "
        "taskType, summary, constraints, successSignals. "
        f"When shouldReplan is true, provide at most {max_steps} replacement steps for the remaining work."
    )


def resume_review_prompt(max_steps: int) -> str:
    return (
        "A browser automation run was interrupted and is being resumed. "
        "Compare the remaining steps with the current browser state and the last error. "
        "Return only JSON with keys: shouldReplan (boolean), reason, summary, goals or steps, critique, "
        "alternatives, taskType, constraints, successSignals. "
        f"When shouldReplan is true, provide at most {max_steps} steps that continue from the current state."
    )


SELF_CHECK_PROMPT = (
    "You audit a browser automation agent after a step. "
    "Return only JSON with keys: action (continue|replan|wait_human), reason, notes, questions, evidence, "
    "confidence (0-1), missingInfo, blockers, hypotheses, verificationSteps, toolSwitch, abortSignals, "
    "finishSignals, goals or steps. Only return goals or steps when action is replan."
)

VERIFY_PROMPT = (
    "You verify whether a browser automation run achieved the user's goal. "
    "Return only JSON with keys: verdict (pass|partial|fail), evidence (array), missing (array), followUp."
)

SELF_IMPROVEMENT_PROMPT = (
    "You review a finished browser automation run to improve future runs. "
    "Return only JSON with keys: summary, mistakes (array), improvements (array), guardrails (array), "
    "toolAdjustments (array), confidence (0-1)."
)

SUMMARY_PROMPT = (
    "Summarize the recent progress of a browser automation agent for its own memory. "
    "Return only JSON with keys: summary, keyDecisions (array), risks (array)."
)

CHECKPOINT_BRIEF_PROMPT = (
    "Write a short checkpoint brief for a browser automation run so it can be resumed later. "
    "Return only JSON with keys: summary, nextActions (array), risks (array)."
)

APPROVAL_GATE_PROMPT = (
    "You decide whether a planned web action requires human approval. "
    "Return only JSON with keys: requiresApproval (boolean), reason (string), riskLevel (low|medium|high), "
    "riskySignals (array). Flag any step that involves login, payments, deletions, account changes, admin "
    "actions, or irreversible changes."
)

LOOP_GUARD_PROMPT = (
    "You are a loop guard for a browser automation agent. "
    "Return only JSON with keys: action (continue|replan|wait_human), reason, questions, evidence, goals, "
    "critique, alternatives, taskType, summary, constraints, successSignals. "
    "Provide 2-4 questions that test whether the agent is looping. When action is replan, include goals "
    "(planner schema) or steps {title, tool, expectedObservation, successCriteria, phase, priority, dependsOn}."
)

MEMORY_VALIDATION_PROMPT = (
    "You validate a candidate long-term memory for a browser automation agent before it is stored. "
    "Return only JSON with keys: valid (boolean), issues (array of strings), reason (string). "
    "Mark the memory invalid when the prompt implies a target URL or domain that conflicts with metadata.url. "
    "When evidence is missing, prefer marking it invalid."
)

MEMORY_SUMMARY_PROMPT = (
    "Summarize a memory entry of a browser automation agent in one sentence. "
    "Return only JSON with keys: summary."
)

EXTRACTION_VALIDATION_PROMPT = (
    "You validate extraction results against the user goal. "
    "Return only JSON with keys: valid (boolean), acceptedItems (array), rejectedItems (array), issues (array "
    "of strings), missingCount (number), evidence (array of {item, snippet, reason}). Each accepted item must "
    "cite evidence from the provided snippets. If the URL hostname does not match targetHostname (when "
    "provided), mark valid=false. For product names, reject non-product UI text such as cookie banners, "
    "headings and navigation labels."
)

EXTRACTION_NORMALIZATION_PROMPT = (
    "You clean extracted outputs. Return only JSON with key items as an array of cleaned strings. "
    "Remove hashes, ids, boilerplate and duplicates while keeping the original order. "
    "For emails, return lowercase valid emails only."
)

SELECTOR_PROMPT = (
    "You are a DOM selector expert. Return only JSON with a selectors array of concise, robust CSS selectors."
)

EXTRACTION_PLAN_PROMPT = (
    "You are an extraction planner. Return only JSON with keys: target, fields, primarySelectors, "
    "fallbackSelectors, notes. target is the data entity, fields is an array of field names, "
    "primarySelectors and fallbackSelectors are arrays of CSS selectors."
)

FAILURE_RECOVERY_PROMPT = (
    "You recover failed web automation. Return only JSON with keys: reason, selectors, listingUrls, "
    "clickSelector, loginUrl, usernameSelector, passwordSelector, submitSelector, notes. "
    "Provide only the fields relevant to the failure type."
)

SEARCH_FIRST_PROMPT = (
    "You decide whether to use web search before direct navigation. "
    "Return only JSON with keys: useSearchFirst (boolean), reason, query."
)

SEARCH_QUERY_PROMPT = "You craft concise web search queries. Return only JSON with keys: query, intent."

SEARCH_RESULT_PROMPT = "You select the best URL for the user task. Return only JSON with key: url."

PLAN_EXPAND_PROMPT = (
    "You turn a flat step list of a browser automation agent into a goal hierarchy. "
    "Return only JSON with key goals: 2-4 goals {title, successCriteria, priority, dependsOn, subgoals}; each "
    "subgoal is {title, successCriteria, priority, dependsOn, steps}. Keep every given step and its order."
)

PLAN_ENRICH_PROMPT = (
    "You enrich a goal hierarchy for a browser automation agent. Fill in missing successCriteria, "
    "expectedObservation, phase (observe|act|verify|recover), priority and dependsOn. "
    "Return only JSON with key goals using the same structure. Do not add or remove steps."
)

PLAN_DEDUPE_PROMPT = (
    "You remove duplicate or redundant steps from a browser automation plan. "
    "Return only JSON with key steps: the kept steps {title, tool, expectedObservation, successCriteria, "
    "phase, priority, dependsOn} in their original order."
)

REPETITION_GUARD_PROMPT = (
    "You prevent a browser automation agent from repeating work. Compare candidateSteps with completedSteps "
    "and the current plan. Return only JSON with keys: steps (the candidate steps to keep, reworded when they "
    "repeat finished work), reason. Never return more than maxSteps steps."
)

PLAN_EVALUATION_PROMPT = (
    "You grade a browser automation plan against the user task. "
    "Return only JSON with keys: score (0-100), issues (array of strings), revisedSteps (array of steps "
    "{title, tool, expectedObservation, successCriteria, phase, priority, dependsOn}). "
    "Only return revisedSteps when the score is below 70."
)

PLAN_OPTIMIZE_PROMPT = (
    "You tighten a browser automation plan. Merge steps that can run together and order them so observations "
    "come before actions. Return only JSON with keys: optimizedSteps (array of steps), notes."
)

MID_RUN_ADAPTATION_PROMPT = (
    "You adapt the plan of a browser automation agent in the middle of a run, after several completed steps. "
    "Return only JSON with keys: shouldAdapt (boolean), reason, summary, steps, alternatives. "
    "When shouldAdapt is true, steps replace the remaining plan."
)
