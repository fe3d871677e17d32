"""Human-approval gate for sensitive steps.

The gate only applies to runs whose preferences set
``require_human_approval``. A step that was explicitly approved
(``Checkpoint.approval_granted_step_id``) passes without evaluation.

The keyword heuristic in ``planning.utils.requires_human_approval`` decides by
default; when the run configures an approval gate model, that model's
boolean ``requiresApproval`` overrides the heuristic. A failed or malformed
model reply keeps the heuristic decision.
"""

from __future__ import annotations

import logging
from typing import Literal, Optional

from ..audit import AuditLogger
from ..gateway import ModelGateway, parse_json_object, request_json
from ..planning import prompts
from ..planning.planner import step_view
from ..planning.utils import requires_human_approval
from ..schemas.base import BaseSchema
from ..schemas.checkpoint import Checkpoint
from ..schemas.config import AgentPlanPreferences
from ..schemas.planning import PlanStep

logger = logging.getLogger(__name__)


class ApprovalDecision(BaseSchema):
    required: bool
    source: Literal["heuristic", "llm"]
    reason: Optional[str] = None
    risk_level: Optional[str] = None


def approval_pending(checkpoint: Checkpoint, preferences: AgentPlanPreferences, step: PlanStep) -> bool:
    """Whether ``step`` has to pass through the gate before it runs."""
    return preferences.require_human_approval and checkpoint.approval_granted_step_id != step.id


class ApprovalGate:
    def __init__(self, gateway: ModelGateway, audit: AuditLogger) -> None:
        self._gateway = gateway
        self._audit = audit

    async def evaluate(self, run_id: str, step: PlanStep, *, prompt: str, model: Optional[str]) -> ApprovalDecision:
        decision = ApprovalDecision(required=requires_human_approval(step, prompt), source="heuristic")
        if model:
            try:
                parsed = await request_json(
                    self._gateway,
                    model=model,
                    system_prompt=prompts.APPROVAL_GATE_PROMPT,
                    payload={"prompt": prompt, "step": step_view(step)},
                    decoder=parse_json_object,
                    temperature=0.1,
                )
            except Exception as e:
                logger.debug(f"Approval gate model '{model}' failed for run {run_id}: {e}")
                parsed = None
            if parsed is not None and isinstance(parsed.get("requiresApproval"), bool):
                reason = parsed.get("reason")
                risk = parsed.get("riskLevel")
                decision = ApprovalDecision(
                    required=parsed["requiresApproval"],
                    source="llm",
                    reason=reason if isinstance(reason, str) else None,
                    risk_level=risk if risk in ("low", "medium", "high") else None,
                )

        await self._audit.info(
            run_id,
            "Approval gate evaluated.",
            {
                "type": "approval-gate",
                "stepId": step.id,
                "stepTitle": step.title,
                "requiresApproval": decision.required,
                "source": decision.source,
                "reason": decision.reason,
                "riskLevel": decision.risk_level,
                "model": model,
            },
        )
        return decision
