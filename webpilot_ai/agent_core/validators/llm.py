"""Model-backed validators and tactical helpers.

Each helper sends one narrowly scoped system prompt through the model
gateway, keeps only the response fields that pass a runtime type check
(non-string list entries are filtered, not errored) and records the derived
result in the audit log.

Fallbacks
---------

- ``validate_extraction``: evidence-gated fail-open. Items that come with an
  evidence snippet are accepted and ``valid`` is computed locally.
- ``normalize_extraction_items``: the raw items.
- ``infer_selectors``: ``[]``.
- ``build_extraction_plan`` / ``build_failure_recovery_plan``: ``None``.
- ``build_search_query`` / ``pick_search_result`` / ``decide_search_first``:
  ``None`` (the caller navigates directly).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import Field

from ..audit import AuditLogger
from ..gateway import ModelGateway, parse_json_object, request_json
from ..planning import prompts
from ..schemas.base import BaseSchema

logger = logging.getLogger(__name__)

ExtractionType = Literal["product_names", "emails"]
FailureType = Literal["bad_selectors", "login_stuck", "missing_extraction"]


class EvidenceItem(BaseSchema):
    item: str
    snippet: str


class ExtractionValidation(BaseSchema):
    valid: bool
    accepted_items: List[str] = Field(default_factory=list)
    rejected_items: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)
    missing_count: int = 0
    evidence: List[Any] = Field(default_factory=list)


class ExtractionPlan(BaseSchema):
    target: Optional[str] = None
    fields: List[str] = Field(default_factory=list)
    primary_selectors: List[str] = Field(default_factory=list)
    fallback_selectors: List[str] = Field(default_factory=list)
    notes: Optional[str] = None


class FailureRecoveryPlan(BaseSchema):
    reason: Optional[str] = None
    selectors: List[str] = Field(default_factory=list)
    listing_urls: List[str] = Field(default_factory=list)
    click_selector: Optional[str] = None
    login_url: Optional[str] = None
    username_selector: Optional[str] = None
    password_selector: Optional[str] = None
    submit_selector: Optional[str] = None
    notes: Optional[str] = None


class SearchFirstDecision(BaseSchema):
    use_search_first: bool
    query: Optional[str] = None
    reason: Optional[str] = None


def _strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _opt_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


class LLMValidators:
    def __init__(self, gateway: ModelGateway, audit: AuditLogger) -> None:
        self._gateway = gateway
        self._audit = audit

    async def _ask(
        self, *, model: str, system_prompt: str, payload: Dict[str, Any], temperature: float = 0.2
    ) -> Optional[Dict[str, Any]]:
        return await request_json(
            self._gateway,
            model=model,
            system_prompt=system_prompt,
            payload=payload,
            decoder=parse_json_object,
            temperature=temperature,
        )

    async def validate_extraction(
        self,
        run_id: str,
        model: str,
        *,
        prompt: str,
        url: Optional[str],
        extraction_type: ExtractionType,
        required_count: int,
        items: Sequence[str],
        dom_text_sample: str,
        target_hostname: Optional[str],
        evidence: Sequence[EvidenceItem],
        step_id: Optional[str] = None,
        step_label: Optional[str] = None,
    ) -> ExtractionValidation:
        """Partition extracted items into accepted and rejected ones."""
        payload = {
            "prompt": prompt,
            "url": url,
            "extractionType": extraction_type,
            "requiredCount": required_count,
            "items": list(items),
            "domTextSample": dom_text_sample,
            "targetHostname": target_hostname,
            "evidence": [e.model_dump() for e in evidence],
            "stepId": step_id,
            "stepLabel": step_label,
        }
        try:
            parsed = await self._ask(model=model, system_prompt=prompts.EXTRACTION_VALIDATION_PROMPT, payload=payload)
            if parsed is None:
                raise ValueError("validator returned no JSON object")
        except Exception as e:
            accepted = [entry.item for entry in evidence]
            result = ExtractionValidation(
                valid=len(accepted) >= required_count,
                accepted_items=accepted,
                rejected_items=[item for item in items if item not in accepted],
                issues=[f"LLM validation failed: {e}"],
                missing_count=max(0, required_count - len(accepted)),
                evidence=[entry.model_dump() for entry in evidence],
            )
        else:
            accepted = _strings(parsed.get("acceptedItems"))
            missing = parsed.get("missingCount")
            valid = parsed.get("valid")
            result = ExtractionValidation(
                valid=valid if isinstance(valid, bool) else len(accepted) >= required_count,
                accepted_items=accepted,
                rejected_items=_strings(parsed.get("rejectedItems")),
                issues=_strings(parsed.get("issues")),
                missing_count=(
                    int(missing)
                    if isinstance(missing, (int, float)) and not isinstance(missing, bool)
                    else max(0, required_count - len(accepted))
                ),
                evidence=parsed.get("evidence") if isinstance(parsed.get("evidence"), list) else [],
            )

        await self._audit.log(
            run_id,
            "info" if result.valid else "warning",
            "Extraction validation completed.",
            {
                "type": "extraction-validation",
                "stepId": step_id,
                "extractionType": extraction_type,
                "requiredCount": required_count,
                "valid": result.valid,
                "acceptedItems": result.accepted_items,
                "rejectedItems": result.rejected_items,
                "issues": result.issues,
                "missingCount": result.missing_count,
            },
        )
        return result

    async def normalize_extraction_items(
        self,
        *,
        prompt: str,
        extraction_type: ExtractionType,
        items: Sequence[str],
        model: Optional[str],
    ) -> List[str]:
        """Clean extracted strings; the input is returned when cleaning fails."""
        if not model or not items:
            return list(items)
        try:
            parsed = await self._ask(
                model=model,
                system_prompt=prompts.EXTRACTION_NORMALIZATION_PROMPT,
                payload={"prompt": prompt, "extractionType": extraction_type, "items": list(items)},
                temperature=0.1,
            )
        except Exception as e:
            logger.debug(f"Extraction normalization failed: {e}")
            return list(items)
        cleaned = _strings(parsed.get("items")) if parsed else []
        return cleaned or list(items)

    async def infer_selectors(
        self,
        run_id: str,
        model: str,
        *,
        ui_inventory: Any,
        dom_text_sample: str,
        task: str,
        label: str,
        step_id: Optional[str] = None,
    ) -> List[str]:
        if not ui_inventory:
            return []
        try:
            parsed = await self._ask(
                model=model,
                system_prompt=prompts.SELECTOR_PROMPT,
                payload={"task": task, "domTextSample": dom_text_sample, "uiInventory": ui_inventory},
            )
        except Exception as e:
            logger.debug(f"Selector inference failed for run {run_id}: {e}")
            await self._audit.warning(
                run_id, "LLM selector inference failed.", {"type": "selector-inference", "label": label, "error": str(e)}
            )
            return []
        selectors = _strings(parsed.get("selectors")) if parsed else []
        await self._audit.info(
            run_id,
            "LLM selector inference completed.",
            {
                "type": "selector-inference",
                "label": label,
                "task": task,
                "selectors": selectors,
                "model": model,
                "stepId": step_id,
            },
        )
        return selectors

    async def build_extraction_plan(
        self,
        run_id: str,
        model: str,
        *,
        extraction_type: ExtractionType,
        dom_text_sample: str,
        ui_inventory: Any,
        step_id: Optional[str] = None,
    ) -> Optional[ExtractionPlan]:
        if not ui_inventory:
            return None
        try:
            parsed = await self._ask(
                model=model,
                system_prompt=prompts.EXTRACTION_PLAN_PROMPT,
                payload={"request": extraction_type, "domTextSample": dom_text_sample, "uiInventory": ui_inventory},
            )
        except Exception as e:
            logger.debug(f"Extraction planning failed for run {run_id}: {e}")
            return None
        if parsed is None:
            return None
        plan = ExtractionPlan(
            target=_opt_str(parsed.get("target")),
            fields=_strings(parsed.get("fields")),
            primary_selectors=_strings(parsed.get("primarySelectors")),
            fallback_selectors=_strings(parsed.get("fallbackSelectors")),
            notes=_opt_str(parsed.get("notes")),
        )
        await self._audit.info(
            run_id,
            "LLM extraction plan created.",
            {"type": "extraction-plan", "plan": plan.model_dump(), "model": model, "stepId": step_id},
        )
        return plan

    async def build_failure_recovery_plan(
        self,
        run_id: str,
        model: str,
        *,
        failure_type: FailureType,
        prompt: str,
        url: Optional[str],
        dom_text_sample: str,
        ui_inventory: Any,
        extraction_plan: Optional[Dict[str, Any]] = None,
        login_candidates: Any = None,
        step_id: Optional[str] = None,
    ) -> Optional[FailureRecoveryPlan]:
        """Ask for a recovery tactic for a typed step failure."""
        if not ui_inventory:
            return None
        payload = {
            "failureType": failure_type,
            "prompt": prompt,
            "url": url,
            "domTextSample": dom_text_sample,
            "uiInventory": ui_inventory,
            "extractionPlan": extraction_plan,
            "loginCandidates": login_candidates,
        }
        try:
            parsed = await self._ask(model=model, system_prompt=prompts.FAILURE_RECOVERY_PROMPT, payload=payload)
        except Exception as e:
            logger.debug(f"Failure recovery planning failed for run {run_id}: {e}")
            await self._audit.warning(
                run_id,
                "LLM failure recovery plan failed.",
                {"type": "failure-recovery", "failureType": failure_type, "error": str(e), "stepId": step_id},
            )
            return None
        if parsed is None:
            return None
        plan = FailureRecoveryPlan(
            reason=_opt_str(parsed.get("reason")),
            selectors=_strings(parsed.get("selectors")),
            listing_urls=_strings(parsed.get("listingUrls")),
            click_selector=_opt_str(parsed.get("clickSelector")),
            login_url=_opt_str(parsed.get("loginUrl")),
            username_selector=_opt_str(parsed.get("usernameSelector")),
            password_selector=_opt_str(parsed.get("passwordSelector")),
            submit_selector=_opt_str(parsed.get("submitSelector")),
            notes=_opt_str(parsed.get("notes")),
        )
        await self._audit.info(
            run_id,
            "LLM failure recovery plan created.",
            {
                "type": "failure-recovery",
                "failureType": failure_type,
                "plan": plan.model_dump(),
                "model": model,
                "stepId": step_id,
            },
        )
        return plan

    async def build_search_query(self, run_id: str, model: str, *, prompt: str) -> Optional[str]:
        try:
            parsed = await self._ask(model=model, system_prompt=prompts.SEARCH_QUERY_PROMPT, payload={"prompt": prompt})
        except Exception as e:
            logger.debug(f"Search query inference failed for run {run_id}: {e}")
            return None
        query = parsed.get("query") if parsed else None
        if not isinstance(query, str) or not query.strip():
            return None
        return query.strip()

    async def pick_search_result(
        self,
        run_id: str,
        model: str,
        *,
        query: str,
        prompt: str,
        results: Sequence[Dict[str, str]],
    ) -> Optional[str]:
        if not results:
            return None
        try:
            parsed = await self._ask(
                model=model,
                system_prompt=prompts.SEARCH_RESULT_PROMPT,
                payload={"query": query, "prompt": prompt, "results": list(results)},
            )
        except Exception as e:
            logger.debug(f"Search result selection failed for run {run_id}: {e}")
            return None
        url = parsed.get("url") if parsed else None
        if not isinstance(url, str) or not url.strip():
            return None
        return url.strip()

    async def decide_search_first(
        self,
        run_id: str,
        model: str,
        *,
        prompt: str,
        target_url: Optional[str],
        has_explicit_url: bool,
    ) -> Optional[SearchFirstDecision]:
        """Decide between web search and direct navigation.

        Not consulted when the prompt carries an explicit URL or is empty.
        """
        if not prompt or has_explicit_url:
            return None
        try:
            parsed = await self._ask(
                model=model,
                system_prompt=prompts.SEARCH_FIRST_PROMPT,
                payload={"prompt": prompt, "inferredUrl": target_url, "hasExplicitUrl": has_explicit_url},
            )
        except Exception as e:
            logger.debug(f"Tool selection decision failed for run {run_id}: {e}")
            return None
        if parsed is None:
            return None
        query = parsed.get("query").strip() if isinstance(parsed.get("query"), str) else ""
        decision = SearchFirstDecision(
            use_search_first=bool(parsed.get("useSearchFirst")),
            query=query or None,
            reason=_opt_str(parsed.get("reason")),
        )
        await self._audit.info(
            run_id,
            "Tool selection decision.",
            {
                "type": "tool-selection",
                "decision": "search-first" if decision.use_search_first else "direct-navigation",
                "reason": decision.reason,
                "query": decision.query,
                "inferredUrl": target_url,
            },
        )
        return decision
