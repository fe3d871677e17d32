"""Session and long-term memory with validated writes.

Session memory is an append-only list per run; the last few items are fed to
the planner as context. Long-term memory is shared by every run with the same
memory key and is *validated before insertion*: a dedicated validation model
must approve each candidate, and any validation failure discards it
(fail-closed). Listing long-term memory bumps ``last_accessed_at`` on every
returned row.

Availability of the memory tables is a repository concern; see
``NotProvisionedMemoryRepository``.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from pydantic import Field

from ..gateway import ModelGateway, parse_json_object, request_json
from ..planning import prompts
from ..repos.interfaces import MemoryRepository
from ..schemas.base import BaseSchema
from ..schemas.domain import LongTermMemoryItem, MemoryItem

logger = logging.getLogger(__name__)

_URL_PATTERN = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)
_DOMAIN_PATTERN = re.compile(r"\b((?:[a-z0-9](?:[a-z0-9-]*[a-z0-9])?\.)+[a-z]{2,})\b", re.IGNORECASE)


class MemoryValidation(BaseSchema):
    valid: bool
    issues: List[str] = Field(default_factory=list)
    reason: Optional[str] = None
    model: Optional[str] = None


class MemoryWriteResult(BaseSchema):
    skipped: bool
    validation: Optional[MemoryValidation] = None
    record: Optional[LongTermMemoryItem] = None


def _host(value: str) -> Optional[str]:
    host = urlparse(value if "://" in value else f"http://{value}").hostname
    if not host:
        return None
    return host.lower().removeprefix("www.")


def prompt_target_host(prompt: Optional[str]) -> Optional[str]:
    """Host of the first URL (or bare domain) mentioned in a prompt."""
    if not prompt:
        return None
    match = _URL_PATTERN.search(prompt)
    if match:
        return _host(match.group(0))
    match = _DOMAIN_PATTERN.search(prompt)
    return _host(match.group(1)) if match else None


def hosts_conflict(prompt_host: Optional[str], metadata_url: Any) -> bool:
    if not prompt_host or not isinstance(metadata_url, str) or not metadata_url.strip():
        return False
    other = _host(metadata_url.strip())
    if not other:
        return False
    return not (other == prompt_host or other.endswith(f".{prompt_host}") or prompt_host.endswith(f".{other}"))


class MemoryStore:
    """Facade over a ``MemoryRepository`` plus the memory validation model."""

    def __init__(self, repo: MemoryRepository, gateway: ModelGateway) -> None:
        self._repo = repo
        self._gateway = gateway

    # Session scope ---------------------------------------------------------

    async def add_memory(
        self, run_id: str, content: str, metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[MemoryItem]:
        return await self._repo.add_memory(MemoryItem(run_id=run_id, content=content, metadata=metadata or {}))

    async def list_memory(self, run_id: str, limit: int = 20) -> List[MemoryItem]:
        return await self._repo.list_memory(run_id, limit=limit)

    # Long-term scope -------------------------------------------------------

    async def add_long_term_memory(
        self,
        memory_key: str,
        content: str,
        *,
        run_id: Optional[str] = None,
        summary: Optional[str] = None,
        tags: Sequence[str] = (),
        metadata: Optional[Dict[str, Any]] = None,
        importance: int = 3,
    ) -> Optional[LongTermMemoryItem]:
        """Insert a long-term item without validation.

        Callers that store model-derived content use
        ``validate_and_add_long_term_memory`` instead.
        """
        item = LongTermMemoryItem(
            memory_key=memory_key,
            run_id=run_id,
            content=content,
            summary=summary,
            tags=list(dict.fromkeys(tags)),
            metadata=metadata or {},
            importance=min(max(importance, 1), 5),
        )
        return await self._repo.add_long_term(item)

    async def list_long_term_memory(
        self, memory_key: str, tags: Optional[Sequence[str]] = None, limit: int = 20
    ) -> List[LongTermMemoryItem]:
        return await self._repo.list_long_term(memory_key, tags=tags, limit=limit)

    async def summarize_long_term_memory(self, model: str, *, content: str, prompt: Optional[str]) -> Optional[str]:
        """Best-effort one-line summary; ``None`` on any failure."""
        try:
            parsed = await request_json(
                self._gateway,
                model=model,
                system_prompt=prompts.MEMORY_SUMMARY_PROMPT,
                payload={"prompt": prompt, "content": content},
                decoder=parse_json_object,
            )
        except Exception as e:
            logger.debug(f"Memory summarization failed: {e}")
            return None
        summary = parsed.get("summary") if parsed else None
        return summary.strip() if isinstance(summary, str) and summary.strip() else None

    async def validate_long_term_memory(
        self,
        model: str,
        *,
        prompt: Optional[str],
        content: str,
        summary: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> MemoryValidation:
        """Ask the validation model whether a candidate may be stored.

        A prompt host that conflicts with ``metadata["url"]`` is rejected
        without a model call. Transport or parse failures yield
        ``valid=False``.
        """
        metadata = metadata or {}
        prompt_host = prompt_target_host(prompt)
        if hosts_conflict(prompt_host, metadata.get("url")):
            return MemoryValidation(
                valid=False,
                issues=[f"Prompt targets {prompt_host} but metadata.url is {metadata.get('url')}."],
                reason="Target host mismatch.",
                model=model,
            )

        payload = {"prompt": prompt, "content": content, "summary": summary, "metadata": metadata}
        try:
            parsed = await request_json(
                self._gateway,
                model=model,
                system_prompt=prompts.MEMORY_VALIDATION_PROMPT,
                payload=payload,
                decoder=parse_json_object,
                temperature=0.1,
            )
            if parsed is None:
                raise ValueError("validator returned no JSON object")
        except Exception as e:
            return MemoryValidation(
                valid=False,
                issues=[f"Memory validation failed: {e}"],
                reason="Validation unavailable.",
                model=model,
            )

        raw_issues = parsed.get("issues")
        issues = [i for i in raw_issues if isinstance(i, str)] if isinstance(raw_issues, list) else []
        reason = parsed.get("reason") if isinstance(parsed.get("reason"), str) else None
        return MemoryValidation(valid=parsed.get("valid") is True, issues=issues, reason=reason, model=model)

    async def validate_and_add_long_term_memory(
        self,
        *,
        memory_key: str,
        content: str,
        validation_model: str,
        run_id: Optional[str] = None,
        summary: Optional[str] = None,
        tags: Sequence[str] = (),
        metadata: Optional[Dict[str, Any]] = None,
        importance: int = 3,
        prompt: Optional[str] = None,
        summarization_model: Optional[str] = None,
    ) -> MemoryWriteResult:
        """Summarize (optional), validate, and insert only when valid."""
        if summarization_model:
            summary = await self.summarize_long_term_memory(summarization_model, content=content, prompt=prompt) or summary

        validation = await self.validate_long_term_memory(
            validation_model, prompt=prompt, content=content, summary=summary, metadata=metadata
        )
        if not validation.valid:
            logger.debug(f"Long-term memory rejected for key {memory_key}: {validation.issues or validation.reason}")
            return MemoryWriteResult(skipped=True, validation=validation)

        record = await self.add_long_term_memory(
            memory_key,
            content,
            run_id=run_id,
            summary=summary,
            tags=tags,
            metadata={**(metadata or {}), "validation": validation.model_dump()},
            importance=importance,
        )
        return MemoryWriteResult(skipped=record is None, validation=validation, record=record)
