"""Audit trail writer.

The audit log is the only externally inspectable record of why the engine did
what it did: every planning decision, validation and recovery writes one
entry. Entries carry a ``type`` tag in their metadata (``plan``,
``checkpoint-save``, ``loop-guard`` ...) so clients can filter the trail.

A failing audit store never breaks a run; the failure is logged and the
entry is dropped.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic_core import to_jsonable_python

from .repos.interfaces import AuditRepository
from .schemas.domain import AuditEntry, AuditLevel

logger = logging.getLogger(__name__)


class AuditLogger:
    def __init__(self, audits: AuditRepository) -> None:
        self._audits = audits

    async def log(
        self,
        run_id: str,
        level: AuditLevel,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = AuditEntry(
            run_id=run_id,
            level=AuditLevel(level),
            message=message,
            metadata=to_jsonable_python(metadata or {}, fallback=str),
        )
        try:
            await self._audits.append(entry)
        except Exception as e:
            logger.warning(f"Dropping audit entry '{message}' for run {run_id}: {e}")

    async def info(self, run_id: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        await self.log(run_id, AuditLevel.info, message, metadata)

    async def warning(self, run_id: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        await self.log(run_id, AuditLevel.warning, message, metadata)

    async def error(self, run_id: str, message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        await self.log(run_id, AuditLevel.error, message, metadata)
