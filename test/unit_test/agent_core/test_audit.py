from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

import pytest

from webpilot_ai.agent_core.audit import AuditLogger
from webpilot_ai.agent_core.schemas.domain import AuditLevel


class _Color(str, Enum):
    red = "red"


class _BrokenRepository:
    async def append(self, entry) -> None:
        raise RuntimeError("disk full")


@pytest.mark.asyncio
async def test_metadata_is_made_json_safe(audit_repo) -> None:
    audit = AuditLogger(audit_repo)

    await audit.warning(
        "run-1", "Something odd.", {"type": "x", "when": datetime(2024, 1, 2, tzinfo=timezone.utc), "color": _Color.red}
    )

    entry = audit_repo.entries[0]
    assert entry.level == AuditLevel.warning
    assert entry.metadata["when"].startswith("2024-01-02")
    assert entry.metadata["color"] == "red"


@pytest.mark.asyncio
async def test_level_helpers(audit_repo) -> None:
    audit = AuditLogger(audit_repo)

    await audit.info("run-1", "a")
    await audit.error("run-1", "b", {"type": "y"})
    await audit.log("run-1", "warning", "c")

    assert [e.level for e in audit_repo.entries] == [AuditLevel.info, AuditLevel.error, AuditLevel.warning]
    assert audit_repo.entries[0].metadata == {}


@pytest.mark.asyncio
async def test_failing_store_drops_entry() -> None:
    audit = AuditLogger(_BrokenRepository())

    await audit.info("run-1", "lost")
