"""Memory repository for deployments without the memory tables.

Memory is a soft dependency of the engine: a run must still execute when the
memory tables were never created. This variant answers every call with an
empty result and logs at debug level, so call sites never branch on whether
memory exists.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from ..schemas.domain import LongTermMemoryItem, MemoryItem
from .interfaces import MemoryRepository

logger = logging.getLogger(__name__)


class NotProvisionedMemoryRepository(MemoryRepository):
    """No-op ``MemoryRepository``."""

    async def add_memory(self, item: MemoryItem) -> Optional[MemoryItem]:
        logger.debug(f"Session memory not provisioned; dropping item for run {item.run_id}")
        return None

    async def list_memory(self, run_id: str, limit: int = 20) -> list[MemoryItem]:
        logger.debug(f"Session memory not provisioned; nothing to list for run {run_id}")
        return []

    async def add_long_term(self, item: LongTermMemoryItem) -> Optional[LongTermMemoryItem]:
        logger.debug(f"Long-term memory not provisioned; dropping item for key {item.memory_key}")
        return None

    async def list_long_term(
        self, memory_key: str, tags: Optional[Sequence[str]] = None, limit: int = 20
    ) -> list[LongTermMemoryItem]:
        logger.debug(f"Long-term memory not provisioned; nothing to list for key {memory_key}")
        return []
