from __future__ import annotations

"""Tool registry.

The registry maps a ``StepTool`` to an executor implementation. The engine
uses it to dispatch plan steps and to fetch browser-context snapshots.
"""

import logging
from typing import Any, Dict, Optional

from ..schemas.domain import StepTool
from .base import ToolExecutor

logger = logging.getLogger(__name__)


class ToolRegistry:
    """
    In-memory mapping of tool names to executors.

    Notes:
        - ``register`` overwrites any existing mapping for the tool name.
        - ``get`` will raise ``KeyError`` if the tool is missing.
    """

    def __init__(self) -> None:
        """Initialize an empty tool registry."""
        self._tools: Dict[StepTool, ToolExecutor] = {}

    def register(self, tool: ToolExecutor) -> None:
        """
        Register a tool executor.

        Args:
            tool: The executor instance to register. It must expose a ``name`` attribute.
        """
        self._tools[StepTool(tool.name)] = tool

    def get(self, name: StepTool) -> ToolExecutor:
        """
        Retrieve a registered executor by name.

        Raises:
            KeyError: If no executor is registered with the given name.
        """
        return self._tools[StepTool(name)]

    def has(self, name: StepTool) -> bool:
        return StepTool(name) in self._tools

    async def browser_context(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Browser snapshot from the playwright executor, if one is registered.

        A failing snapshot is logged and treated as "no context".
        """
        if not self.has(StepTool.playwright):
            return None
        try:
            return await self._tools[StepTool.playwright].browser_context(run_id)
        except Exception as e:
            logger.debug(f"Browser context unavailable for run {run_id}: {e}")
            return None
