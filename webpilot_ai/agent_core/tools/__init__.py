"""Tool executor contract and registry.

A *tool executor* performs the side-effecting part of a plan step (browser
automation). The engine never talks to a browser directly:

- ``ToolExecutor``: protocol for async step execution and browser snapshots.
- ``ToolRegistry``: tool name → executor mapping.
- ``ToolRequest``/``ToolResult``: execution input/output models.
- ``ToolFailureType``: typed failures that drive recovery planning.
"""

from .base import ToolExecutor, ToolFailureType, ToolRequest, ToolResult
from .registry import ToolRegistry

__all__ = [
    "ToolExecutor",
    "ToolFailureType",
    "ToolRequest",
    "ToolResult",
    "ToolRegistry",
]
