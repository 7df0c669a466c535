"""Terminal tools for agents — base classes, registry, and output shaping."""

from __future__ import annotations

from typing import TYPE_CHECKING

from agentterm.tool.base import BaseTool, ToolError, ToolOk, ToolResult
from agentterm.tool.registry import ToolRegistry
from agentterm.tool.truncation import truncate_output

if TYPE_CHECKING:
    from agentterm.service import TerminalService


def build_tool_registry(service: TerminalService) -> ToolRegistry:
    """Registry with every built-in terminal tool bound to ``service``."""
    from agentterm.tool.builtin import RunInTerminalTool, TerminalOutputTool

    registry = ToolRegistry()
    registry.register_many([RunInTerminalTool(service), TerminalOutputTool(service)])
    return registry


__all__ = [
    "BaseTool",
    "ToolResult",
    "ToolOk",
    "ToolError",
    "ToolRegistry",
    "build_tool_registry",
    "truncate_output",
]
