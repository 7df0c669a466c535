"""Tool registry — the set of terminal tools exposed to an agent."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from agentterm.tool.base import BaseTool, ToolError, ToolResult

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Tools by name, in registration order."""

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            logger.warning("Replacing tool %s", tool.name)
        self._tools[tool.name] = tool

    def register_many(self, tools: Iterable[BaseTool]) -> None:
        for tool in tools:
            self.register(tool)

    def unregister(self, name: str) -> BaseTool | None:
        return self._tools.pop(name, None)

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def get_specs(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """OpenAI function specs, for all tools or only those in ``names``."""
        wanted = None if names is None else set(names)
        return [
            tool.to_openai_spec()
            for name, tool in self._tools.items()
            if wanted is None or name in wanted
        ]

    async def call(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Run the named tool; unknown names come back as an error result."""
        tool = self._tools.get(name)
        if tool is None:
            logger.warning("Call to unknown tool %s", name)
            available = ", ".join(self._tools) or "none"
            return ToolError(output=f"Unknown tool: {name}. Available tools: {available}")
        logger.info("Tool call %s", name)
        return await tool.run(arguments)

    async def dispatch(self, name: str, arguments: dict[str, Any]) -> tuple[str, bool]:
        """Like ``call``, as the (content, is_error) pair for an LLM loop."""
        result = await self.call(name, arguments)
        return result.output, result.is_error

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
