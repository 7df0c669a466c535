"""Built-in terminal tools."""

from agentterm.tool.builtin.terminal import RunInTerminalTool, TerminalOutputTool

__all__ = [
    "RunInTerminalTool",
    "TerminalOutputTool",
]
