"""Terminal tools — run commands in, and read from, the user's open terminal.

Unlike a private subprocess, these act on the shell the human is looking
at: the command and its output appear on their screen, and state such as
the working directory or activated environments is shared both ways.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, ClassVar

from pydantic import BaseModel, Field

from agentterm.pty.errors import NoActiveSession, ProcessExited
from agentterm.tool.base import BaseTool, ToolError, ToolOk, ToolResult
from agentterm.tool.truncation import clean_terminal_text

if TYPE_CHECKING:
    from agentterm.service import TerminalService

logger = logging.getLogger(__name__)


class RunInTerminalParams(BaseModel):
    command: str = Field(description="The shell command to run in the terminal.")
    timeout: float | None = Field(
        default=None,
        gt=0,
        description="Timeout in seconds. Defaults to the server setting (30s).",
    )


class RunInTerminalTool(BaseTool[RunInTerminalParams]):
    """Inject a command into the shared terminal and return only its output."""

    name: ClassVar[str] = "run_in_terminal"
    description: ClassVar[str] = (
        "Run a shell command in the user's open terminal and return its output. "
        "The command runs in the same shell the user sees: cd, env vars and "
        "other state persist between calls and are shared with the user. "
        "A command that exceeds the timeout is interrupted with Ctrl-C and "
        "whatever it printed so far is returned. Do not start programs that "
        "wait for keyboard input."
    )
    param_model: ClassVar[type[BaseModel]] = RunInTerminalParams

    def __init__(self, service: TerminalService) -> None:
        self._service = service

    async def execute(self, params: RunInTerminalParams) -> ToolResult:
        try:
            result = await self._service.run(params.command, timeout=params.timeout)
        except (NoActiveSession, ProcessExited) as e:
            logger.info("run_in_terminal unavailable: %s", e)
            return ToolError(output=str(e), brief=f"Failed: {params.command[:50]}")
        except ValueError as e:
            return ToolError(output=str(e))

        output = clean_terminal_text(result.output)
        brief = f"exit={result.exit_code}: {params.command[:50]}"

        if result.timed_out:
            seconds = params.timeout or round(result.duration, 1)
            note = f"[Command timed out after {seconds:g}s and was interrupted]"
            return ToolError(
                output=f"{note}\n{output}" if output else note,
                brief=f"Timeout: {params.command[:50]}",
                timed_out=True,
            )

        if result.exit_code not in (0, None):
            return ToolError(
                output=f"[Exit code: {result.exit_code}]\n{output}",
                brief=brief,
                exit_code=result.exit_code,
            )

        return ToolOk(output=output, brief=brief, exit_code=result.exit_code)


class TerminalOutputParams(BaseModel):
    lines: int = Field(
        default=200, gt=0, le=5000, description="Number of trailing lines to return."
    )
    pattern: str | None = Field(
        default=None,
        description="Optional regex; when given, only matching lines are returned.",
    )


class TerminalOutputTool(BaseTool[TerminalOutputParams]):
    """Read recent output of the shared terminal, including what the user ran."""

    name: ClassVar[str] = "get_terminal_output"
    description: ClassVar[str] = (
        "Read the most recent output of the user's open terminal, including "
        "commands the user typed themselves. Use `pattern` to search it."
    )
    param_model: ClassVar[type[BaseModel]] = TerminalOutputParams

    def __init__(self, service: TerminalService) -> None:
        self._service = service

    async def execute(self, params: TerminalOutputParams) -> ToolResult:
        session = self._service.registry.get_shared()
        if session is None:
            return ToolError(output=str(NoActiveSession()))

        if params.pattern:
            matches = session.buffer.search(params.pattern, limit=params.lines)
            if not matches:
                return ToolOk(
                    output=f"No lines match {params.pattern!r}",
                    brief="0 matches",
                )
            output = "\n".join(f"{lineno}: {line}" for lineno, line in matches)
            return ToolOk(output=output, brief=f"{len(matches)} matches")

        lines = session.buffer.tail_lines(params.lines)
        return ToolOk(output="\n".join(lines), brief=f"{len(lines)} lines")
