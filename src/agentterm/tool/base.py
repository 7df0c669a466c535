"""Tool base — pydantic-validated, agent-callable operations on the terminal."""

from __future__ import annotations

import dataclasses
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from agentterm.tool.truncation import MAX_BYTES, MAX_LINES, truncate_output

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)


@dataclass
class ToolResult:
    """What a terminal tool hands back to the calling agent.

    ``exit_code`` and ``timed_out`` mirror the captured command, when the
    tool ran one, so callers can branch without parsing ``output``.
    """

    output: str = ""
    brief: str = ""  # one-line summary for logs
    is_error: bool = False
    exit_code: int | None = None
    timed_out: bool = False

    def bounded(self, max_lines: int = MAX_LINES, max_bytes: int = MAX_BYTES) -> ToolResult:
        return dataclasses.replace(
            self, output=truncate_output(self.output, max_lines=max_lines, max_bytes=max_bytes)
        )

    def to_payload(self) -> dict[str, Any]:
        """JSON form returned by ``POST /api/tools/{name}``."""
        return {
            "content": self.output,
            "is_error": self.is_error,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
        }


@dataclass
class ToolOk(ToolResult):
    is_error: bool = False


@dataclass
class ToolError(ToolResult):
    is_error: bool = True


def describe_validation_error(error: ValidationError) -> str:
    """One line per bad field, e.g. ``timeout: Input should be greater than 0``."""
    problems = []
    for item in error.errors():
        where = ".".join(str(part) for part in item["loc"]) or "arguments"
        problems.append(f"{where}: {item['msg']}")
    return "Invalid parameters: " + "; ".join(problems)


class BaseTool(ABC, Generic[P]):
    """An operation an LLM can call by name with JSON arguments.

    Subclasses declare ``name``, ``description`` and a pydantic
    ``param_model``; ``execute`` receives the validated model.
    ``run()`` never raises: bad arguments and unexpected failures come back
    as error results, so a tool-calling loop can feed them to the model.

        class HistoryTool(BaseTool[HistoryParams]):
            name = "shell_history"
            description = "Show recent shell history"
            param_model = HistoryParams

            async def execute(self, params: HistoryParams) -> ToolResult:
                ...
    """

    name: ClassVar[str]
    description: ClassVar[str]
    param_model: ClassVar[type[BaseModel]]

    # Per-tool output bounds, applied after execute()
    max_lines: ClassVar[int] = MAX_LINES
    max_bytes: ClassVar[int] = MAX_BYTES

    async def run(self, arguments: dict[str, Any]) -> ToolResult:
        try:
            params = self.param_model.model_validate(arguments)
        except ValidationError as e:
            logger.info("Tool %s rejected arguments (%d errors)", self.name, e.error_count())
            return ToolError(output=describe_validation_error(e), brief="invalid arguments")

        try:
            result = await self.execute(params)  # type: ignore[arg-type]
        except Exception as e:
            logger.error("Tool %s failed: %s", self.name, e, exc_info=True)
            return ToolError(output=f"Error executing {self.name}: {e}", brief=type(e).__name__)

        if result.brief:
            logger.debug("Tool %s: %s", self.name, result.brief)
        return result.bounded(self.max_lines, self.max_bytes)

    async def __call__(self, arguments: dict[str, Any]) -> tuple[str, bool]:
        """Run and return the ``(content, is_error)`` pair an LLM loop sends back."""
        result = await self.run(arguments)
        return result.output, result.is_error

    @abstractmethod
    async def execute(self, params: P) -> ToolResult:
        """Run the tool with validated parameters."""
        ...

    def to_openai_spec(self) -> dict[str, Any]:
        """OpenAI-style function tool definition for this tool."""
        parameters = self.param_model.model_json_schema()
        # Pydantic's title and $defs only add noise to the prompt
        for key in ("title", "$defs"):
            parameters.pop(key, None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }
