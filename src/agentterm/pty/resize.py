"""Resize channel — client geometry changes applied to the shell, best-effort."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

if TYPE_CHECKING:
    from agentterm.pty.shell import ShellProcess

logger = logging.getLogger(__name__)


class ResizeRequest(BaseModel):
    """A ``{cols, rows}`` notification from a client."""

    cols: int = Field(gt=0, le=10_000)
    rows: int = Field(gt=0, le=10_000)

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> ResizeRequest | None:
        """Build a request from a decoded control message, or None if invalid."""
        try:
            return cls.model_validate(
                {"cols": message.get("cols"), "rows": message.get("rows")}
            )
        except ValidationError as e:
            logger.debug("Ignoring malformed resize message %r: %s", message, e)
            return None


class ResizeChannel:
    """Applies resize requests to one shell.

    Resizes race with rapid client layout changes and some process models
    cannot resize at all, so failures are logged and swallowed. Nothing
    here ever raises into the connection.
    """

    def __init__(self, shell: ShellProcess) -> None:
        self._shell = shell

    def apply(self, request: ResizeRequest) -> bool:
        return self._shell.resize(request.cols, request.rows)

    def apply_message(self, message: dict[str, Any]) -> bool:
        request = ResizeRequest.from_message(message)
        if request is None:
            return False
        return self.apply(request)
