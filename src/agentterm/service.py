"""Terminal service — the agent's view of the shared terminal."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from agentterm.pty.errors import NoActiveSession
from agentterm.pty.injector import DEFAULT_TIMEOUT, CapturedOutput, CommandInjector

if TYPE_CHECKING:
    from agentterm.pty.registry import SessionRegistry
    from agentterm.session.wire import Wire

logger = logging.getLogger(__name__)


class TerminalService:
    """Runs agent commands in whichever session is currently shared."""

    def __init__(
        self,
        registry: SessionRegistry,
        injector: CommandInjector | None = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        wire: Wire | None = None,
    ) -> None:
        self._registry = registry
        self._injector = injector or CommandInjector()
        self._default_timeout = default_timeout
        self._wire = wire

    async def run(self, command: str, timeout: float | None = None) -> CapturedOutput:
        """Run ``command`` in the shared session.

        Raises:
            NoActiveSession: No terminal is open.
            ProcessExited: The shell ended before the command completed.
            ValueError: ``command`` is empty.
        """
        session = self._registry.get_shared()
        if session is None:
            raise NoActiveSession()
        if not command.strip():
            raise ValueError("command must not be empty")
        timeout = self._default_timeout if timeout is None else timeout
        if self._wire:
            self._wire.send_command_begin(session.id, command)

        result = await self._injector.run(session, command, timeout=timeout)

        logger.info(
            "Command in session %s finished: exit=%s timed_out=%s (%.2fs)",
            session.id,
            result.exit_code,
            result.timed_out,
            result.duration,
        )
        if self._wire:
            self._wire.send_command_end(
                session.id,
                command,
                result.exit_code,
                result.timed_out,
                result.duration,
            )
        return result

    async def run_in_terminal(self, command: str, timeout: float | None = None) -> str:
        """Run ``command`` and return its output as text.

        A timed-out command returns whatever it printed so far, followed by
        a note saying it timed out.
        """
        result = await self.run(command, timeout=timeout)
        if not result.timed_out:
            return result.output
        if not result.output:
            return "(command timed out)"
        seconds = self._default_timeout if timeout is None else timeout
        return f"{result.output}\n(command timed out after {seconds:g}s)"

    def get_recent_output(self) -> str:
        """Text of the shared session's rolling buffer; empty with no session."""
        session = self._registry.get_shared()
        if session is None:
            return ""
        return session.buffer.text()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry
