"""Terminal error taxonomy."""

from __future__ import annotations


class TerminalError(Exception):
    """Base class for terminal session errors."""


class SpawnFailure(TerminalError):
    """The shell process could not be started. The session is not registered."""


class NoActiveSession(TerminalError):
    """No shared terminal session is available for command injection."""

    def __init__(self, message: str = "No active terminal. Open a terminal first.") -> None:
        super().__init__(message)


class ProcessExited(TerminalError):
    """The shell process has exited; its session is in a terminal state."""

    def __init__(self, session_id: str, exit_code: int | None = None) -> None:
        self.session_id = session_id
        self.exit_code = exit_code
        super().__init__(
            f"Terminal session {session_id} has ended (exit code: {exit_code})"
        )
