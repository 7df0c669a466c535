"""IOBridge — duplex byte pump between a remote connection and a shell.

Outbound, every chunk the shell produces is forwarded to the attached
connection and then appended to the session's OutputBuffer. Inbound,
client messages are either keystrokes (written verbatim) or JSON control
messages (resize, wrapped input).
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Protocol

from agentterm.pty.resize import ResizeChannel

if TYPE_CHECKING:
    from agentterm.pty.buffer import OutputBuffer
    from agentterm.pty.shell import ShellProcess

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """The outbound half of a remote client channel.

    Both methods are fire-and-forget: they must not block the caller.
    """

    id: str

    def send_output(self, data: bytes) -> None: ...

    def send_exit(self, exit_code: int | None) -> None: ...


def decode_control_message(message: bytes | str) -> dict[str, Any] | None:
    """Return a JSON control message, or None if this is plain keystroke data."""
    if isinstance(message, bytes):
        return None
    stripped = message.strip()
    if not (stripped.startswith("{") and stripped.endswith("}")):
        return None
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    if parsed.get("type") in ("resize", "input"):
        return parsed
    if "type" not in parsed and "cols" in parsed and "rows" in parsed:
        return {**parsed, "type": "resize"}
    return None


class IOBridge:
    """Binds one shell's output pipeline to a connection and an OutputBuffer.

    The bridge subscribes to the shell for the whole session lifetime. The
    connection can come and go (``attach``/``detach``); output keeps landing
    in the buffer while detached, so the agent path never loses bytes a
    client disconnect would have dropped.
    """

    def __init__(self, shell: ShellProcess, buffer: OutputBuffer) -> None:
        self._shell = shell
        self._buffer = buffer
        self._resize = ResizeChannel(shell)
        self._connection: Connection | None = None
        self._bytes_forwarded: int = 0
        self._unsubscribe = shell.pipeline.subscribe(self._on_output)
        self._remove_exit = shell.pipeline.on_exit(self._on_exit)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def attach(self, connection: Connection) -> None:
        """Start forwarding output to ``connection``, replacing any previous one."""
        if self._connection is not None and self._connection is not connection:
            logger.info(
                "Bridge for shell %s: replacing connection %s with %s",
                self._shell.id,
                self._connection.id,
                connection.id,
            )
        self._connection = connection

    def detach(self) -> None:
        """Stop forwarding to the current connection. Buffering continues."""
        if self._connection is not None:
            logger.debug(
                "Bridge for shell %s detached from %s",
                self._shell.id,
                self._connection.id,
            )
        self._connection = None

    def close(self) -> None:
        """Unsubscribe from the shell entirely."""
        self._connection = None
        self._unsubscribe()
        self._remove_exit()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def _on_output(self, data: bytes) -> None:
        connection = self._connection
        if connection is not None:
            try:
                connection.send_output(data)
                self._bytes_forwarded += len(data)
            except Exception as e:
                logger.warning(
                    "Forwarding to connection %s failed, detaching: %s",
                    connection.id,
                    e,
                )
                self._connection = None
        self._buffer.append(data)

    def _on_exit(self, exit_code: int | None) -> None:
        connection = self._connection
        if connection is None:
            return
        try:
            connection.send_exit(exit_code)
        except Exception as e:
            logger.warning(
                "Exit notification to connection %s failed: %s", connection.id, e
            )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def handle_message(self, message: bytes | str) -> None:
        """Route one inbound client message.

        Raises:
            ProcessExited: Keystrokes arrived after the shell ended.
        """
        control = decode_control_message(message)
        if control is None:
            await self._shell.write(message)
            return

        if control["type"] == "resize":
            # Never forwarded to the shell
            self._resize.apply_message(control)
            return

        data = control.get("data")
        if isinstance(data, str) and data:
            await self._shell.write(data)

    @property
    def connection(self) -> Connection | None:
        return self._connection

    @property
    def attached(self) -> bool:
        return self._connection is not None

    @property
    def bytes_forwarded(self) -> int:
        return self._bytes_forwarded
