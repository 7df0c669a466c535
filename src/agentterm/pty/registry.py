"""Session registry — connection id to terminal session, plus the shared pointer."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agentterm.config import TerminalConfig
from agentterm.pty.bridge import IOBridge
from agentterm.pty.buffer import OutputBuffer
from agentterm.pty.shell import ShellMode, ShellProcess

if TYPE_CHECKING:
    from agentterm.session.wire import Wire

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """One connection's shell with its buffer and bridge."""

    id: str
    shell: ShellProcess
    buffer: OutputBuffer
    bridge: IOBridge
    created_at: float = field(default_factory=time.time)
    # Serializes injected commands on this session, FIFO
    command_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def alive(self) -> bool:
        return self.shell.alive

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pid": self.shell.pid,
            "command": " ".join(self.shell.command),
            "cwd": self.shell.cwd,
            "mode": self.shell.mode.value,
            "cols": self.shell.cols,
            "rows": self.shell.rows,
            "alive": self.alive,
            "status": self.shell.status.value,
            "buffered_bytes": self.buffer.size,
            "attached": self.bridge.attached,
            "busy": self.command_lock.locked(),
            "created_at": self.created_at,
        }


class SessionRegistry:
    """Manages the lifecycle of terminal sessions.

    Every remote connection gets its own fresh shell. The registry ensures:
    - Sessions are tracked and can be looked up by connection id
    - Exactly one session (the most recently created) is shared with the agent
    - Session limits are enforced, oldest first
    - All shells are killed on cleanup (no orphan processes)
    - Lifecycle events are fired via Wire (if attached)
    """

    def __init__(
        self,
        config: TerminalConfig | None = None,
        workspace: str | None = None,
        wire: Wire | None = None,
    ) -> None:
        self._config = config or TerminalConfig()
        self._workspace = workspace or "."
        self._wire = wire
        self._sessions: dict[str, Session] = {}
        self._shared: Session | None = None
        self._lock = asyncio.Lock()

    async def create_session(
        self,
        connection_id: str,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> Session:
        """Spawn a fresh shell for ``connection_id`` and make it the shared session.

        Args:
            connection_id: Opaque id of the remote connection.
            cwd: Working directory; defaults to the configured workspace.
            env: Extra environment on top of the configured one.

        Returns:
            The new session.

        Raises:
            SpawnFailure: The shell could not be started. Nothing is registered.
        """
        async with self._lock:
            if connection_id in self._sessions:
                logger.info("Replacing existing session %s", connection_id)
                self._destroy_locked(connection_id, reason="replaced")

            while len(self._sessions) >= self._config.max_sessions:
                oldest = next(iter(self._sessions))
                logger.warning("Max sessions reached, destroying oldest: %s", oldest)
                self._destroy_locked(oldest, reason="evicted")

            cfg = self._config
            shell = await ShellProcess.spawn(
                cwd=cwd or self._workspace,
                env={**cfg.env, **(env or {})},
                command=list(cfg.shell),
                cols=cfg.cols,
                rows=cfg.rows,
                term=cfg.term,
                mode=ShellMode(cfg.mode),
            )
            buffer = OutputBuffer(cfg.buffer_size)
            bridge = IOBridge(shell, buffer)
            session = Session(id=connection_id, shell=shell, buffer=buffer, bridge=bridge)
            self._sessions[connection_id] = session
            shell.pipeline.on_exit(lambda code: self._on_exit(session, code))

            previous = self._shared
            if previous is not None and previous is not session:
                previous.buffer.clear()
            self._shared = session

        logger.info(
            "Session %s created (pid=%s), now shared", connection_id, shell.pid
        )
        if self._wire:
            self._wire.send_session_created(connection_id, shell.pid, shell.cwd)
            self._wire.send_shared_changed(connection_id)
        return session

    def get_shared(self) -> Session | None:
        """The session agent commands run in, or None."""
        return self._shared

    def get(self, connection_id: str) -> Session | None:
        return self._sessions.get(connection_id)

    async def destroy_session(self, connection_id: str) -> None:
        """Kill a session's shell and forget it. Unknown ids are ignored."""
        async with self._lock:
            self._destroy_locked(connection_id, reason="destroyed")

    def _destroy_locked(self, connection_id: str, reason: str) -> None:
        session = self._sessions.pop(connection_id, None)
        if session is None:
            return
        session.shell.kill()
        session.bridge.close()
        logger.info("Session %s %s", connection_id, reason)
        if self._wire:
            self._wire.send_session_closed(connection_id, reason)
        if self._shared is session:
            self._shared = None
            if self._wire:
                self._wire.send_shared_changed(None)

    def _on_exit(self, session: Session, exit_code: int | None) -> None:
        # Sessions destroyed through the registry are already unregistered
        if self._sessions.get(session.id) is not session:
            return
        del self._sessions[session.id]
        session.bridge.close()
        logger.info("Session %s shell exited (code=%s)", session.id, exit_code)
        if self._wire:
            tail = session.buffer.tail_lines(3)
            self._wire.send_pty_exit(session.id, exit_code, "\n".join(tail))
            self._wire.send_session_closed(session.id, "exited")
        if self._shared is session:
            self._shared = None
            if self._wire:
                self._wire.send_shared_changed(None)

    def list_sessions(self) -> list[dict[str, Any]]:
        """Describe all registered sessions."""
        shared = self._shared
        return [
            {**s.describe(), "shared": s is shared} for s in self._sessions.values()
        ]

    async def cleanup(self) -> None:
        """Kill all sessions. Called on shutdown."""
        async with self._lock:
            for connection_id in list(self._sessions.keys()):
                self._destroy_locked(connection_id, reason="shutdown")
        logger.info("All terminal sessions cleaned up")

    @property
    def workspace(self) -> str:
        return self._workspace

    @property
    def config(self) -> TerminalConfig:
        return self._config

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions
