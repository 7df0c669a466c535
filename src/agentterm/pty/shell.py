"""Shell process — one spawned interactive shell behind a pty or pipes."""

from __future__ import annotations

import asyncio
import enum
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
import uuid
from dataclasses import dataclass, field
from typing import Any

from agentterm.pty.errors import ProcessExited, SpawnFailure
from agentterm.pty.pipeline import OutputPipeline

logger = logging.getLogger(__name__)

READ_CHUNK = 4096
DEFAULT_SHELL = ["bash", "--login", "-i"]
INTERRUPT = b"\x03"  # ^C


class ShellStatus(enum.Enum):
    """Lifecycle states for a shell process."""

    STARTING = "starting"
    RUNNING = "running"
    KILLING = "killing"  # Kill requested, waiting for process to die
    KILLED = "killed"  # Killed by us (SIGKILL)
    EXITED = "exited"  # Process exited on its own


class ShellMode(enum.StrEnum):
    """Process model used to talk to the shell."""

    PTY = "pty"
    PIPE = "pipe"  # Plain pipes; no terminal, cannot be resized


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    # Window size: (rows, cols, xpixel, ypixel)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _claim_controlling_tty() -> None:
    """Make the pty slave (already on fd 0) the child's controlling terminal.

    Runs in the child between fork and exec, after ``setsid()``. Without a
    controlling terminal the shell has no job control and ^C from the
    client never reaches the foreground command.
    """
    try:
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
    except OSError:
        pass


@dataclass
class ShellProcess:
    """A managed interactive shell.

    Wraps the shell process with:
    - Process group isolation (start_new_session) for safe tree-killing
    - A single event-loop reader feeding an OutputPipeline
    - A serialized write path shared by every writer
    - Best-effort resize
    - Exit notification through the pipeline, exactly once

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when
    spawned from within an asyncio event loop on macOS.
    """

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    command: list[str] = field(default_factory=lambda: list(DEFAULT_SHELL))
    cwd: str = field(default_factory=os.getcwd)
    env: dict[str, str] = field(default_factory=dict)
    cols: int = 120
    rows: int = 30
    term: str = "xterm-256color"
    mode: ShellMode = ShellMode.PTY
    pipeline: OutputPipeline = field(default_factory=OutputPipeline)

    # Internal state
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _read_fd: int = field(default=-1, init=False)
    _write_fd: int = field(default=-1, init=False)
    _pgid: int = field(default=0, init=False)
    _status: ShellStatus = field(default=ShellStatus.STARTING, init=False)
    _exit_code: int | None = field(default=None, init=False)
    _finished: bool = field(default=False, init=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False)
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _closed: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _reaper: asyncio.Task | None = field(default=None, init=False)

    @classmethod
    async def spawn(
        cls, cwd: str, env: dict[str, str] | None = None, **options: Any
    ) -> ShellProcess:
        """Create and start a shell bound to ``cwd`` and ``env``."""
        shell = cls(cwd=cwd, env=env or {}, **options)
        await shell.start()
        return shell

    async def start(self) -> None:
        """Spawn the shell and start delivering its output.

        Raises:
            SpawnFailure: The process could not be started.
        """
        if self._status is not ShellStatus.STARTING:
            raise RuntimeError(f"Shell {self.id} was already started")

        env = {**os.environ, **self.env}
        env["TERM"] = self.term

        if self.mode is ShellMode.PTY:
            self._spawn_pty(env)
        else:
            self._spawn_pipe(env)

        assert self._proc is not None
        try:
            self._pgid = os.getpgid(self._proc.pid)
        except ProcessLookupError:
            self._pgid = self._proc.pid

        os.set_blocking(self._read_fd, False)
        os.set_blocking(self._write_fd, False)

        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(self._read_fd, self._on_readable)
        self._status = ShellStatus.RUNNING

        logger.info(
            "Shell %s started: pid=%d pgid=%d mode=%s cwd=%s cmd=%s",
            self.id,
            self._proc.pid,
            self._pgid,
            self.mode.value,
            self.cwd,
            " ".join(self.command),
        )

    def _spawn_pty(self, env: dict[str, str]) -> None:
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnFailure(f"Could not allocate a pseudo-terminal: {e}") from e

        try:
            _set_winsize(slave_fd, self.cols, self.rows)
        except OSError as e:
            logger.debug("Initial window size not applied for %s: %s", self.id, e)

        try:
            self._proc = subprocess.Popen(
                self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,  # Creates new process group
                preexec_fn=_claim_controlling_tty,
                env=env,
                cwd=self.cwd,
            )
        except (OSError, subprocess.SubprocessError) as e:
            os.close(master_fd)
            raise SpawnFailure(
                f"Failed to spawn {' '.join(self.command)!r} in {self.cwd}: {e}"
            ) from e
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._read_fd = self._write_fd = master_fd

    def _spawn_pipe(self, env: dict[str, str]) -> None:
        try:
            self._proc = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                env=env,
                cwd=self.cwd,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise SpawnFailure(
                f"Failed to spawn {' '.join(self.command)!r} in {self.cwd}: {e}"
            ) from e

        assert self._proc.stdin is not None and self._proc.stdout is not None
        self._read_fd = self._proc.stdout.fileno()
        self._write_fd = self._proc.stdin.fileno()

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _on_readable(self) -> None:
        """Event-loop callback: read one chunk and publish it."""
        try:
            data = os.read(self._read_fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError as e:
            # EIO once the pty slave side is gone
            logger.debug("Shell %s read ended: %s", self.id, e)
            data = b""

        if not data:
            self._handle_eof()
            return

        self.pipeline.publish(data)

    def _handle_eof(self) -> None:
        self._detach_reader()
        if self._status is ShellStatus.RUNNING and self._reaper is None:
            assert self._loop is not None
            self._reaper = self._loop.create_task(self._reap())

    async def _reap(self) -> None:
        exit_code = await asyncio.to_thread(self._wait_for_proc)
        if self._finished:
            # Killed while waiting; kill() published without a code
            if exit_code is not None:
                self._exit_code = exit_code
            return
        if self._status is ShellStatus.RUNNING:
            self._status = ShellStatus.EXITED
            logger.info("Shell %s exited (code=%s)", self.id, exit_code)
        self._finish(exit_code)

    def _wait_for_proc(self, timeout: float = 5.0) -> int | None:
        if self._proc is None:
            return None
        try:
            return self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return self._proc.poll()

    def _finish(self, exit_code: int | None) -> None:
        """Release descriptors and publish the exit, once."""
        if self._finished:
            return
        self._finished = True
        self._exit_code = exit_code
        self._detach_reader()
        self._close_fds()
        self.pipeline.close(exit_code)
        self._closed.set()

    def _loop_usable(self) -> bool:
        return self._loop is not None and not self._loop.is_closed()

    def _detach_reader(self) -> None:
        if self._read_fd >= 0 and self._loop_usable():
            self._loop.remove_reader(self._read_fd)

    def _close_fds(self) -> None:
        if self.mode is ShellMode.PIPE and self._proc is not None:
            for stream in (self._proc.stdin, self._proc.stdout):
                if stream is None:
                    continue
                try:
                    stream.close()
                except OSError:
                    pass
        elif self._read_fd >= 0:
            try:
                os.close(self._read_fd)
            except OSError:
                pass
        self._read_fd = self._write_fd = -1

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def write(self, data: bytes | str) -> None:
        """Send raw bytes to the shell's input.

        All writers (keystrokes, injected commands) go through one lock so
        their bytes never interleave mid-write.

        Raises:
            ProcessExited: The shell is no longer running.
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not self.alive:
            raise ProcessExited(self.id, self._exit_code)

        async with self._write_lock:
            view = memoryview(data)
            while view:
                if not self.alive:
                    raise ProcessExited(self.id, self._exit_code)
                try:
                    written = os.write(self._write_fd, view)
                except BlockingIOError:
                    await self._wait_writable()
                    continue
                except OSError as e:
                    raise ProcessExited(self.id, self._exit_code) from e
                view = view[written:]

    async def _wait_writable(self) -> None:
        assert self._loop is not None
        fd = self._write_fd
        ready = self._loop.create_future()
        self._loop.add_writer(fd, lambda: ready.done() or ready.set_result(None))
        try:
            await ready
        finally:
            self._loop.remove_writer(fd)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def resize(self, cols: int, rows: int) -> bool:
        """Apply a new terminal geometry. Never raises.

        Returns:
            True if the new size was applied.
        """
        if self.mode is ShellMode.PIPE:
            logger.debug("Shell %s is pipe-backed; resize not supported", self.id)
            return False
        if not self.alive:
            logger.debug("Shell %s is not running; resize ignored", self.id)
            return False
        try:
            _set_winsize(self._read_fd, cols, rows)
        except (OSError, ValueError, struct.error) as e:
            logger.warning(
                "Resize of shell %s to %dx%d failed: %s", self.id, cols, rows, e
            )
            return False
        self.cols, self.rows = cols, rows
        logger.debug("Shell %s resized to %dx%d", self.id, cols, rows)
        return True

    async def interrupt(self) -> bool:
        """Interrupt the foreground command as Ctrl-C would.

        Only a pty has a line discipline to turn ^C into SIGINT. A pipe-mode
        shell would read the byte as the start of its next command line, so
        nothing is sent there and False is returned.

        Raises:
            ProcessExited: The shell is no longer running.
        """
        if self.mode is ShellMode.PIPE:
            logger.debug("Shell %s has no tty, interrupt skipped", self.id)
            return False
        await self.write(INTERRUPT)
        return True

    def kill(self) -> None:
        """Kill the entire process tree and release its resources."""
        if self._finished:
            return
        if self._proc is None:
            self._status = ShellStatus.KILLED
            return

        if self._status is ShellStatus.RUNNING:
            self._status = ShellStatus.KILLING
        try:
            os.killpg(self._pgid, signal.SIGKILL)
            logger.info("Killed shell %s (pgid=%d)", self.id, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        except OSError as e:
            logger.warning("Error killing shell %s: %s", self.id, e)

        # Never block the loop here; a slow-dying process is reaped off-loop
        exit_code = self._proc.poll()
        if exit_code is None and self._reaper is None and self._loop_usable():
            self._reaper = self._loop.create_task(self._reap_killed())
        if self._status is ShellStatus.KILLING:
            self._status = ShellStatus.KILLED
        self._finish(exit_code)

    async def _reap_killed(self) -> None:
        exit_code = await asyncio.to_thread(self._wait_for_proc)
        if exit_code is None:
            logger.warning("Shell %s (pid=%s) not reaped after kill", self.id, self.pid)
        else:
            self._exit_code = exit_code

    async def wait_closed(self, timeout: float | None = None) -> int | None:
        """Wait until the exit has been published. Returns the exit code."""
        await asyncio.wait_for(self._closed.wait(), timeout=timeout)
        return self._exit_code

    @property
    def alive(self) -> bool:
        return self._status is ShellStatus.RUNNING and not self._finished

    @property
    def status(self) -> ShellStatus:
        return self._status

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None
