"""Command injector — run a command in a shared shell and capture its output.

The shell is a free-running byte stream shared with a human. To pull out
just the output of one injected command, the command is written wrapped in
two unique markers::

    echo '__AGENTTERM_BEG''IN_7_1a2b3c4d__'; <command>; echo '__AGENTTERM_EN''D_7_1a2b3c4d__':$?

Each marker is written as two adjacent quoted halves. The shell joins them
when it runs ``echo``, but the terminal's echo of the typed line shows the
quotes, so a contiguous marker only ever appears in real command output.
The end marker is echoed after ``;`` so a failing command still
terminates the capture, and it carries the command's exit status.

The tap is an ordinary OutputPipeline subscriber: it sees exactly the
bytes the IOBridge sees, in the same order, and is detached when the
capture finishes, times out, or the shell exits.
"""

from __future__ import annotations

import asyncio
import codecs
import enum
import itertools
import logging
import re
import secrets
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from agentterm.pty.errors import NoActiveSession, ProcessExited

if TYPE_CHECKING:
    from agentterm.pty.registry import Session

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

_STATUS_RE = re.compile(r"\s*:(-?\d+)")


class MarkerFactory:
    """Generates unique start/end marker pairs.

    A strictly monotonic counter guarantees uniqueness within a process;
    the random token keeps markers from different processes (or stale
    output from a previous server run) apart. Pass ``token_factory`` for
    deterministic markers in tests.
    """

    def __init__(
        self,
        prefix: str = "__AGENTTERM",
        token_factory: Callable[[], str] | None = None,
    ) -> None:
        if not re.fullmatch(r"\w+", prefix):
            raise ValueError(f"Marker prefix must be word characters only: {prefix!r}")
        self._prefix = prefix
        self._counter = itertools.count(1)
        self._token_factory = token_factory or (lambda: secrets.token_hex(4))

    def next_pair(self) -> tuple[str, str]:
        seq = next(self._counter)
        token = self._token_factory()
        return (
            f"{self._prefix}_BEGIN_{seq}_{token}__",
            f"{self._prefix}_END_{seq}_{token}__",
        )


class CaptureState(enum.Enum):
    WAITING = "waiting"  # Discarding until the start marker
    MARKER_LINE = "marker_line"  # Discarding the rest of the start marker's line
    CAPTURING = "capturing"  # Accumulating command output
    TRAILER = "trailer"  # End marker seen, reading ":<status>"
    DONE = "done"


@dataclass
class CapturedOutput:
    """Result of one injected command."""

    output: str
    timed_out: bool = False
    exit_code: int | None = None
    command: str = ""
    duration: float = 0.0

    def __str__(self) -> str:
        return self.output


def _quote_split(marker: str) -> str:
    mid = len(marker) // 2
    return f"'{marker[:mid]}''{marker[mid:]}'"


def _partial_suffix(text: str, marker: str) -> int:
    """Length of the longest proper prefix of ``marker`` that ``text`` ends with."""
    for k in range(min(len(marker) - 1, len(text)), 0, -1):
        if text.endswith(marker[:k]):
            return k
    return 0


def _needs_group(command: str) -> bool:
    # A newline, a comment, or a trailing background '&' would swallow or
    # break "; echo <end>" on the same line.
    if "\n" in command or "#" in command:
        return True
    return command.endswith("&") and not command.endswith("&&")


@dataclass
class InjectedCommand:
    """Marker state for one in-flight injection.

    ``feed()`` consumes raw output chunks and advances the capture state.
    Markers split across chunk boundaries are handled by holding back any
    tail that could be the beginning of a marker.
    """

    command: str
    start_marker: str
    end_marker: str
    deadline: float = 0.0

    state: CaptureState = field(default=CaptureState.WAITING, init=False)
    exit_code: int | None = field(default=None, init=False)
    _scan: str = field(default="", init=False)
    _body: list[str] = field(default_factory=list, init=False)
    _decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        init=False,
    )

    def __post_init__(self) -> None:
        if not self.command.strip():
            raise ValueError("command must not be empty")

    def shell_line(self) -> str:
        """The single line written to the shell's input."""
        body = self.command.strip()
        if _needs_group(body):
            body = "{ " + body + "\n}"
        elif body.endswith(";") and not body.endswith(";;"):
            body = body[:-1].rstrip()
        return (
            f"echo {_quote_split(self.start_marker)}; {body}; "
            f"echo {_quote_split(self.end_marker)}:$?\n"
        )

    def feed(self, data: bytes) -> bool:
        """Consume one output chunk. Returns True once the capture is complete."""
        if self.state is CaptureState.DONE:
            return True
        self._scan += self._decoder.decode(data)

        while True:
            if self.state is CaptureState.WAITING:
                idx = self._scan.find(self.start_marker)
                if idx < 0:
                    keep = _partial_suffix(self._scan, self.start_marker)
                    self._scan = self._scan[len(self._scan) - keep :]
                    return False
                self._scan = self._scan[idx + len(self.start_marker) :]
                self.state = CaptureState.MARKER_LINE

            elif self.state is CaptureState.MARKER_LINE:
                nl = self._scan.find("\n")
                if nl < 0:
                    self._scan = ""
                    return False
                self._scan = self._scan[nl + 1 :]
                self.state = CaptureState.CAPTURING

            elif self.state is CaptureState.CAPTURING:
                idx = self._scan.find(self.end_marker)
                if idx < 0:
                    hold = _partial_suffix(self._scan, self.end_marker)
                    cut = len(self._scan) - hold
                    self._body.append(self._scan[:cut])
                    self._scan = self._scan[cut:]
                    return False
                self._body.append(self._scan[:idx])
                self._scan = self._scan[idx + len(self.end_marker) :]
                self.state = CaptureState.TRAILER

            elif self.state is CaptureState.TRAILER:
                nl = self._scan.find("\n")
                if nl < 0:
                    return False
                match = _STATUS_RE.match(self._scan[:nl])
                if match:
                    self.exit_code = int(match.group(1))
                self._scan = ""
                self.state = CaptureState.DONE
                return True

            else:
                return True

    @property
    def completed(self) -> bool:
        """True once the end marker has been seen."""
        return self.state in (CaptureState.TRAILER, CaptureState.DONE)

    @property
    def output(self) -> str:
        """Captured text without markers, CRLF normalized, whitespace-trimmed."""
        return "".join(self._body).replace("\r\n", "\n").strip()


class CommandInjector:
    """Agent-facing command execution on a shared terminal session.

    One injection at a time per session: calls queue on the session's
    ``command_lock`` (FIFO) so two captures can never interleave on the
    shared stream. Keystrokes from the human keep flowing while a command
    runs; only the single write of the wrapped line takes the shell's
    write lock.
    """

    def __init__(
        self,
        marker_factory: MarkerFactory | None = None,
        interrupt_on_timeout: bool = True,
        interrupt_grace: float = 0.2,
    ) -> None:
        self._markers = marker_factory or MarkerFactory()
        self._interrupt_on_timeout = interrupt_on_timeout
        self._interrupt_grace = interrupt_grace

    async def run(
        self,
        session: Session | None,
        command: str,
        timeout: float | None = None,
    ) -> CapturedOutput:
        """Run ``command`` in ``session`` and return only its output.

        Args:
            session: Target session, normally ``SessionRegistry.get_shared()``.
            command: Shell command text.
            timeout: Seconds to wait for the end marker once the command is
                written. Defaults to 30.

        Returns:
            The captured output. On timeout, whatever was captured so far
            with ``timed_out=True``.

        Raises:
            NoActiveSession: ``session`` is None.
            ProcessExited: The shell is gone or exits before the command ends.
            ValueError: ``command`` is empty.
        """
        if session is None:
            raise NoActiveSession()
        if not command.strip():
            raise ValueError("command must not be empty")

        async with session.command_lock:
            return await self._run_locked(
                session, command, DEFAULT_TIMEOUT if timeout is None else timeout
            )

    async def _run_locked(
        self, session: Session, command: str, timeout: float
    ) -> CapturedOutput:
        shell = session.shell
        if not shell.alive:
            raise ProcessExited(session.id, shell.exit_code)

        loop = asyncio.get_running_loop()
        started = loop.time()
        start_marker, end_marker = self._markers.next_pair()
        pending = InjectedCommand(
            command=command,
            start_marker=start_marker,
            end_marker=end_marker,
            deadline=started + timeout,
        )
        done: asyncio.Future[None] = loop.create_future()

        def on_output(data: bytes) -> None:
            if done.done():
                return
            if pending.feed(data):
                done.set_result(None)

        def on_exit(exit_code: int | None) -> None:
            if not done.done():
                done.set_exception(ProcessExited(session.id, exit_code))

        unsubscribe = shell.pipeline.subscribe(on_output)
        remove_exit = shell.pipeline.on_exit(on_exit)
        timed_out = False
        logger.debug(
            "Injecting into session %s (marker %s): %s",
            session.id,
            start_marker,
            command,
        )
        try:
            await shell.write(pending.shell_line())
            try:
                await asyncio.wait_for(done, timeout=max(pending.deadline - loop.time(), 0))
            except asyncio.TimeoutError:
                timed_out = not pending.completed
        finally:
            unsubscribe()
            remove_exit()
            if done.done() and not done.cancelled():
                # Mark retrieved; a pending ProcessExited is re-raised by wait_for
                done.exception()
            else:
                done.cancel()

        if timed_out:
            logger.info(
                "Command in session %s timed out after %.1fs: %s",
                session.id,
                timeout,
                command,
            )
            await self._interrupt(session)

        return CapturedOutput(
            output=pending.output,
            timed_out=timed_out,
            exit_code=pending.exit_code,
            command=command,
            duration=loop.time() - started,
        )

    async def _interrupt(self, session: Session) -> None:
        """Interrupt a hung command so it releases the shell for the next call."""
        if not self._interrupt_on_timeout or not session.shell.alive:
            return
        try:
            interrupted = await session.shell.interrupt()
        except ProcessExited:
            logger.debug("Session %s ended before interrupt", session.id)
            return
        if interrupted and self._interrupt_grace > 0:
            await asyncio.sleep(self._interrupt_grace)
