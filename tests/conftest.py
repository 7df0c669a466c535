"""Shared fixtures: an in-memory fake shell and real-bash helpers."""

from __future__ import annotations

import asyncio
import re
import shutil
from typing import Callable

import pytest

from agentterm.config import TerminalConfig
from agentterm.pty.bridge import IOBridge
from agentterm.pty.buffer import OutputBuffer
from agentterm.pty.errors import ProcessExited
from agentterm.pty.injector import MarkerFactory
from agentterm.pty.pipeline import OutputPipeline
from agentterm.pty.registry import Session

# A quiet interactive bash: no rc files, a plain prompt
BASH = ["bash", "--norc", "--noprofile", "-i"]
BASH_ENV = {"PS1": "$ ", "PS2": "> "}

requires_bash = pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")

_LINE_RE = re.compile(
    r"echo '(?P<s1>[^']*)''(?P<s2>[^']*)'; (?P<body>.*); echo '(?P<e1>[^']*)''(?P<e2>[^']*)':\$\?\n$",
    re.DOTALL,
)

Responder = Callable[[bytes], list[bytes]]


class FakeShell:
    """Stands in for ShellProcess: records writes, publishes scripted output."""

    def __init__(self, responder: Responder | None = None) -> None:
        self.id = "fake"
        self.command = ["fake-sh"]
        self.pipeline = OutputPipeline()
        self.responder = responder
        self.writes: list[bytes] = []
        self.resizes: list[tuple[int, int]] = []
        self.exit_code: int | None = None
        self.interruptible = True
        self._alive = True

    async def write(self, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not self._alive:
            raise ProcessExited(self.id, self.exit_code)
        self.writes.append(data)
        if self.responder is not None:
            loop = asyncio.get_running_loop()
            for chunk in self.responder(data):
                loop.call_soon(self.pipeline.publish, chunk)

    async def interrupt(self) -> bool:
        if not self.interruptible:
            return False
        await self.write(b"\x03")
        return True

    def emit(self, data: bytes) -> None:
        self.pipeline.publish(data)

    def resize(self, cols: int, rows: int) -> bool:
        self.resizes.append((cols, rows))
        return True

    def exit(self, code: int | None = 0) -> None:
        self._alive = False
        self.exit_code = code
        self.pipeline.close(code)

    @property
    def alive(self) -> bool:
        return self._alive


def bash_like(
    outputs: dict[str, tuple[str, int]] | None = None,
    chunk_size: int = 0,
    finish: bool = True,
) -> Responder:
    """Respond to wrapped command lines the way an interactive bash would.

    The typed line is echoed back (quotes intact), then the start marker,
    the scripted output, the end marker with the status, and a prompt.
    ``chunk_size`` splits the response into tiny chunks; ``finish=False``
    never prints the end marker, like a command that hangs.
    """
    outputs = outputs or {}

    def respond(data: bytes) -> list[bytes]:
        line = data.decode("utf-8")
        match = _LINE_RE.match(line)
        if match is None:
            return []
        body = match.group("body")
        text, status = outputs.get(body, ("", 0))
        start = match.group("s1") + match.group("s2")
        end = match.group("e1") + match.group("e2")

        stream = line.replace("\n", "\r\n") + start + "\r\n"
        if text:
            stream += text.replace("\n", "\r\n") + "\r\n"
        if finish:
            stream += f"{end}:{status}\r\n$ "
        raw = stream.encode("utf-8")
        if chunk_size <= 0:
            return [raw]
        return [raw[i : i + chunk_size] for i in range(0, len(raw), chunk_size)]

    return respond


def make_session(shell: FakeShell, session_id: str = "s1") -> Session:
    buffer = OutputBuffer()
    return Session(
        id=session_id,
        shell=shell,  # type: ignore[arg-type]
        buffer=buffer,
        bridge=IOBridge(shell, buffer),  # type: ignore[arg-type]
    )


class StubRegistry:
    """Just enough of SessionRegistry for the service and tools."""

    def __init__(self, session: Session | None = None) -> None:
        self.session = session

    def get_shared(self) -> Session | None:
        return self.session


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.02)
    return True


@pytest.fixture
def markers() -> MarkerFactory:
    return MarkerFactory(token_factory=lambda: "tok")


@pytest.fixture
def bash_config() -> TerminalConfig:
    return TerminalConfig(shell=BASH, env=BASH_ENV, command_timeout=10.0)
