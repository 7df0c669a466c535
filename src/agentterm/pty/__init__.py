"""Terminal core — shared shell sessions and command injection.

Every remote connection gets a managed shell with process group
isolation, a rolling output buffer and a duplex bridge. The most recent
session is shared with the agent, which injects marker-delimited commands
into it and gets back only their output.
"""

from agentterm.pty.bridge import Connection, IOBridge
from agentterm.pty.buffer import OutputBuffer
from agentterm.pty.errors import (
    NoActiveSession,
    ProcessExited,
    SpawnFailure,
    TerminalError,
)
from agentterm.pty.injector import CapturedOutput, CommandInjector, MarkerFactory
from agentterm.pty.pipeline import OutputPipeline
from agentterm.pty.registry import Session, SessionRegistry
from agentterm.pty.resize import ResizeChannel, ResizeRequest
from agentterm.pty.shell import ShellMode, ShellProcess, ShellStatus

__all__ = [
    "CapturedOutput",
    "CommandInjector",
    "Connection",
    "IOBridge",
    "MarkerFactory",
    "NoActiveSession",
    "OutputBuffer",
    "OutputPipeline",
    "ProcessExited",
    "ResizeChannel",
    "ResizeRequest",
    "Session",
    "SessionRegistry",
    "ShellMode",
    "ShellProcess",
    "ShellStatus",
    "SpawnFailure",
    "TerminalError",
]
