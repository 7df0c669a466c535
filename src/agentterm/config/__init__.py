"""Configuration — Pydantic models for agentterm settings."""

from __future__ import annotations

import json
import os
import shlex
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field


class TerminalConfig(BaseModel):
    """Shell sessions and command injection."""

    shell: list[str] = Field(
        default_factory=lambda: ["bash", "--login", "-i"],
        description="Shell argv spawned for every session",
    )
    mode: Literal["pty", "pipe"] = Field(
        default="pty",
        description="Process model: a pseudo-terminal, or plain pipes (no resize)",
    )
    cols: int = Field(default=120, gt=0)
    rows: int = Field(default=30, gt=0)
    term: str = Field(default="xterm-256color", description="TERM for the shell")
    env: dict[str, str] = Field(
        default_factory=dict, description="Extra environment for every shell"
    )
    buffer_size: int = Field(
        default=100_000, gt=0, description="Rolling output buffer capacity in bytes"
    )
    max_sessions: int = Field(
        default=10, gt=0, description="Oldest session is destroyed beyond this"
    )
    command_timeout: float = Field(
        default=30.0, gt=0, description="Default injected command timeout (seconds)"
    )
    interrupt_on_timeout: bool = Field(
        default=True, description="Send ^C to the shell when a command times out"
    )
    interrupt_grace: float = Field(
        default=0.2, ge=0, description="Seconds to wait after the timeout interrupt"
    )
    marker_prefix: str = Field(default="__AGENTTERM", pattern=r"^\w+$")


class ServerConfig(BaseModel):
    """HTTP / websocket server."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3000, gt=0, lt=65536)


class AgentTermConfig(BaseModel):
    """Top-level agentterm configuration."""

    workspace: str = Field(
        default_factory=os.getcwd,
        description="Working directory for every shell; never taken from clients",
    )
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> AgentTermConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            AGENTTERM_WORKSPACE        - Shell working directory (or WORKSPACE_ROOT)
            AGENTTERM_SHELL            - Shell command line, shell-quoted
            AGENTTERM_TERMINAL_MODE    - "pty" or "pipe"
            AGENTTERM_COMMAND_TIMEOUT  - Default command timeout in seconds
            AGENTTERM_BUFFER_SIZE      - Output buffer capacity in bytes
            AGENTTERM_HOST             - Server bind address
            AGENTTERM_PORT             - Server port (or PORT)
        """
        # override=True: a freshly edited .env wins over stale exported vars
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        terminal = config_data.get("terminal", {})
        server = config_data.get("server", {})

        env_workspace = os.environ.get("AGENTTERM_WORKSPACE") or os.environ.get(
            "WORKSPACE_ROOT"
        )
        if env_workspace:
            config_data["workspace"] = os.path.abspath(os.path.expanduser(env_workspace))

        env_shell = os.environ.get("AGENTTERM_SHELL")
        if env_shell:
            terminal["shell"] = shlex.split(env_shell)

        env_mode = os.environ.get("AGENTTERM_TERMINAL_MODE")
        if env_mode:
            terminal["mode"] = env_mode.lower()

        env_timeout = os.environ.get("AGENTTERM_COMMAND_TIMEOUT")
        if env_timeout:
            terminal["command_timeout"] = float(env_timeout)

        env_buffer = os.environ.get("AGENTTERM_BUFFER_SIZE")
        if env_buffer:
            terminal["buffer_size"] = int(env_buffer)

        env_host = os.environ.get("AGENTTERM_HOST")
        if env_host:
            server["host"] = env_host

        env_port = os.environ.get("AGENTTERM_PORT") or os.environ.get("PORT")
        if env_port:
            server["port"] = int(env_port)

        if terminal:
            config_data["terminal"] = terminal
        if server:
            config_data["server"] = server

        return cls.model_validate(config_data)
