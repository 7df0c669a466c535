"""CLI entry point for agentterm."""

from __future__ import annotations

import asyncio
import logging
import os

import typer

from agentterm.config import AgentTermConfig

app = typer.Typer(
    name="agentterm",
    help="A shared shell terminal that an agent can run commands in.",
    no_args_is_help=True,
)

TIMEOUT_EXIT_CODE = 124


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_config(config_file: str | None, workspace: str | None) -> AgentTermConfig:
    config = AgentTermConfig.load(config_file)
    if workspace:
        path = os.path.abspath(os.path.expanduser(workspace))
        if not os.path.isdir(path):
            typer.echo(f"Error: Workspace not found: {path}", err=True)
            raise typer.Exit(1)
        config.workspace = path
    return config


@app.command()
def serve(
    host: str | None = typer.Option(
        None, "--host", "-H", help="Bind address (default: from env/config)."
    ),
    port: int | None = typer.Option(
        None, "--port", "-p", help="Port (default: from env/config)."
    ),
    workspace: str | None = typer.Option(
        None, "--workspace", "-w", help="Working directory for every shell."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Serve the terminal websocket and the agent API."""
    import uvicorn

    from agentterm.server import create_app

    setup_logging(verbose)
    config = _load_config(config_file, workspace)
    if host:
        config.server.host = host
    if port:
        config.server.port = port

    typer.echo(f"Workspace: {config.workspace}")
    typer.echo(f"Shell: {' '.join(config.terminal.shell)} ({config.terminal.mode})")
    typer.echo(f"Listening on http://{config.server.host}:{config.server.port}")
    typer.echo("---")

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if verbose else "info",
    )


@app.command()
def run(
    command: str = typer.Argument(help="Shell command to run."),
    timeout: float | None = typer.Option(
        None, "--timeout", "-t", help="Timeout in seconds (default: from env/config)."
    ),
    workspace: str | None = typer.Option(
        None, "--workspace", "-w", help="Working directory for the shell."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Run one command in a fresh local shell and print only its output.

    Exits with the command's exit status, or 124 if it timed out.
    """
    setup_logging(verbose)
    config = _load_config(config_file, workspace)

    from agentterm.pty.errors import TerminalError

    try:
        exit_code = asyncio.run(_run_once(command, timeout, config))
    except (TerminalError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    raise typer.Exit(exit_code)


async def _run_once(command: str, timeout: float | None, config: AgentTermConfig) -> int:
    from agentterm.pty.injector import CommandInjector, MarkerFactory
    from agentterm.pty.registry import SessionRegistry
    from agentterm.service import TerminalService

    term = config.terminal
    registry = SessionRegistry(term, workspace=config.workspace)
    injector = CommandInjector(
        MarkerFactory(prefix=term.marker_prefix),
        interrupt_on_timeout=term.interrupt_on_timeout,
        interrupt_grace=term.interrupt_grace,
    )
    service = TerminalService(registry, injector, default_timeout=term.command_timeout)

    try:
        await registry.create_session("cli")
        result = await service.run(command, timeout=timeout)
    finally:
        await registry.cleanup()

    if result.output:
        typer.echo(result.output)
    if result.timed_out:
        typer.echo(f"(command timed out after {result.duration:.1f}s)", err=True)
        return TIMEOUT_EXIT_CODE
    return result.exit_code if result.exit_code is not None else 0


def main() -> None:
    app()


if __name__ == "__main__":
    main()
