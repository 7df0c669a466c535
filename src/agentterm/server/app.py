"""FastAPI application — terminal websocket, event stream, and agent REST API."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, WebSocket
from pydantic import BaseModel, Field

from agentterm.config import AgentTermConfig
from agentterm.pty.errors import NoActiveSession, ProcessExited, SpawnFailure
from agentterm.pty.injector import CommandInjector, MarkerFactory
from agentterm.pty.registry import Session, SessionRegistry
from agentterm.server.connection import WebSocketConnection
from agentterm.service import TerminalService
from agentterm.session.wire import Wire
from agentterm.tool import ToolRegistry, build_tool_registry

logger = logging.getLogger(__name__)

router = APIRouter()


class RunRequest(BaseModel):
    command: str
    timeout: float | None = Field(default=None, gt=0, description="Seconds")


def get_service(request: Request) -> TerminalService:
    return request.app.state.service


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_tools(request: Request) -> ToolRegistry:
    return request.app.state.tools


# ----------------------------------------------------------------------
# Websockets
# ----------------------------------------------------------------------


async def _receive_loop(websocket: WebSocket, session: Session) -> None:
    """Feed client frames into the session until the client goes away."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
        data = message.get("bytes")
        if data is None:
            data = message.get("text")
        if not data:
            continue
        try:
            await session.bridge.handle_message(data)
        except ProcessExited:
            # The exit notice reaches the client through the pump
            logger.debug("Input for ended session %s dropped", session.id)


@router.websocket("/ws/terminal")
async def terminal_ws(websocket: WebSocket) -> None:
    """One fresh shell per connection; it becomes the shared session."""
    await websocket.accept()
    registry: SessionRegistry = websocket.app.state.registry
    connection = WebSocketConnection(websocket)

    try:
        session = await registry.create_session(connection.id)
    except SpawnFailure as e:
        logger.warning("terminal ws %s: %s", connection.id, e)
        websocket.app.state.wire.send_error(f"Terminal spawn failed: {e}")
        await websocket.send_json({"type": "error", "message": str(e)})
        await websocket.close(code=1011)
        return

    session.bridge.attach(connection)
    logger.info("terminal ws %s connected (pid=%s)", connection.id, session.shell.pid)

    pump = asyncio.create_task(connection.pump())
    receive = asyncio.create_task(_receive_loop(websocket, session))
    try:
        await asyncio.wait({pump, receive}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        receive.cancel()
        shell_exited = pump.done() and not pump.cancelled() and pump.exception() is None
        pump.cancel()
        await asyncio.gather(pump, receive, return_exceptions=True)
        session.bridge.detach()
        await registry.destroy_session(connection.id)

    if shell_exited:
        await websocket.close()
    logger.info("terminal ws %s closed", connection.id)


@router.websocket("/ws/events")
async def events_ws(websocket: WebSocket) -> None:
    """Stream terminal lifecycle events."""
    wire: Wire = websocket.app.state.wire
    q = wire.subscribe()

    try:
        await websocket.accept()
        while True:
            event = await q.get()
            if event is None:
                break
            await websocket.send_json(event.to_dict())
    except Exception as e:
        logger.debug("events ws closed: %s", e)
    finally:
        wire.unsubscribe(q)


# ----------------------------------------------------------------------
# REST
# ----------------------------------------------------------------------


@router.post("/api/terminal/run")
async def run_command(
    body: RunRequest,
    service: TerminalService = Depends(get_service),
) -> dict[str, Any]:
    try:
        result = await service.run(body.command, timeout=body.timeout)
    except NoActiveSession as e:
        raise HTTPException(409, str(e)) from e
    except ProcessExited as e:
        raise HTTPException(410, str(e)) from e
    except ValueError as e:
        raise HTTPException(400, str(e)) from e

    return {
        "output": result.output,
        "timed_out": result.timed_out,
        "exit_code": result.exit_code,
        "duration": result.duration,
    }


@router.get("/api/terminal/output")
async def recent_output(service: TerminalService = Depends(get_service)) -> dict[str, str]:
    return {"output": service.get_recent_output()}


@router.get("/api/terminal/sessions")
async def list_sessions(
    registry: SessionRegistry = Depends(get_registry),
) -> list[dict[str, Any]]:
    return registry.list_sessions()


@router.get("/api/tools")
async def tool_specs(tools: ToolRegistry = Depends(get_tools)) -> list[dict[str, Any]]:
    return tools.get_specs()


@router.post("/api/tools/{name}")
async def call_tool(
    name: str,
    arguments: dict[str, Any] | None = Body(default=None),
    tools: ToolRegistry = Depends(get_tools),
) -> dict[str, Any]:
    if name not in tools:
        raise HTTPException(404, f"Unknown tool: {name}")
    result = await tools.call(name, arguments or {})
    return result.to_payload()


@router.get("/api/health")
async def health(request: Request) -> dict[str, Any]:
    registry: SessionRegistry = request.app.state.registry
    shared = registry.get_shared()
    return {
        "status": "ok",
        "workspace": registry.workspace,
        "sessions": len(registry),
        "shared": shared.id if shared is not None else None,
    }


# ----------------------------------------------------------------------
# App factory
# ----------------------------------------------------------------------


def create_app(config: AgentTermConfig | None = None) -> FastAPI:
    """Build the app with its registry, service, tools and event wire."""
    config = config or AgentTermConfig()
    term = config.terminal

    wire = Wire()
    registry = SessionRegistry(term, workspace=config.workspace, wire=wire)
    injector = CommandInjector(
        MarkerFactory(prefix=term.marker_prefix),
        interrupt_on_timeout=term.interrupt_on_timeout,
        interrupt_grace=term.interrupt_grace,
    )
    service = TerminalService(
        registry, injector, default_timeout=term.command_timeout, wire=wire
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("agentterm serving workspace %s", config.workspace)
        wire.send_status(f"ready: {config.workspace}")
        yield
        wire.send_status("shutting down")
        await registry.cleanup()
        wire.close()

    app = FastAPI(title="agentterm", lifespan=lifespan)
    app.state.config = config
    app.state.wire = wire
    app.state.registry = registry
    app.state.service = service
    app.state.tools = build_tool_registry(service)
    app.include_router(router)
    return app
