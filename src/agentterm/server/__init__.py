"""HTTP and websocket server."""

from agentterm.server.app import create_app
from agentterm.server.connection import WebSocketConnection

__all__ = ["create_app", "WebSocketConnection"]
