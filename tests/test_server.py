"""Tests for agentterm.server (websocket transport and REST API)."""

from __future__ import annotations

import json
import time

import pytest
from fastapi.testclient import TestClient

from agentterm.config import AgentTermConfig, TerminalConfig
from agentterm.server import create_app
from conftest import BASH, BASH_ENV, requires_bash


def _config(tmp_path, **terminal) -> AgentTermConfig:
    terminal.setdefault("shell", BASH)
    terminal.setdefault("env", BASH_ENV)
    terminal.setdefault("command_timeout", 10.0)
    return AgentTermConfig(workspace=str(tmp_path), terminal=TerminalConfig(**terminal))


@pytest.fixture
def client(tmp_path):
    with TestClient(create_app(_config(tmp_path))) as c:
        yield c


def _read_until(ws, needle: str, limit: int = 500) -> str:
    """Collect binary output frames until ``needle`` shows up."""
    seen = ""
    for _ in range(limit):
        message = ws.receive()
        if message.get("bytes") is not None:
            seen += message["bytes"].decode("utf-8", errors="replace")
        elif message.get("text") is not None:
            seen += message["text"]
        if needle in seen:
            return seen
    raise AssertionError(f"{needle!r} not seen in terminal output: {seen[-500:]!r}")


def _wait_for_sessions(client: TestClient, count: int, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if client.get("/api/health").json()["sessions"] == count:
            return True
        time.sleep(0.05)
    return False


def _wait_for_size(client: TestClient, cols: int, rows: int, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        sessions = client.get("/api/terminal/sessions").json()
        if sessions and (sessions[0]["cols"], sessions[0]["rows"]) == (cols, rows):
            return True
        time.sleep(0.05)
    return False


# ---------------------------------------------------------------------------
# REST without a terminal
# ---------------------------------------------------------------------------


class TestRestWithoutTerminal:
    def test_health(self, client: TestClient, tmp_path) -> None:
        body = client.get("/api/health").json()
        assert body == {
            "status": "ok",
            "workspace": str(tmp_path),
            "sessions": 0,
            "shared": None,
        }

    def test_run_conflict(self, client: TestClient) -> None:
        resp = client.post("/api/terminal/run", json={"command": "ls"})
        assert resp.status_code == 409
        assert "Open a terminal first" in resp.json()["detail"]

    def test_run_rejects_bad_timeout(self, client: TestClient) -> None:
        resp = client.post("/api/terminal/run", json={"command": "ls", "timeout": -1})
        assert resp.status_code == 422

    def test_output_empty(self, client: TestClient) -> None:
        assert client.get("/api/terminal/output").json() == {"output": ""}

    def test_sessions_empty(self, client: TestClient) -> None:
        assert client.get("/api/terminal/sessions").json() == []

    def test_tool_specs(self, client: TestClient) -> None:
        names = [s["function"]["name"] for s in client.get("/api/tools").json()]
        assert names == ["run_in_terminal", "get_terminal_output"]

    def test_unknown_tool(self, client: TestClient) -> None:
        assert client.post("/api/tools/nope", json={}).status_code == 404

    def test_tool_without_terminal(self, client: TestClient) -> None:
        resp = client.post("/api/tools/run_in_terminal", json={"command": "ls"})
        assert resp.status_code == 200
        assert resp.json()["is_error"] is True


# ---------------------------------------------------------------------------
# Terminal websocket
# ---------------------------------------------------------------------------


@requires_bash
class TestTerminalWebsocket:
    def test_keystrokes_round_trip(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/terminal") as ws:
            ws.send_bytes(b"echo round-trip-$((40+2))\n")
            _read_until(ws, "round-trip-42")

    def test_text_frames_are_keystrokes(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/terminal") as ws:
            ws.send_text("echo text-$((2*3))\n")
            _read_until(ws, "text-6")

    def test_agent_shares_the_terminal(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/terminal") as ws:
            _read_until(ws, "$ ")
            health = client.get("/api/health").json()
            assert health["sessions"] == 1
            assert health["shared"] is not None

            resp = client.post(
                "/api/terminal/run", json={"command": "echo from-agent", "timeout": 10}
            )
            assert resp.status_code == 200
            body = resp.json()
            assert body["output"] == "from-agent"
            assert body["exit_code"] == 0
            assert body["timed_out"] is False

            # The human sees the agent's command run
            _read_until(ws, "from-agent")
            assert "from-agent" in client.get("/api/terminal/output").json()["output"]

    def test_resize_message(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/terminal") as ws:
            _read_until(ws, "$ ")
            ws.send_text(json.dumps({"type": "resize", "cols": 100, "rows": 40}))
            assert _wait_for_size(client, 100, 40)
            resp = client.post("/api/terminal/run", json={"command": "stty size"})
            assert resp.json()["output"] == "40 100"

    def test_tool_call_through_rest(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/terminal") as ws:
            _read_until(ws, "$ ")
            resp = client.post(
                "/api/tools/run_in_terminal", json={"command": "(exit 4)"}
            )
            body = resp.json()
            assert body["is_error"] is True
            assert body["content"].startswith("[Exit code: 4]")
            assert body["exit_code"] == 4
            assert body["timed_out"] is False

    def test_shell_exit_notifies_client(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/terminal") as ws:
            ws.send_bytes(b"exit 5\n")
            for _ in range(500):
                message = ws.receive()
                if message.get("text") is not None:
                    assert json.loads(message["text"]) == {"type": "exit", "code": 5}
                    break
            else:
                raise AssertionError("no exit notification")
        assert _wait_for_sessions(client, 0)

    def test_disconnect_destroys_session(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/terminal") as ws:
            _read_until(ws, "$ ")
        assert _wait_for_sessions(client, 0)
        resp = client.post("/api/terminal/run", json={"command": "ls"})
        assert resp.status_code == 409

    def test_spawn_failure(self, tmp_path) -> None:
        app = create_app(_config(tmp_path, shell=["/nonexistent/agentterm-shell"]))
        with TestClient(app) as c:
            with c.websocket_connect("/ws/terminal") as ws:
                message = ws.receive_json()
                assert message["type"] == "error"
            assert c.get("/api/health").json()["sessions"] == 0


# ---------------------------------------------------------------------------
# Event websocket
# ---------------------------------------------------------------------------


@requires_bash
class TestEventsWebsocket:
    def test_session_events(self, client: TestClient) -> None:
        with client.websocket_connect("/ws/events") as events:
            with client.websocket_connect("/ws/terminal") as ws:
                _read_until(ws, "$ ")
                created = events.receive_json()
                assert created["type"] == "session_created"
                shared = events.receive_json()
                assert shared["type"] == "shared_changed"
                assert shared["data"]["session_id"] == created["data"]["session_id"]

    def test_spawn_failure_reported(self, tmp_path) -> None:
        app = create_app(_config(tmp_path, shell=["/nonexistent/agentterm-shell"]))
        with TestClient(app) as c:
            with c.websocket_connect("/ws/events") as events:
                with c.websocket_connect("/ws/terminal") as ws:
                    assert ws.receive_json()["type"] == "error"
                event = events.receive_json()
                assert event["type"] == "error"
                assert "Terminal spawn failed" in event["data"]["error"]


def test_lifespan_status_events(tmp_path) -> None:
    app = create_app(_config(tmp_path))
    q = app.state.wire.subscribe()
    with TestClient(app):
        pass

    events = []
    while not q.empty():
        events.append(q.get_nowait())
    assert events[-1] is None
    statuses = [e.data["message"] for e in events[:-1]]
    assert statuses == [f"ready: {app.state.config.workspace}", "shutting down"]
