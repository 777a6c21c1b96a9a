"""Tests for api/routes.py and api/websocket.py -- HTTP and WebSocket handlers.

Uses FastAPI TestClient (backed by httpx) with a mocked ExecutionTracker.
No orchestrator or database is involved.
"""

from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

import api.routes as routes_module
from api import websocket as websocket_module
from api.routes import router, set_tracker
from api.websocket import handle_command, websocket_router
from approvals.types import ActionResult
from events.bus import get_state_bus, reset_state_bus
from events.types import GLOBAL_CHANNEL, StateEvent, StateEventType
from graph.models import ExecutionStatus, LogEntry, LogType, ToolStatus
from graph.reconciler import ReconcileOutcome
from tracker import ViewResult
from tests.conftest import make_execution, make_graph, make_tool

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_tracker() -> MagicMock:
    """Create a mock ExecutionTracker."""
    tracker = MagicMock()
    tracker.load_history = AsyncMock(
        return_value=[make_execution("exec_1", created_at=1700000000.0)]
    )
    tracker.search_history = AsyncMock(return_value=[])
    tracker.history_stats = AsyncMock(return_value={"running": 1, "completed": 2, "total": 3})
    tracker.nuke_all_executions = AsyncMock(return_value=3)
    tracker.current_graph = MagicMock(return_value=make_graph())
    tracker.current_execution_id = MagicMock(return_value="exec_1")
    tracker.is_active = MagicMock(return_value=True)
    tracker.is_listening = MagicMock(return_value=True)
    tracker.view_execution = AsyncMock(
        return_value=ViewResult(
            execution_id="exec_1",
            outcome=ReconcileOutcome.INSTALLED_FIRST_LOAD,
            graph=make_graph(),
        )
    )
    tracker.refresh_current = AsyncMock(
        return_value=ViewResult(
            execution_id="exec_1",
            outcome=ReconcileOutcome.DISCARDED_ACTIVE,
            graph=make_graph(),
        )
    )
    tracker.abort_execution = AsyncMock(return_value=True)
    tracker.delete_execution = AsyncMock(return_value=True)
    tracker.get_logs = AsyncMock(
        return_value=[
            LogEntry(id="log_1", execution_id="exec_1", message="hello", timestamp=1.0)
        ]
    )
    tracker.list_tool_calls = MagicMock(
        return_value=[make_tool("tool_1"), make_tool("tool_2", status=ToolStatus.EXECUTED)]
    )
    tracker.approve_tool_call = AsyncMock(
        return_value=ActionResult(
            success=True,
            tool_call_id="tool_1",
            status=ToolStatus.EXECUTED,
            message="Executed read_file",
        )
    )
    tracker.deny_tool_call = AsyncMock(
        return_value=ActionResult(
            success=True,
            tool_call_id="tool_1",
            status=ToolStatus.DENIED,
            message="Denied read_file",
        )
    )
    tracker.reset_tool_call = AsyncMock(
        return_value=ActionResult(
            success=True,
            tool_call_id="tool_1",
            status=ToolStatus.PENDING,
            message="Reset read_file",
        )
    )
    return tracker


@pytest.fixture()
def client(mock_tracker: MagicMock) -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient with a mocked tracker."""
    reset_state_bus()
    app = FastAPI()
    app.include_router(router)
    app.include_router(websocket_router)
    set_tracker(mock_tracker)  # type: ignore[arg-type]
    websocket_module.set_tracker(mock_tracker)  # type: ignore[arg-type]
    with TestClient(app) as c:
        yield c


# =========================================================================
# Health Check
# =========================================================================


class TestHealthCheck:
    """GET /health."""

    def test_health_returns_200(self, client: TestClient, mock_tracker: MagicMock) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["version"] == "0.1.0"
        assert data["channel_connected"] is True
        assert data["current_execution_id"] == "exec_1"
        assert data["pending_tool_calls"] == 1

    def test_health_without_listener(
        self, client: TestClient, mock_tracker: MagicMock
    ) -> None:
        mock_tracker.is_listening.return_value = False
        assert client.get("/health").json()["status"] == "unhealthy"

    def test_health_before_startup(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(routes_module, "_tracker", None)
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "unhealthy"


# =========================================================================
# Execution history
# =========================================================================


class TestExecutionHistory:
    """GET /api/executions and /api/executions/stats."""

    def test_list(self, client: TestClient, mock_tracker: MagicMock) -> None:
        resp = client.get("/api/executions")
        assert resp.status_code == 200
        data = resp.json()
        assert data[0]["id"] == "exec_1"
        assert data[0]["status"] == "running"
        mock_tracker.load_history.assert_awaited_once_with(50)

    def test_search(self, client: TestClient, mock_tracker: MagicMock) -> None:
        mock_tracker.search_history.return_value = [
            make_execution("exec_2", ExecutionStatus.COMPLETED, task_description="Plan a trip")
        ]
        resp = client.get("/api/executions", params={"query": "trip", "limit": 5})
        assert resp.status_code == 200
        assert [e["id"] for e in resp.json()] == ["exec_2"]
        mock_tracker.search_history.assert_awaited_once_with("trip", 5)
        mock_tracker.load_history.assert_not_awaited()

    def test_limit_is_validated(self, client: TestClient) -> None:
        assert client.get("/api/executions", params={"limit": 0}).status_code == 422

    def test_stats(self, client: TestClient) -> None:
        resp = client.get("/api/executions/stats")
        assert resp.status_code == 200
        assert resp.json() == {"total": 3, "by_status": {"running": 1, "completed": 2}}

    def test_delete_all(self, client: TestClient) -> None:
        resp = client.delete("/api/executions")
        assert resp.status_code == 200
        assert resp.json()["deleted"] == 3


# =========================================================================
# Live view
# =========================================================================


class TestLiveView:
    """Current execution, view, and refresh."""

    def test_current(self, client: TestClient) -> None:
        resp = client.get("/api/executions/current")
        assert resp.status_code == 200
        assert resp.json()["execution"]["id"] == "exec_1"

    def test_current_none(self, client: TestClient, mock_tracker: MagicMock) -> None:
        mock_tracker.current_graph.return_value = None
        assert client.get("/api/executions/current").status_code == 404

    def test_view(self, client: TestClient) -> None:
        resp = client.post("/api/executions/exec_1/view")
        assert resp.status_code == 200
        data = resp.json()
        assert data["outcome"] == "installed_first_load"
        assert data["active"] is True
        assert data["graph"]["execution"]["id"] == "exec_1"

    def test_view_not_found(self, client: TestClient, mock_tracker: MagicMock) -> None:
        mock_tracker.view_execution.return_value = ViewResult(
            execution_id="ghost",
            error="Execution ghost not found",
            not_found=True,
        )
        resp = client.post("/api/executions/ghost/view")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Execution ghost not found"

    def test_view_storage_error(self, client: TestClient, mock_tracker: MagicMock) -> None:
        mock_tracker.view_execution.return_value = ViewResult(
            execution_id="exec_1",
            error="Failed to load execution exec_1: disk I/O error",
        )
        assert client.post("/api/executions/exec_1/view").status_code == 502

    def test_refresh(self, client: TestClient) -> None:
        resp = client.post("/api/executions/current/refresh")
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "discarded_active"

    def test_refresh_without_execution(
        self, client: TestClient, mock_tracker: MagicMock
    ) -> None:
        mock_tracker.refresh_current.return_value = None
        assert client.post("/api/executions/current/refresh").status_code == 404


# =========================================================================
# Execution actions
# =========================================================================


class TestExecutionActions:
    """Abort, delete, and logs."""

    def test_abort(self, client: TestClient) -> None:
        resp = client.post("/api/executions/exec_1/abort")
        assert resp.status_code == 200
        assert resp.json()["message"] == "Execution exec_1 aborted"

    def test_abort_refused(self, client: TestClient, mock_tracker: MagicMock) -> None:
        mock_tracker.abort_execution.return_value = False
        assert client.post("/api/executions/exec_1/abort").status_code == 409

    def test_delete_with_force(self, client: TestClient, mock_tracker: MagicMock) -> None:
        resp = client.delete("/api/executions/exec_1", params={"force": "true"})
        assert resp.status_code == 200
        mock_tracker.delete_execution.assert_awaited_once_with("exec_1", force=True)

    def test_delete_refused(self, client: TestClient, mock_tracker: MagicMock) -> None:
        mock_tracker.delete_execution.return_value = False
        resp = client.delete("/api/executions/exec_1")
        assert resp.status_code == 409
        assert "force=true" in resp.json()["detail"]

    def test_logs(self, client: TestClient, mock_tracker: MagicMock) -> None:
        resp = client.get("/api/executions/exec_1/logs", params={"log_type": "error"})
        assert resp.status_code == 200
        assert resp.json()[0]["message"] == "hello"
        mock_tracker.get_logs.assert_awaited_once_with(
            "exec_1", log_type=LogType.ERROR, query=None
        )

    def test_logs_invalid_type(self, client: TestClient) -> None:
        resp = client.get("/api/executions/exec_1/logs", params={"log_type": "shouting"})
        assert resp.status_code == 422


# =========================================================================
# Tool approvals
# =========================================================================


class TestToolCalls:
    """GET /api/tool-calls and the approve / deny / reset actions."""

    def test_list(self, client: TestClient) -> None:
        resp = client.get("/api/tool-calls")
        assert resp.status_code == 200
        assert [c["id"] for c in resp.json()] == ["tool_1", "tool_2"]

    def test_list_by_status(self, client: TestClient, mock_tracker: MagicMock) -> None:
        resp = client.get(
            "/api/tool-calls", params={"status": "executed", "execution_id": "exec_1"}
        )
        assert [c["id"] for c in resp.json()] == ["tool_2"]
        mock_tracker.list_tool_calls.assert_called_once_with("exec_1")

    def test_approve(self, client: TestClient) -> None:
        resp = client.post("/api/tool-calls/tool_1/approve")
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["status"] == "executed"
        assert data["message"] == "Executed read_file"

    def test_deny_and_reset(self, client: TestClient) -> None:
        assert client.post("/api/tool-calls/tool_1/deny").json()["status"] == "denied"
        assert client.post("/api/tool-calls/tool_1/reset").json()["status"] == "pending"

    def test_unknown_call(self, client: TestClient, mock_tracker: MagicMock) -> None:
        mock_tracker.approve_tool_call.return_value = ActionResult(
            success=False, tool_call_id="ghost", error="Unknown tool call ghost"
        )
        resp = client.post("/api/tool-calls/ghost/approve")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Unknown tool call ghost"

    def test_invalid_transition(self, client: TestClient, mock_tracker: MagicMock) -> None:
        mock_tracker.approve_tool_call.return_value = ActionResult(
            success=False,
            tool_call_id="tool_1",
            status=ToolStatus.EXECUTED,
            error="Tool call tool_1 cannot move from executed to approved",
        )
        assert client.post("/api/tool-calls/tool_1/approve").status_code == 409

    def test_tool_failure_is_not_an_http_error(
        self, client: TestClient, mock_tracker: MagicMock
    ) -> None:
        mock_tracker.approve_tool_call.return_value = ActionResult(
            success=False,
            tool_call_id="tool_1",
            status=ToolStatus.ERROR,
            error="Tool server filesystem is not configured",
        )
        resp = client.post("/api/tool-calls/tool_1/approve")
        assert resp.status_code == 200
        assert resp.json()["success"] is False


# =========================================================================
# WebSocket
# =========================================================================


class TestWebSocket:
    """/ws/{channel} streaming and commands."""

    def test_replays_history_and_answers_ping(self, client: TestClient) -> None:
        get_state_bus().publish_nowait(
            StateEvent(
                type=StateEventType.NOTICE,
                channel=GLOBAL_CHANNEL,
                data={"level": "info", "message": "hello"},
            )
        )
        with client.websocket_connect(f"/ws/{GLOBAL_CHANNEL}") as ws:
            replayed = ws.receive_json()
            assert replayed["type"] == "notice"
            assert replayed["data"]["message"] == "hello"

            ws.send_json({"type": "ping", "timestamp": 42})
            assert ws.receive_json() == {"type": "pong", "timestamp": 42}

    def test_approve_command(self, client: TestClient, mock_tracker: MagicMock) -> None:
        with client.websocket_connect("/ws/exec_1") as ws:
            ws.send_json({"type": "approve", "toolCallId": "tool_1"})
            reply = ws.receive_json()
        assert reply == {
            "type": "command_result",
            "command": "approve",
            "success": True,
            "tool_call_id": "tool_1",
            "status": "executed",
            "error": None,
        }
        mock_tracker.approve_tool_call.assert_awaited_once_with("tool_1")


class TestHandleCommand:
    """handle_command without a socket."""

    async def test_abort(self, client: TestClient, mock_tracker: MagicMock) -> None:
        reply = await handle_command("abort", {"executionId": "exec_1"})
        assert reply["success"] is True
        mock_tracker.abort_execution.assert_awaited_once_with("exec_1")

    async def test_missing_tool_call_id(self, client: TestClient) -> None:
        reply = await handle_command("deny", {})
        assert reply["success"] is False
        assert reply["error"] == "toolCallId is required"

    async def test_action_exception(self, client: TestClient, mock_tracker: MagicMock) -> None:
        mock_tracker.reset_tool_call.side_effect = RuntimeError("boom")
        reply = await handle_command("reset", {"tool_call_id": "tool_1"})
        assert reply == {
            "type": "command_result",
            "command": "reset",
            "success": False,
            "tool_call_id": "tool_1",
            "error": "boom",
        }
