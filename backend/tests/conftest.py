"""Shared test fixtures for backend tests.

Provides a fresh StateBus, a real ExecutionStore on a temporary SQLite file,
AsyncMock orchestrator collaborators, and small factories for graph entities
so tests never talk to a real orchestrator.
"""

import sys
import time
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from graph.store import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from approvals.types import (  # noqa: E402
    CommandResult,
    ResumeResult,
    ToolInvocationResult,
)
from events.bus import StateBus, reset_state_bus  # noqa: E402
from events.types import StateEvent  # noqa: E402
from graph.models import (  # noqa: E402
    Agent,
    AgentStatus,
    Execution,
    ExecutionGraph,
    ExecutionStatus,
    Task,
    TaskStatus,
    ToolExecution,
    ToolStatus,
)
from models.database import ExecutionStore  # noqa: E402

# ---------------------------------------------------------------------------
# State Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def state_bus() -> StateBus:
    """Return a fresh StateBus instance for each test."""
    reset_state_bus()
    return StateBus()


def drain(queue: Any) -> list[StateEvent]:
    """Pop everything currently in a subscriber queue."""
    events: list[StateEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ---------------------------------------------------------------------------
# Durable storage
# ---------------------------------------------------------------------------


@pytest.fixture()
async def execution_store(tmp_path: Path) -> ExecutionStore:
    """Provide an initialized ExecutionStore on a temporary database."""
    store = ExecutionStore(str(tmp_path / "executions.db"))
    await store.init()
    return store


# ---------------------------------------------------------------------------
# Orchestrator collaborators
# ---------------------------------------------------------------------------


def _make_mock_orchestrator() -> AsyncMock:
    """Create a mock standing in for OrchestratorClient.

    Every call succeeds by default; callers override per test.
    """
    client = AsyncMock()
    client.invoke_tool = AsyncMock(
        return_value=ToolInvocationResult(success=True, data={"ok": True})
    )
    client.resume = AsyncMock(return_value=ResumeResult(success=True))
    client.send_tool_decision = AsyncMock(return_value=CommandResult(success=True))
    return client


@pytest.fixture()
def mock_orchestrator() -> AsyncMock:
    """Provide a mock orchestrator client for each test."""
    return _make_mock_orchestrator()


# ---------------------------------------------------------------------------
# Entity Factories
# ---------------------------------------------------------------------------


def make_execution(
    execution_id: str = "exec_1",
    status: ExecutionStatus = ExecutionStatus.RUNNING,
    **fields: Any,
) -> Execution:
    return Execution(
        id=execution_id,
        task_description=fields.pop("task_description", "Summarize the repo"),
        status=status,
        created_at=fields.pop("created_at", time.time()),
        **fields,
    )


def make_agent(
    agent_id: str = "a1",
    execution_id: str = "exec_1",
    external_id: str | None = None,
    role: str = "researcher",
    status: AgentStatus = AgentStatus.IDLE,
) -> Agent:
    return Agent(
        id=agent_id,
        execution_id=execution_id,
        agent_id=external_id or f"ext_{agent_id}",
        role=role,
        status=status,
    )


def make_task(
    task_id: str = "t1",
    execution_id: str = "exec_1",
    agent_ref: str = "a1",
    status: TaskStatus = TaskStatus.PENDING,
) -> Task:
    return Task(
        id=task_id,
        execution_id=execution_id,
        agent_id=agent_ref,
        task_description=f"Work item {task_id}",
        status=status,
    )


def make_tool(
    tool_id: str = "tool_1",
    execution_id: str | None = "exec_1",
    server: str | None = "filesystem",
    status: ToolStatus = ToolStatus.PENDING,
    task_id: str | None = "t1",
    agent_id: str | None = "a1",
) -> ToolExecution:
    return ToolExecution(
        id=tool_id,
        execution_id=execution_id,
        task_id=task_id,
        agent_id=agent_id,
        tool_name="read_file",
        mcp_server=server,
        arguments={"path": "README.md"},
        status=status,
    )


def make_graph(
    execution_id: str = "exec_1",
    status: ExecutionStatus = ExecutionStatus.RUNNING,
    agent_status: AgentStatus = AgentStatus.IDLE,
    task_status: TaskStatus = TaskStatus.PENDING,
) -> ExecutionGraph:
    """A small execution: one agent with one task and one tool call."""
    return ExecutionGraph(
        execution=make_execution(execution_id, status),
        agents=[make_agent(execution_id=execution_id, status=agent_status)],
        tasks=[make_task(execution_id=execution_id, status=task_status)],
        tool_executions=[make_tool(execution_id=execution_id)],
    )
