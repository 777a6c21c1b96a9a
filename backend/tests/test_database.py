"""Tests for models/database.py -- durable execution storage on aiosqlite."""

from graph.models import (
    AgentStatus,
    ExecutionStatus,
    LogEntry,
    LogType,
    ToolStatus,
)
from models.database import ExecutionStore
from tests.conftest import make_agent, make_execution, make_task, make_tool


async def _seed(store: ExecutionStore, execution_id: str = "exec_1", **fields: object) -> None:
    await store.save_execution(make_execution(execution_id, **fields))


# =========================================================================
# Saving and loading a graph
# =========================================================================


class TestExecutionGraph:
    async def test_round_trip(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store)
        await execution_store.save_agent(make_agent("a1", role="planner"))
        await execution_store.save_task(make_task("t1"))
        await execution_store.upsert_tool_execution(make_tool("tool_1"))
        await execution_store.append_log(
            LogEntry(id="log_1", execution_id="exec_1", message="hello", timestamp=1.0)
        )

        graph = await execution_store.get_execution_graph("exec_1")

        assert graph is not None
        assert graph.execution.total_agents == 1
        assert graph.execution.total_tasks == 1
        assert graph.execution.total_tool_executions == 1
        assert graph.agents[0].role == "planner"
        assert graph.tool_executions[0].arguments == {"path": "README.md"}
        assert graph.tool_executions[0].human_approved is False
        assert [e.message for e in graph.logs] == ["hello"]

    async def test_missing_execution(self, execution_store: ExecutionStore) -> None:
        assert await execution_store.get_execution_graph("nope") is None

    async def test_save_execution_keeps_existing(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store, task_description="first")
        await _seed(execution_store, task_description="second")
        execution = await execution_store.get_execution("exec_1")
        assert execution is not None
        assert execution.task_description == "first"

    async def test_duplicate_log_is_ignored(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store)
        entry = LogEntry(id="log_1", execution_id="exec_1", message="once", timestamp=1.0)
        await execution_store.append_log(entry)
        await execution_store.append_log(entry)
        assert len(await execution_store.get_logs("exec_1")) == 1


# =========================================================================
# Status updates
# =========================================================================


class TestUpdates:
    async def test_running_stamps_started_at(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store, status=ExecutionStatus.PENDING)
        await execution_store.update_execution("exec_1", status="running")
        execution = await execution_store.get_execution("exec_1")
        assert execution is not None
        assert execution.status == ExecutionStatus.RUNNING
        assert execution.started_at is not None
        assert execution.completed_at is None

    async def test_terminal_stamps_completed_at(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store)
        await execution_store.update_execution("exec_1", status="completed", result="done")
        execution = await execution_store.get_execution("exec_1")
        assert execution is not None
        assert execution.completed_at is not None
        assert execution.result == "done"

    async def test_absent_fields_are_kept(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store)
        await execution_store.update_execution("exec_1", result="partial")
        await execution_store.update_execution("exec_1", error="boom")
        execution = await execution_store.get_execution("exec_1")
        assert execution is not None
        assert execution.result == "partial"
        assert execution.error == "boom"
        assert execution.status == ExecutionStatus.RUNNING

    async def test_update_agent_by_external_id(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store)
        await execution_store.save_agent(make_agent("a1", role="planner"))
        updated = await execution_store.update_agent(
            "exec_1", "ext_a1", None, status="busy", current_task="Plan"
        )
        assert updated is True
        graph = await execution_store.get_execution_graph("exec_1")
        assert graph is not None
        assert graph.agents[0].status == AgentStatus.BUSY
        assert graph.agents[0].current_task == "Plan"

    async def test_update_agent_by_role_substring(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store)
        await execution_store.save_agent(make_agent("a1", role="Senior Researcher"))
        updated = await execution_store.update_agent(
            "exec_1", None, "researcher", status="completed"
        )
        assert updated is True

    async def test_update_agent_unknown(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store)
        assert await execution_store.update_agent("exec_1", "ghost", None) is False

    async def test_update_task_and_tool(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store)
        await execution_store.save_task(make_task("t1"))
        await execution_store.upsert_tool_execution(make_tool("tool_1"))

        await execution_store.update_task("t1", status="completed", result="ok")
        await execution_store.update_tool_execution(
            "tool_1", status="executed", execution_time_ms=12
        )

        graph = await execution_store.get_execution_graph("exec_1")
        assert graph is not None
        assert graph.tasks[0].result == "ok"
        assert graph.tool_executions[0].status == ToolStatus.EXECUTED
        assert graph.tool_executions[0].execution_time_ms == 12


# =========================================================================
# Tool call upserts
# =========================================================================


class TestToolUpsert:
    async def test_replace_overwrites(self, execution_store: ExecutionStore) -> None:
        await execution_store.upsert_tool_execution(make_tool("tool_1"))
        approved = make_tool("tool_1", status=ToolStatus.APPROVED)
        approved.human_approved = True
        await execution_store.upsert_tool_execution(approved)

        await _seed(execution_store)
        graph = await execution_store.get_execution_graph("exec_1")
        assert graph is not None
        assert graph.tool_executions[0].status == ToolStatus.APPROVED
        assert graph.tool_executions[0].human_approved is True

    async def test_no_replace_keeps_existing(self, execution_store: ExecutionStore) -> None:
        await execution_store.upsert_tool_execution(
            make_tool("tool_1", status=ToolStatus.EXECUTED)
        )
        await execution_store.upsert_tool_execution(make_tool("tool_1"), replace=False)

        await _seed(execution_store)
        graph = await execution_store.get_execution_graph("exec_1")
        assert graph is not None
        assert graph.tool_executions[0].status == ToolStatus.EXECUTED


# =========================================================================
# History listings
# =========================================================================


class TestListings:
    async def test_list_newest_first(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store, "old", created_at=1.0)
        await _seed(execution_store, "new", created_at=2.0)
        executions = await execution_store.list_executions()
        assert [e.id for e in executions] == ["new", "old"]

    async def test_list_limit(self, execution_store: ExecutionStore) -> None:
        for i in range(3):
            await _seed(execution_store, f"exec_{i}", created_at=float(i))
        assert len(await execution_store.list_executions(limit=2)) == 2

    async def test_search_description_and_result(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store, "a", task_description="Plan a TRIP")
        await _seed(execution_store, "b", task_description="Other", result="trip booked")
        await _seed(execution_store, "c", task_description="Unrelated")
        found = await execution_store.search_executions("trip")
        assert {e.id for e in found} == {"a", "b"}

    async def test_stats(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store, "a")
        await _seed(execution_store, "b", status=ExecutionStatus.COMPLETED)
        await _seed(execution_store, "c", status=ExecutionStatus.COMPLETED)
        stats = await execution_store.get_stats()
        assert stats == {"running": 1, "completed": 2, "total": 3}


# =========================================================================
# Deletion
# =========================================================================


class TestDeletion:
    async def test_delete_refuses_running(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store)
        assert await execution_store.delete_execution("exec_1") is False
        assert await execution_store.get_execution("exec_1") is not None

    async def test_delete_finished_removes_children(
        self, execution_store: ExecutionStore
    ) -> None:
        await _seed(execution_store, status=ExecutionStatus.COMPLETED)
        await execution_store.save_agent(make_agent())
        await execution_store.append_log(
            LogEntry(id="log_1", execution_id="exec_1", message="x", log_type=LogType.INFO)
        )

        assert await execution_store.delete_execution("exec_1") is True
        assert await execution_store.get_execution_graph("exec_1") is None
        assert await execution_store.get_logs("exec_1") == []

    async def test_delete_missing(self, execution_store: ExecutionStore) -> None:
        assert await execution_store.delete_execution("nope") is False

    async def test_force_delete_running(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store)
        assert await execution_store.force_delete_execution("exec_1") is True
        assert await execution_store.get_execution("exec_1") is None

    async def test_nuke_all(self, execution_store: ExecutionStore) -> None:
        await _seed(execution_store, "a")
        await _seed(execution_store, "b")
        assert await execution_store.nuke_all_executions() == 2
        assert await execution_store.list_executions() == []
