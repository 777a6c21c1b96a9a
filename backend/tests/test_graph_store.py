"""Tests for graph/store.py and graph/resolution.py.

Covers delta merging, idempotence, activity detection, orphan handling,
agent reference resolution, and the first-match rule for ambiguous roles.
"""

from graph.deltas import (
    AgentAdded,
    AgentDelta,
    ExecutionCreated,
    ExecutionDelta,
    TaskAdded,
    TaskDelta,
    ToolDelta,
    ToolExecutionAdded,
)
from graph.models import (
    AgentStatus,
    ExecutionGraph,
    ExecutionStatus,
    TaskStatus,
    ToolStatus,
)
from graph.resolution import resolve_agent
from graph.store import GraphStore, new_execution_graph
from tests.conftest import make_agent, make_execution, make_graph


def _store(graph: ExecutionGraph | None = None) -> GraphStore:
    store = GraphStore()
    store.replace(graph or make_graph())
    return store


# =========================================================================
# Agent resolution
# =========================================================================


class TestResolveAgent:
    """Internal id, then external id, then role, then role substring."""

    def test_internal_id_wins(self) -> None:
        agents = [
            make_agent("a1", external_id="x1", role="planner"),
            make_agent("a2", external_id="a1", role="coder"),
        ]
        agent = resolve_agent(agents, "a1")
        assert agent is not None
        assert agent.id == "a1"

    def test_external_id(self) -> None:
        agents = [make_agent("a1", external_id="remote-7", role="planner")]
        agent = resolve_agent(agents, "remote-7")
        assert agent is not None
        assert agent.id == "a1"

    def test_exact_role(self) -> None:
        agents = [make_agent("a1", role="Research Analyst")]
        agent = resolve_agent(agents, "Research Analyst")
        assert agent is not None
        assert agent.id == "a1"

    def test_role_substring_is_case_insensitive(self) -> None:
        agents = [make_agent("a1", role="Senior Research Analyst")]
        agent = resolve_agent(agents, "research")
        assert agent is not None
        assert agent.id == "a1"

    def test_role_argument_used_when_reference_misses(self) -> None:
        agents = [make_agent("a1", role="writer")]
        agent = resolve_agent(agents, "unknown", role="writer")
        assert agent is not None
        assert agent.id == "a1"

    def test_ambiguous_role_resolves_to_first_agent(self) -> None:
        agents = [
            make_agent("a1", role="coder"),
            make_agent("a2", role="coder"),
        ]
        agent = resolve_agent(agents, role="coder")
        assert agent is not None
        assert agent.id == "a1"

    def test_unresolvable_returns_none(self) -> None:
        assert resolve_agent([make_agent("a1", role="coder")], "nobody") is None
        assert resolve_agent([], "a1") is None


# =========================================================================
# Activity
# =========================================================================


class TestIsActive:
    def test_empty_store_is_inactive(self) -> None:
        assert GraphStore().is_active() is False

    def test_running_execution_is_active(self) -> None:
        assert _store(make_graph(status=ExecutionStatus.RUNNING)).is_active() is True

    def test_completed_with_busy_agent_is_active(self) -> None:
        graph = make_graph(status=ExecutionStatus.COMPLETED, agent_status=AgentStatus.BUSY)
        assert _store(graph).is_active() is True

    def test_completed_with_running_task_is_active(self) -> None:
        graph = make_graph(status=ExecutionStatus.COMPLETED, task_status=TaskStatus.RUNNING)
        assert _store(graph).is_active() is True

    def test_settled_execution_is_inactive(self) -> None:
        graph = make_graph(
            status=ExecutionStatus.COMPLETED,
            agent_status=AgentStatus.COMPLETED,
            task_status=TaskStatus.COMPLETED,
        )
        assert _store(graph).is_active() is False

    def test_aborted_is_inactive_even_with_busy_agents(self) -> None:
        store = _store(make_graph(agent_status=AgentStatus.EXECUTING))
        assert store.mark_aborted() is True
        assert store.is_active() is False

    def test_mark_aborted_refuses_finished_execution(self) -> None:
        store = _store(make_graph(status=ExecutionStatus.COMPLETED))
        assert store.mark_aborted() is False


# =========================================================================
# Status merges
# =========================================================================


class TestStatusMerges:
    def test_delta_for_other_execution_is_rejected(self) -> None:
        store = _store()
        delta = ExecutionDelta(execution_id="exec_other", status=ExecutionStatus.FAILED)
        assert store.apply_delta(delta) is False
        snapshot = store.snapshot()
        assert snapshot is not None
        assert snapshot.execution.status == ExecutionStatus.RUNNING

    def test_execution_completion_stamps_completed_at(self) -> None:
        store = _store()
        store.apply_delta(
            ExecutionDelta(
                execution_id="exec_1", status=ExecutionStatus.COMPLETED, result="done"
            )
        )
        snapshot = store.snapshot()
        assert snapshot is not None
        assert snapshot.execution.status == ExecutionStatus.COMPLETED
        assert snapshot.execution.result == "done"
        assert snapshot.execution.completed_at is not None

    def test_none_fields_do_not_overwrite(self) -> None:
        store = _store()
        store.apply_delta(TaskDelta(execution_id="exec_1", task_id="t1", result="partial"))
        store.apply_delta(
            TaskDelta(execution_id="exec_1", task_id="t1", status=TaskStatus.RUNNING)
        )
        snapshot = store.snapshot()
        assert snapshot is not None
        assert snapshot.tasks[0].result == "partial"
        assert snapshot.tasks[0].status == TaskStatus.RUNNING

    def test_agent_delta_by_role(self) -> None:
        store = _store()
        assert store.apply_delta(
            AgentDelta(execution_id="exec_1", role="researcher", status=AgentStatus.BUSY)
        )
        snapshot = store.snapshot()
        assert snapshot is not None
        assert snapshot.agents[0].status == AgentStatus.BUSY
        assert snapshot.agents[0].last_updated is not None

    def test_unresolvable_agent_delta_is_dropped(self) -> None:
        store = _store()
        before = store.snapshot()
        assert store.apply_delta(
            AgentDelta(execution_id="exec_1", agent_id="ghost", status=AgentStatus.BUSY)
        ) is False
        assert store.snapshot() == before

    def test_unknown_task_is_dropped(self) -> None:
        store = _store()
        assert store.apply_delta(
            TaskDelta(execution_id="exec_1", task_id="t404", status=TaskStatus.RUNNING)
        ) is False

    def test_tool_reset_clears_outcome(self) -> None:
        store = _store()
        store.apply_delta(
            ToolDelta(
                execution_id="exec_1",
                tool_execution_id="tool_1",
                status=ToolStatus.ERROR,
                error="boom",
                execution_time_ms=120,
            )
        )
        tool = store.get_tool_execution("tool_1")
        assert tool is not None
        assert tool.completed_at is not None

        store.apply_delta(
            ToolDelta(
                execution_id="exec_1", tool_execution_id="tool_1", status=ToolStatus.PENDING
            )
        )
        tool = store.get_tool_execution("tool_1")
        assert tool is not None
        assert tool.status == ToolStatus.PENDING
        assert tool.error is None
        assert tool.execution_time_ms is None
        assert tool.completed_at is None


# =========================================================================
# Idempotence
# =========================================================================


class TestIdempotence:
    """Applying the same delta twice equals applying it once."""

    def test_status_delta_twice(self) -> None:
        store = _store()
        delta = AgentDelta(
            execution_id="exec_1", agent_id="a1", status=AgentStatus.COMPLETED
        )
        store.apply_delta(delta)
        once = store.snapshot()
        store.apply_delta(delta)
        assert store.snapshot() == once

    def test_insert_twice(self) -> None:
        store = _store()
        delta = TaskAdded(
            execution_id="exec_1", id="t2", agent_id="a1", task_description="second"
        )
        store.apply_delta(delta)
        once = store.snapshot()
        store.apply_delta(delta)
        twice = store.snapshot()
        assert twice == once
        assert twice is not None
        assert [t.id for t in twice.tasks] == ["t1", "t2"]
        assert twice.execution.total_tasks == 2

    def test_execution_created_for_installed_execution(self) -> None:
        store = _store()
        once = store.snapshot()
        assert store.apply_delta(ExecutionCreated(execution_id="exec_1"))
        assert store.snapshot() == once


# =========================================================================
# Insertions
# =========================================================================


class TestInsertions:
    def test_agent_insert_updates_counter(self) -> None:
        store = _store()
        store.apply_delta(
            AgentAdded(execution_id="exec_1", id="a2", agent_id="ext_a2", role="critic")
        )
        snapshot = store.snapshot()
        assert snapshot is not None
        assert [a.id for a in snapshot.agents] == ["a1", "a2"]
        assert snapshot.execution.total_agents == 2

    def test_task_insert_keeps_agent_reference_verbatim(self) -> None:
        store = _store()
        store.apply_delta(
            TaskAdded(execution_id="exec_1", id="t2", agent_id="researcher")
        )
        snapshot = store.snapshot()
        assert snapshot is not None
        assert snapshot.tasks[-1].agent_id == "researcher"

    def test_orphan_task_is_dropped(self) -> None:
        store = _store()
        assert store.apply_delta(
            TaskAdded(execution_id="exec_1", id="t9", agent_id="nobody")
        ) is False
        snapshot = store.snapshot()
        assert snapshot is not None
        assert [t.id for t in snapshot.tasks] == ["t1"]

    def test_tool_insert_under_task(self) -> None:
        store = _store()
        assert store.apply_delta(
            ToolExecutionAdded(
                execution_id="exec_1", id="tool_2", tool_name="search", task_id="t1"
            )
        )
        tool = store.get_tool_execution("tool_2")
        assert tool is not None
        assert tool.status == ToolStatus.PENDING

    def test_orphan_tool_is_dropped(self) -> None:
        store = _store()
        assert store.apply_delta(
            ToolExecutionAdded(execution_id="exec_1", id="tool_9", tool_name="search")
        ) is False
        assert store.get_tool_execution("tool_9") is None


# =========================================================================
# Snapshots
# =========================================================================


class TestSnapshots:
    def test_snapshot_is_a_copy(self) -> None:
        store = _store()
        snapshot = store.snapshot()
        assert snapshot is not None
        snapshot.agents[0].role = "mutated"
        again = store.snapshot()
        assert again is not None
        assert again.agents[0].role == "researcher"

    def test_clear(self) -> None:
        store = _store()
        store.clear()
        assert store.current_execution_id() is None
        assert store.snapshot() is None

    def test_new_execution_graph_is_running(self) -> None:
        graph = new_execution_graph(
            ExecutionCreated(execution_id="exec_9", task_description="x", created_at=100.0)
        )
        assert graph.execution.status == ExecutionStatus.RUNNING
        assert graph.execution.started_at == 100.0
        assert graph.agents == []

    def test_replace_switches_execution(self) -> None:
        store = _store()
        store.replace(ExecutionGraph(execution=make_execution("exec_2")))
        assert store.current_execution_id() == "exec_2"
