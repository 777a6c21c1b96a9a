"""In-memory graph store for the execution currently being viewed.

The GraphStore holds at most one execution subtree. It knows nothing about
where data comes from; the Reconciler decides whether a snapshot or a delta
may be applied and is the only caller of the mutating methods.

All operations are synchronous and perform no I/O.
"""

import time
from typing import Any

import structlog
from pydantic import BaseModel

from graph.deltas import (
    AgentAdded,
    AgentDelta,
    Delta,
    ExecutionCreated,
    ExecutionDelta,
    TaskAdded,
    TaskDelta,
    ToolDelta,
    ToolExecutionAdded,
)
from graph.models import (
    AFTER_ABORT_STATUSES,
    BUSY_AGENT_STATUSES,
    BUSY_TASK_STATUSES,
    TERMINAL_AGENT_STATUSES,
    TERMINAL_EXECUTION_STATUSES,
    TERMINAL_TASK_STATUSES,
    Agent,
    Execution,
    ExecutionGraph,
    ExecutionStatus,
    Task,
    ToolExecution,
    ToolStatus,
)
from graph.resolution import resolve_agent

logger = structlog.get_logger(__name__)

_TERMINAL_TOOL_RESULT_STATUSES = frozenset({ToolStatus.EXECUTED, ToolStatus.ERROR})


def _merge(target: BaseModel, fields: dict[str, Any]) -> bool:
    """Shallow-merge reported fields into ``target``.

    ``None`` values are treated as "not reported" and skipped.

    Returns:
        True if any field actually changed.
    """
    changed = False
    for name, value in fields.items():
        if value is None:
            continue
        if getattr(target, name) != value:
            setattr(target, name, value)
            changed = True
    return changed


class GraphStore:
    """Holds the single live execution subtree.

    Attributes:
        _graph: The installed subtree, or None before the first load.
    """

    def __init__(self) -> None:
        self._graph: ExecutionGraph | None = None

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def current_execution_id(self) -> str | None:
        """Return the id of the installed execution, if any."""
        if self._graph is None:
            return None
        return self._graph.execution.id

    def is_active(self) -> bool:
        """Return True while the installed execution is in flight.

        An execution is active when it is running, or when any agent or task
        is still working. An aborted execution is never active, whatever its
        agents last reported.
        """
        if self._graph is None:
            return False
        execution = self._graph.execution
        if execution.status == ExecutionStatus.ABORTED:
            return False
        if execution.status == ExecutionStatus.RUNNING:
            return True
        if any(agent.status in BUSY_AGENT_STATUSES for agent in self._graph.agents):
            return True
        return any(task.status in BUSY_TASK_STATUSES for task in self._graph.tasks)

    def is_aborted(self, execution_id: str) -> bool:
        if self._graph is None or self._graph.execution.id != execution_id:
            return False
        return self._graph.execution.status == ExecutionStatus.ABORTED

    def snapshot(self) -> ExecutionGraph | None:
        """Return a deep copy of the installed subtree for readers."""
        if self._graph is None:
            return None
        return self._graph.model_copy(deep=True)

    def get_tool_execution(self, tool_execution_id: str) -> ToolExecution | None:
        if self._graph is None:
            return None
        for tool in self._graph.tool_executions:
            if tool.id == tool_execution_id:
                return tool.model_copy()
        return None

    # -----------------------------------------------------------------
    # Mutations (Reconciler only)
    # -----------------------------------------------------------------

    def replace(self, snapshot: ExecutionGraph) -> None:
        """Install ``snapshot`` as the authoritative subtree.

        The previous subtree, if any, is discarded entirely.
        """
        self._graph = snapshot.model_copy(deep=True)
        logger.debug(
            "graph_replaced",
            execution_id=snapshot.execution.id,
            agents=len(snapshot.agents),
            tasks=len(snapshot.tasks),
            tool_executions=len(snapshot.tool_executions),
        )

    def clear(self) -> None:
        self._graph = None

    def mark_aborted(self) -> bool:
        """Set the installed execution to ``aborted``.

        Returns:
            False if nothing is installed or the execution already finished.
        """
        if self._graph is None:
            return False
        execution = self._graph.execution
        if execution.status in TERMINAL_EXECUTION_STATUSES:
            return False
        execution.status = ExecutionStatus.ABORTED
        execution.completed_at = time.time()
        return True

    def apply_delta(self, delta: Delta) -> bool:
        """Merge ``delta`` into the installed subtree.

        Returns:
            False, without mutating anything, when the delta's target (or,
            for creation deltas, its parent) cannot be found.
        """
        if self._graph is None or delta.execution_id != self._graph.execution.id:
            return False
        graph = self._graph

        if isinstance(delta, ExecutionDelta):
            return self._apply_execution(graph, delta)
        if isinstance(delta, AgentDelta):
            return self._apply_agent(graph, delta)
        if isinstance(delta, TaskDelta):
            return self._apply_task(graph, delta)
        if isinstance(delta, ToolDelta):
            return self._apply_tool(graph, delta)
        if isinstance(delta, AgentAdded):
            return self._insert_agent(graph, delta)
        if isinstance(delta, TaskAdded):
            return self._insert_task(graph, delta)
        if isinstance(delta, ToolExecutionAdded):
            return self._insert_tool(graph, delta)
        if isinstance(delta, ExecutionCreated):
            # Re-announcement of the installed execution.
            return True

        logger.warning("graph_delta_unsupported", kind=getattr(delta, "kind", None))
        return False

    # -----------------------------------------------------------------
    # Status merges
    # -----------------------------------------------------------------

    def _apply_execution(self, graph: ExecutionGraph, delta: ExecutionDelta) -> bool:
        execution = graph.execution
        status = delta.status
        if execution.status == ExecutionStatus.ABORTED and status not in AFTER_ABORT_STATUSES:
            # Aborts are local; only a real finish overrides one.
            status = None
        changed = _merge(
            execution,
            {"status": status, "result": delta.result, "error": delta.error},
        )
        if changed:
            now = time.time()
            if execution.status == ExecutionStatus.RUNNING and execution.started_at is None:
                execution.started_at = now
            if (
                execution.status in TERMINAL_EXECUTION_STATUSES
                and execution.completed_at is None
            ):
                execution.completed_at = now
        return True

    def _apply_agent(self, graph: ExecutionGraph, delta: AgentDelta) -> bool:
        agent = resolve_agent(graph.agents, delta.agent_id, delta.role)
        if agent is None:
            return False
        changed = _merge(
            agent, {"status": delta.status, "current_task": delta.current_task}
        )
        if changed:
            now = time.time()
            agent.last_updated = now
            if agent.status in TERMINAL_AGENT_STATUSES and agent.completed_at is None:
                agent.completed_at = now
        return True

    def _apply_task(self, graph: ExecutionGraph, delta: TaskDelta) -> bool:
        task = self._find_task(graph, delta.task_id)
        if task is None:
            return False
        changed = _merge(
            task,
            {"status": delta.status, "result": delta.result, "error": delta.error},
        )
        if changed:
            now = time.time()
            task.last_updated = now
            if task.status in TERMINAL_TASK_STATUSES and task.completed_at is None:
                task.completed_at = now
        return True

    def _apply_tool(self, graph: ExecutionGraph, delta: ToolDelta) -> bool:
        tool = self._find_tool(graph, delta.tool_execution_id)
        if tool is None:
            return False
        changed = _merge(
            tool,
            {
                "status": delta.status,
                "result": delta.result,
                "error": delta.error,
                "execution_time_ms": delta.execution_time_ms,
                "human_approved": delta.human_approved,
            },
        )
        if changed:
            now = time.time()
            tool.last_updated = now
            if tool.status in _TERMINAL_TOOL_RESULT_STATUSES and tool.completed_at is None:
                tool.completed_at = now
            elif tool.status == ToolStatus.PENDING:
                # A reset call starts over.
                tool.completed_at = None
                tool.result = None
                tool.error = None
                tool.execution_time_ms = None
        return True

    # -----------------------------------------------------------------
    # Insertions
    # -----------------------------------------------------------------

    def _insert_agent(self, graph: ExecutionGraph, delta: AgentAdded) -> bool:
        if any(agent.id == delta.id for agent in graph.agents):
            return True
        graph.agents.append(
            Agent(
                id=delta.id,
                execution_id=delta.execution_id,
                agent_id=delta.agent_id,
                role=delta.role,
                expertise=list(delta.expertise),
            )
        )
        graph.execution.total_agents = len(graph.agents)
        return True

    def _insert_task(self, graph: ExecutionGraph, delta: TaskAdded) -> bool:
        if self._find_task(graph, delta.id) is not None:
            return True
        if resolve_agent(graph.agents, delta.agent_id) is None:
            logger.debug(
                "graph_task_orphan_dropped",
                execution_id=delta.execution_id,
                task_id=delta.id,
                agent_ref=delta.agent_id,
            )
            return False
        graph.tasks.append(
            Task(
                id=delta.id,
                execution_id=delta.execution_id,
                agent_id=delta.agent_id,
                task_description=delta.task_description,
                priority=delta.priority,
                max_iterations=delta.max_iterations,
            )
        )
        graph.execution.total_tasks = len(graph.tasks)
        return True

    def _insert_tool(self, graph: ExecutionGraph, delta: ToolExecutionAdded) -> bool:
        if self._find_tool(graph, delta.id) is not None:
            return True
        has_parent = (
            delta.task_id is not None and self._find_task(graph, delta.task_id) is not None
        ) or (
            delta.agent_id is not None
            and resolve_agent(graph.agents, delta.agent_id) is not None
        )
        if not has_parent:
            logger.debug(
                "graph_tool_orphan_dropped",
                execution_id=delta.execution_id,
                tool_execution_id=delta.id,
            )
            return False
        graph.tool_executions.append(
            ToolExecution(
                id=delta.id,
                execution_id=delta.execution_id,
                task_id=delta.task_id,
                agent_id=delta.agent_id,
                tool_name=delta.tool_name,
                mcp_server=delta.mcp_server,
                arguments=dict(delta.arguments),
            )
        )
        graph.execution.total_tool_executions = len(graph.tool_executions)
        return True

    def _find_task(self, graph: ExecutionGraph, task_id: str) -> Task | None:
        for task in graph.tasks:
            if task.id == task_id:
                return task
        return None

    def _find_tool(self, graph: ExecutionGraph, tool_execution_id: str) -> ToolExecution | None:
        for tool in graph.tool_executions:
            if tool.id == tool_execution_id:
                return tool
        return None


def new_execution_graph(created: ExecutionCreated) -> ExecutionGraph:
    """Build the empty subtree for a freshly announced execution."""
    return ExecutionGraph(
        execution=Execution(
            id=created.execution_id,
            task_description=created.task_description,
            status=ExecutionStatus.RUNNING,
            created_at=created.created_at,
            started_at=created.created_at,
        )
    )
