"""Execution graph state.

Key Components:
    - models: Execution, Agent, Task, ToolExecution and LogEntry entities
    - deltas: The closed union of normalized graph mutations
    - GraphStore: Holds the single live execution subtree
    - Reconciler: Decides which snapshot or delta may touch the store
"""

from graph.deltas import (
    AgentAdded,
    AgentDelta,
    Delta,
    DeltaAdapter,
    ExecutionCreated,
    ExecutionDelta,
    TaskAdded,
    TaskDelta,
    ToolDelta,
    ToolExecutionAdded,
)
from graph.models import (
    Agent,
    AgentStatus,
    Execution,
    ExecutionGraph,
    ExecutionStatus,
    LogEntry,
    LogType,
    Task,
    TaskStatus,
    ToolExecution,
    ToolStatus,
)
from graph.reconciler import Reconciler, ReconcileOutcome
from graph.store import GraphStore

__all__ = [
    # Entities
    "Agent",
    "AgentStatus",
    "Execution",
    "ExecutionGraph",
    "ExecutionStatus",
    "LogEntry",
    "LogType",
    "Task",
    "TaskStatus",
    "ToolExecution",
    "ToolStatus",
    # Deltas
    "AgentAdded",
    "AgentDelta",
    "Delta",
    "DeltaAdapter",
    "ExecutionCreated",
    "ExecutionDelta",
    "TaskAdded",
    "TaskDelta",
    "ToolDelta",
    "ToolExecutionAdded",
    # State
    "GraphStore",
    "Reconciler",
    "ReconcileOutcome",
]
