"""Entity models for the execution graph.

An execution is the root of a tree: agents hang off the execution, tasks
hang off agents, and tool executions hang off tasks (or directly off an
agent). The client only ever holds one such subtree in memory at a time.

All timestamps are Unix floats.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ExecutionStatus(StrEnum):
    """Lifecycle status of a root execution.

    ``ABORTED`` is never reported by the orchestrator; it is set locally when
    the user aborts an execution.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class AgentStatus(StrEnum):
    """Agent status as reported by the orchestrator."""

    IDLE = "idle"
    BUSY = "busy"
    RUNNING = "running"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(StrEnum):
    """Sub-task status."""

    PENDING = "pending"
    RUNNING = "running"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class ToolStatus(StrEnum):
    """Tool invocation status driven by the approval state machine."""

    PENDING = "pending"
    APPROVED = "approved"
    EXECUTING = "executing"
    EXECUTED = "executed"
    ERROR = "error"
    DENIED = "denied"


class LogType(StrEnum):
    """Category of a log entry shown in the execution log view."""

    INFO = "info"
    STATUS_UPDATE = "status_update"
    AGENT_EXECUTION = "agent_execution"
    TOOL_REQUEST = "tool_request"
    TOOL_RESULT = "tool_result"
    WARNING = "warning"
    ERROR = "error"
    SYNTHESIS = "synthesis"


# Statuses that make an execution count as "in flight".
BUSY_AGENT_STATUSES = frozenset(
    {AgentStatus.BUSY, AgentStatus.RUNNING, AgentStatus.EXECUTING}
)
BUSY_TASK_STATUSES = frozenset({TaskStatus.RUNNING, TaskStatus.EXECUTING})

TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.ABORTED}
)
# Reported statuses that still apply to a locally aborted execution.
AFTER_ABORT_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED})
TERMINAL_AGENT_STATUSES = frozenset({AgentStatus.COMPLETED, AgentStatus.FAILED})
TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})
TERMINAL_TOOL_STATUSES = frozenset(
    {ToolStatus.APPROVED, ToolStatus.EXECUTED, ToolStatus.ERROR, ToolStatus.DENIED}
)


class Execution(BaseModel):
    """Root task execution."""

    id: str
    task_description: str = ""
    status: ExecutionStatus = ExecutionStatus.PENDING
    created_at: float = Field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    result: str | None = None
    error: str | None = None
    total_agents: int = 0
    total_tasks: int = 0
    total_tool_executions: int = 0


class Agent(BaseModel):
    """An agent spawned for an execution.

    ``id`` is the client-side identifier; ``agent_id`` is the identifier the
    orchestrator uses on the wire. Either, or the role, may be used to refer
    to the agent in a delta.
    """

    id: str
    execution_id: str
    agent_id: str
    role: str
    status: AgentStatus = AgentStatus.IDLE
    current_task: str | None = None
    expertise: list[str] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)
    completed_at: float | None = None
    last_updated: float | None = None


class Task(BaseModel):
    """A sub-task assigned to an agent."""

    id: str
    execution_id: str
    # Kept exactly as emitted: may be an internal id, external id, or a role.
    agent_id: str
    task_description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: int = 0
    iterations: int = 0
    max_iterations: int = 10
    result: str | None = None
    error: str | None = None
    created_at: float = Field(default_factory=time.time)
    completed_at: float | None = None
    last_updated: float | None = None


class ToolExecution(BaseModel):
    """A single tool invocation requested by an agent."""

    id: str
    execution_id: str | None = None
    task_id: str | None = None
    agent_id: str | None = None
    tool_name: str
    mcp_server: str | None = None
    arguments: dict[str, Any] = Field(default_factory=dict)
    status: ToolStatus = ToolStatus.PENDING
    result: str | None = None
    error: str | None = None
    execution_time_ms: int | None = None
    human_approved: bool = False
    created_at: float = Field(default_factory=time.time)
    completed_at: float | None = None
    last_updated: float | None = None


class LogEntry(BaseModel):
    """A single line in the execution log view.

    ``is_live`` is False for entries derived from settled state (durable or
    synthesized from a snapshot) and True for entries produced locally or
    from the live stream, even after they have been persisted.
    """

    id: str
    execution_id: str
    log_type: LogType = LogType.INFO
    message: str
    timestamp: float = Field(default_factory=time.time)
    agent_role: str | None = None
    agent_id: str | None = None
    task_id: str | None = None
    tool_name: str | None = None
    tool_execution_id: str | None = None
    is_live: bool = False


class ExecutionGraph(BaseModel):
    """A complete execution subtree, as installed in the graph store."""

    execution: Execution
    agents: list[Agent] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)
    tool_executions: list[ToolExecution] = Field(default_factory=list)
    logs: list[LogEntry] = Field(default_factory=list)

    @property
    def execution_id(self) -> str:
        return self.execution.id
