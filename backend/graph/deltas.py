"""Normalized graph mutations.

Every inbound channel message that changes the execution graph is reduced to
one of the delta models below. A delta only carries the fields the source
actually reported; ``None`` means "not reported" and never overwrites stored
state.

The union is closed and discriminated by ``kind`` so deltas can be
serialized onto the state bus and validated back without guessing.
"""

import time
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

from graph.models import AgentStatus, ExecutionStatus, TaskStatus, ToolStatus


class AgentDelta(BaseModel):
    """Status change for an agent, addressed by id or role."""

    kind: Literal["agent"] = "agent"
    execution_id: str
    agent_id: str | None = None
    role: str | None = None
    status: AgentStatus | None = None
    current_task: str | None = None


class TaskDelta(BaseModel):
    kind: Literal["task"] = "task"
    execution_id: str
    task_id: str
    status: TaskStatus | None = None
    result: str | None = None
    error: str | None = None


class ToolDelta(BaseModel):
    kind: Literal["tool"] = "tool"
    execution_id: str
    tool_execution_id: str
    status: ToolStatus | None = None
    result: str | None = None
    error: str | None = None
    execution_time_ms: int | None = None
    human_approved: bool | None = None


class ExecutionDelta(BaseModel):
    kind: Literal["execution"] = "execution"
    execution_id: str
    status: ExecutionStatus | None = None
    result: str | None = None
    error: str | None = None


class ExecutionCreated(BaseModel):
    """A new root execution was started by the orchestrator."""

    kind: Literal["execution_created"] = "execution_created"
    execution_id: str
    task_description: str = ""
    created_at: float = Field(default_factory=time.time)


class AgentAdded(BaseModel):
    kind: Literal["agent_added"] = "agent_added"
    execution_id: str
    id: str
    agent_id: str
    role: str
    expertise: list[str] = Field(default_factory=list)


class TaskAdded(BaseModel):
    kind: Literal["task_added"] = "task_added"
    execution_id: str
    id: str
    agent_id: str
    task_description: str = ""
    priority: int = 0
    max_iterations: int = 10


class ToolExecutionAdded(BaseModel):
    """A tool call was requested and awaits a decision.

    ``thread_id`` is set when the remote workflow paused itself on this call
    and must be resumed once the call is decided.
    """

    kind: Literal["tool_added"] = "tool_added"
    execution_id: str
    id: str
    tool_name: str
    mcp_server: str | None = None
    arguments: dict[str, Any] = Field(default_factory=dict)
    task_id: str | None = None
    agent_id: str | None = None
    thread_id: str | None = None


Delta = Annotated[
    AgentDelta
    | TaskDelta
    | ToolDelta
    | ExecutionDelta
    | ExecutionCreated
    | AgentAdded
    | TaskAdded
    | ToolExecutionAdded,
    Field(discriminator="kind"),
]

DeltaAdapter: TypeAdapter[Delta] = TypeAdapter(Delta)
