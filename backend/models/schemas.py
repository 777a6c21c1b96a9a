"""Pydantic schemas for API request/response models.

This module defines the data models used by the HTTP API and WebSocket
handlers. Graph entities themselves live in ``graph.models`` and are returned
as-is; the models here wrap them with action outcomes and metadata.
"""

from typing import Literal

from pydantic import BaseModel, Field

from approvals.types import ActionResult
from graph.models import ExecutionGraph, ExecutionStatus, ToolStatus


class ExecutionSummaryResponse(BaseModel):
    """One row of the execution history list."""

    id: str = Field(description="Execution identifier", examples=["exec_abc123"])
    task_description: str = Field(description="What the swarm was asked to do")
    status: ExecutionStatus = Field(description="Execution lifecycle status")
    created_at: float = Field(description="Unix timestamp of creation")
    completed_at: float | None = Field(
        default=None,
        description="Unix timestamp when the execution settled",
    )
    total_agents: int = Field(default=0, ge=0)
    total_tasks: int = Field(default=0, ge=0)
    total_tool_executions: int = Field(default=0, ge=0)


class ExecutionStatsResponse(BaseModel):
    """Per-status execution counts from durable storage."""

    total: int = Field(default=0, ge=0)
    by_status: dict[str, int] = Field(default_factory=dict)


class ViewResponse(BaseModel):
    """Result of opening or refreshing an execution."""

    execution_id: str = Field(description="The requested execution")
    outcome: str | None = Field(
        default=None,
        description="What the reconciler did with the loaded snapshot",
        examples=["installed_switch", "discarded_active"],
    )
    graph: ExecutionGraph | None = Field(
        default=None,
        description="The graph on screen after the call",
    )
    active: bool = Field(
        default=False,
        description="Whether the graph on screen is still receiving live updates",
    )


class ToolActionResponse(BaseModel):
    """Outcome of approving, denying, or resetting a tool call."""

    success: bool
    tool_call_id: str
    status: ToolStatus | None = None
    message: str | None = None
    error: str | None = None
    workflow_completed: bool = False
    workflow_result: str | None = None

    @classmethod
    def from_result(cls, result: ActionResult) -> "ToolActionResponse":
        return cls(
            success=result.success,
            tool_call_id=result.tool_call_id,
            status=result.status,
            message=result.message,
            error=result.error,
            workflow_completed=result.workflow_completed,
            workflow_result=result.workflow_result,
        )


class DeleteResponse(BaseModel):
    """Result of deleting one or all executions."""

    message: str
    deleted: int = Field(default=0, ge=0)


class HealthResponse(BaseModel):
    """Health check response with tracker status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    channel_connected: bool = Field(
        default=False,
        description="Whether the push channel listener is running",
    )
    current_execution_id: str | None = Field(
        default=None,
        description="Execution currently loaded in the live view",
    )
    pending_tool_calls: int = Field(
        default=0,
        description="Tool calls waiting for a decision",
    )
