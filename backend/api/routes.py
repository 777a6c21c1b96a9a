"""HTTP API routes for the execution tracker.

This module defines the HTTP endpoints for execution history, the live view,
logs, and tool approvals. Real-time events are handled via WebSocket in
websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status

from approvals.types import ActionResult
from graph.models import ExecutionGraph, LogEntry, LogType, ToolExecution, ToolStatus
from models.schemas import (
    DeleteResponse,
    ExecutionStatsResponse,
    ExecutionSummaryResponse,
    HealthResponse,
    ToolActionResponse,
    ViewResponse,
)

if TYPE_CHECKING:
    from tracker import ExecutionTracker, ViewResult

logger = structlog.get_logger(__name__)

router = APIRouter()

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _view_response(tracker: ExecutionTracker, result: ViewResult) -> ViewResponse:
    """Convert a tracker ViewResult, mapping failures to HTTP errors."""
    if result.not_found:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=result.error or f"Execution {result.execution_id} not found",
        )
    if result.error is not None:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=result.error,
        )
    return ViewResponse(
        execution_id=result.execution_id,
        outcome=result.outcome.value if result.outcome else None,
        graph=result.graph,
        active=tracker.is_active(),
    )


def _action_response(result: ActionResult) -> ToolActionResponse:
    """Map engine rejections to HTTP errors; everything else is a 200."""
    if not result.success and result.status is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=result.error or f"Tool call {result.tool_call_id} not found",
        )
    if not result.success and result.error and "cannot move from" in result.error:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=result.error,
        )
    return ToolActionResponse.from_result(result)


# Tracker dependency (set during application startup)
_tracker: ExecutionTracker | None = None


def set_tracker(tracker: ExecutionTracker) -> None:
    """Set the tracker instance for the routes.

    This should be called during application startup to inject the tracker
    dependency.

    Args:
        tracker: The ExecutionTracker instance to use for all routes.
    """
    global _tracker
    _tracker = tracker
    logger.info("tracker_configured")


def get_tracker() -> ExecutionTracker:
    """Get the tracker instance.

    Raises:
        RuntimeError: If the tracker has not been configured.
    """
    if _tracker is None:
        logger.error("tracker_not_configured")
        raise RuntimeError("ExecutionTracker not configured. Call set_tracker() during startup.")
    return _tracker


# -----------------------------------------------------------------------------
# Execution history
# -----------------------------------------------------------------------------


@router.get(
    "/api/executions",
    response_model=list[ExecutionSummaryResponse],
    summary="List executions",
    description="List recent executions from durable storage, newest first.",
)
async def list_executions(
    limit: Annotated[int, Query(description="Maximum executions to return", ge=1, le=500)] = 50,
    query: Annotated[str | None, Query(description="Search term")] = None,
) -> list[ExecutionSummaryResponse]:
    tracker = get_tracker()
    if query:
        executions = await tracker.search_history(query, limit)
    else:
        executions = await tracker.load_history(limit)
    return [ExecutionSummaryResponse.model_validate(e.model_dump()) for e in executions]


@router.get(
    "/api/executions/stats",
    response_model=ExecutionStatsResponse,
    summary="Execution statistics",
)
async def execution_stats() -> ExecutionStatsResponse:
    stats = await get_tracker().history_stats()
    total = stats.pop("total", 0)
    return ExecutionStatsResponse(total=total, by_status=stats)


@router.delete(
    "/api/executions",
    response_model=DeleteResponse,
    summary="Delete all executions",
    description="Delete every execution from durable storage and clear the live view.",
)
async def nuke_executions() -> DeleteResponse:
    count = await get_tracker().nuke_all_executions()
    logger.info("executions_nuked", deleted=count)
    return DeleteResponse(message="All executions deleted", deleted=count)


# -----------------------------------------------------------------------------
# Live view
# -----------------------------------------------------------------------------


@router.get(
    "/api/executions/current",
    response_model=ExecutionGraph,
    summary="Get the live execution graph",
)
async def get_current_execution() -> ExecutionGraph:
    graph = get_tracker().current_graph()
    if graph is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No execution is loaded",
        )
    return graph


@router.post(
    "/api/executions/current/refresh",
    response_model=ViewResponse,
    summary="Refresh the live execution from storage",
    description=(
        "Re-read the loaded execution. The stored copy is only installed "
        "once the execution has settled."
    ),
)
async def refresh_current_execution() -> ViewResponse:
    tracker = get_tracker()
    result = await tracker.refresh_current()
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No execution is loaded",
        )
    return _view_response(tracker, result)


@router.post(
    "/api/executions/{execution_id}/view",
    response_model=ViewResponse,
    summary="Open an execution",
)
async def view_execution(
    execution_id: Annotated[str, Path(description="The execution ID")],
) -> ViewResponse:
    tracker = get_tracker()
    result = await tracker.view_execution(execution_id)
    logger.info(
        "execution_view_requested",
        execution_id=execution_id,
        outcome=result.outcome.value if result.outcome else None,
    )
    return _view_response(tracker, result)


@router.post(
    "/api/executions/{execution_id}/abort",
    summary="Abort an execution",
    description="Mark the loaded execution as aborted so it stops counting as active.",
)
async def abort_execution(
    execution_id: Annotated[str, Path(description="The execution ID")],
) -> dict[str, str]:
    if not await get_tracker().abort_execution(execution_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Execution {execution_id} is not loaded or already aborted",
        )
    return {"message": f"Execution {execution_id} aborted"}


@router.delete(
    "/api/executions/{execution_id}",
    response_model=DeleteResponse,
    summary="Delete an execution",
    description="Set force=true to delete an execution that is still running.",
)
async def delete_execution(
    execution_id: Annotated[str, Path(description="The execution ID")],
    force: Annotated[bool, Query(description="Delete even if running")] = False,
) -> DeleteResponse:
    if not await get_tracker().delete_execution(execution_id, force=force):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=(
                f"Execution {execution_id} could not be deleted. "
                "It may be running (retry with force=true) or already gone."
            ),
        )
    return DeleteResponse(message=f"Execution {execution_id} deleted", deleted=1)


@router.get(
    "/api/executions/{execution_id}/logs",
    response_model=list[LogEntry],
    summary="Get execution logs",
)
async def get_execution_logs(
    execution_id: Annotated[str, Path(description="The execution ID")],
    log_type: Annotated[LogType | None, Query(description="Only this log type")] = None,
    query: Annotated[str | None, Query(description="Search term")] = None,
) -> list[LogEntry]:
    return await get_tracker().get_logs(execution_id, log_type=log_type, query=query)


# -----------------------------------------------------------------------------
# Tool approvals
# -----------------------------------------------------------------------------


@router.get(
    "/api/tool-calls",
    response_model=list[ToolExecution],
    summary="List tool calls",
)
async def list_tool_calls(
    execution_id: Annotated[str | None, Query(description="Only this execution")] = None,
    status_filter: Annotated[
        ToolStatus | None, Query(alias="status", description="Only this status")
    ] = None,
) -> list[ToolExecution]:
    calls = get_tracker().list_tool_calls(execution_id)
    if status_filter is not None:
        calls = [c for c in calls if c.status == status_filter]
    return calls


@router.post(
    "/api/tool-calls/{tool_call_id}/approve",
    response_model=ToolActionResponse,
    summary="Approve a pending tool call",
)
async def approve_tool_call(
    tool_call_id: Annotated[str, Path(description="The tool call ID")],
) -> ToolActionResponse:
    return _action_response(await get_tracker().approve_tool_call(tool_call_id))


@router.post(
    "/api/tool-calls/{tool_call_id}/deny",
    response_model=ToolActionResponse,
    summary="Deny a pending tool call",
)
async def deny_tool_call(
    tool_call_id: Annotated[str, Path(description="The tool call ID")],
) -> ToolActionResponse:
    return _action_response(await get_tracker().deny_tool_call(tool_call_id))


@router.post(
    "/api/tool-calls/{tool_call_id}/reset",
    response_model=ToolActionResponse,
    summary="Reset a settled tool call to pending",
)
async def reset_tool_call(
    tool_call_id: Annotated[str, Path(description="The tool call ID")],
) -> ToolActionResponse:
    return _action_response(await get_tracker().reset_tool_call(tool_call_id))


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with push channel and live view status.",
)
async def health_check() -> HealthResponse:
    channel_connected = False
    current_execution_id: str | None = None
    pending = 0

    try:
        tracker = get_tracker()
        channel_connected = tracker.is_listening()
        current_execution_id = tracker.current_execution_id()
        pending = sum(1 for c in tracker.list_tool_calls() if c.status == ToolStatus.PENDING)
    except RuntimeError:
        # Tracker not configured yet (e.g., during startup)
        pass

    return HealthResponse(
        status="healthy" if channel_connected else "unhealthy",
        timestamp=time.time(),
        channel_connected=channel_connected,
        current_execution_id=current_execution_id,
        pending_tool_calls=pending,
    )
