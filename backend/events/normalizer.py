"""Translate raw push-channel messages into graph deltas.

The orchestrator is not consistent about payload shapes: keys arrive in
camelCase or snake_case, agents are referenced by id, external id or a nested
agent card, and tool statuses use their own vocabulary. The EventNormalizer
absorbs all of that so the rest of the tracker only ever sees typed deltas.

Normalization is pure and never raises. Malformed payloads are logged and
produce ``None``.
"""

import json
import uuid
from collections.abc import Callable
from enum import StrEnum
from typing import Any, TypeVar

import structlog
from pydantic import ValidationError

from events.types import ChannelMessage, ChannelTopic
from graph.deltas import (
    AgentAdded,
    AgentDelta,
    Delta,
    ExecutionCreated,
    ExecutionDelta,
    TaskDelta,
    ToolDelta,
    ToolExecutionAdded,
)
from graph.models import (
    AgentStatus,
    ExecutionStatus,
    LogEntry,
    LogType,
    TaskStatus,
    ToolStatus,
)

logger = structlog.get_logger(__name__)

StatusT = TypeVar("StatusT", bound=StrEnum)

# Orchestrator vocabulary -> client vocabulary.
_TOOL_STATUS_ALIASES: dict[str, ToolStatus] = {
    "completed": ToolStatus.EXECUTED,
    "success": ToolStatus.EXECUTED,
    "failed": ToolStatus.ERROR,
    "rejected": ToolStatus.DENIED,
    "running": ToolStatus.EXECUTING,
}
_EXECUTION_STATUS_ALIASES: dict[str, ExecutionStatus] = {
    "error": ExecutionStatus.FAILED,
}


def _pick(payload: dict[str, Any], *keys: str) -> Any:
    """Return the first non-None value among ``keys``."""
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _as_text(value: Any) -> str | None:
    """Render a reported value as text; structured values become JSON."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _coerce_status(
    enum_cls: type[StatusT],
    raw: Any,
    aliases: dict[str, StatusT] | None = None,
) -> StatusT | None:
    """Map a reported status string onto ``enum_cls``.

    Unknown values are logged and dropped so the rest of the delta can still
    be applied.
    """
    if raw is None:
        return None
    text = str(raw).strip().lower()
    if aliases and text in aliases:
        return aliases[text]
    try:
        return enum_cls(text)
    except ValueError:
        logger.warning("channel_status_unknown", status=raw, expected=enum_cls.__name__)
        return None


def _execution_id(payload: dict[str, Any]) -> str | None:
    value = _pick(payload, "executionId", "execution_id")
    return str(value) if value else None


def _agent_identity(payload: dict[str, Any]) -> tuple[str | None, str | None]:
    """Extract (agent reference, role) from an agent payload."""
    card = _pick(payload, "agentCard", "agent_card")
    card = card if isinstance(card, dict) else {}
    ref = _pick(payload, "agentId", "agent_id")
    if ref is None:
        ref = _pick(card, "id", "agent_id", "agentId")
    role = _pick(card, "role", "name")
    if role is None:
        role = _pick(payload, "role", "agentRole", "agent_role")
    return (str(ref) if ref else None, str(role) if role else None)


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"input": raw}
        return parsed if isinstance(parsed, dict) else {"input": parsed}
    return {}


class EventNormalizer:
    """Stateless mapper from ChannelMessage to Delta.

    Usage:
        >>> normalizer = EventNormalizer()
        >>> delta = normalizer.normalize({
        ...     "topic": "task_updated",
        ...     "payload": {"taskId": "t1", "status": "running", "executionId": "e1"},
        ... })
        >>> delta.kind
        'task'
    """

    def __init__(self) -> None:
        self._handlers: dict[ChannelTopic, Callable[[dict[str, Any]], Delta | None]] = {
            ChannelTopic.AGENT_UPDATED: self._agent_updated,
            ChannelTopic.TASK_UPDATED: self._task_updated,
            ChannelTopic.EXECUTION_UPDATED: self._execution_updated,
            ChannelTopic.TOOL_EXECUTION_UPDATED: self._tool_execution_updated,
            ChannelTopic.EXECUTION_CREATED: self._execution_created,
            ChannelTopic.AGENT_CREATED: self._agent_created,
            ChannelTopic.TOOL_APPROVAL_REQUEST: self._tool_approval_request,
            ChannelTopic.TOOL_EXECUTION_START: self._tool_execution_start,
            ChannelTopic.TOOL_EXECUTION_COMPLETE: self._tool_execution_complete,
        }

    @staticmethod
    def coerce_message(raw: ChannelMessage | dict[str, Any]) -> ChannelMessage | None:
        """Validate a plain dict into a ChannelMessage; None if it is not one."""
        if isinstance(raw, ChannelMessage):
            return raw
        try:
            return ChannelMessage.model_validate(raw)
        except ValidationError as e:
            logger.warning("channel_message_invalid", error=str(e))
            return None

    def normalize(self, raw: ChannelMessage | dict[str, Any]) -> Delta | None:
        """Convert a channel message into a Delta.

        Returns:
            The delta, or None for topics that carry no entity change,
            payloads without a resolvable execution id, and malformed input.
        """
        message = self.coerce_message(raw)
        if message is None:
            return None
        handler = self._handlers.get(message.topic)
        if handler is None:
            return None
        try:
            return handler(message.payload)
        except (ValidationError, TypeError, ValueError, AttributeError) as e:
            logger.warning(
                "channel_payload_invalid",
                topic=message.topic.value,
                error=str(e),
            )
            return None

    # -----------------------------------------------------------------
    # Topic handlers
    # -----------------------------------------------------------------

    def _agent_updated(self, payload: dict[str, Any]) -> Delta | None:
        execution_id = _execution_id(payload)
        if execution_id is None:
            return None
        ref, role = _agent_identity(payload)
        if ref is None and role is None:
            logger.debug("agent_update_without_identity", execution_id=execution_id)
        return AgentDelta(
            execution_id=execution_id,
            agent_id=ref,
            role=role,
            status=_coerce_status(AgentStatus, payload.get("status")),
            current_task=_as_text(_pick(payload, "currentTask", "current_task")),
        )

    def _task_updated(self, payload: dict[str, Any]) -> Delta | None:
        execution_id = _execution_id(payload)
        task_id = _pick(payload, "taskId", "task_id")
        if execution_id is None or task_id is None:
            return None
        return TaskDelta(
            execution_id=execution_id,
            task_id=str(task_id),
            status=_coerce_status(TaskStatus, payload.get("status")),
            result=_as_text(payload.get("result")),
            error=_as_text(payload.get("error")),
        )

    def _execution_updated(self, payload: dict[str, Any]) -> Delta | None:
        execution_id = _execution_id(payload)
        if execution_id is None:
            return None
        return ExecutionDelta(
            execution_id=execution_id,
            status=_coerce_status(
                ExecutionStatus, payload.get("status"), _EXECUTION_STATUS_ALIASES
            ),
            result=_as_text(payload.get("result")),
            error=_as_text(payload.get("error")),
        )

    def _tool_execution_updated(self, payload: dict[str, Any]) -> Delta | None:
        execution_id = _execution_id(payload)
        tool_id = _pick(payload, "toolExecutionId", "tool_execution_id", "approvalId")
        if execution_id is None or tool_id is None:
            return None
        return ToolDelta(
            execution_id=execution_id,
            tool_execution_id=str(tool_id),
            status=_coerce_status(ToolStatus, payload.get("status"), _TOOL_STATUS_ALIASES),
            result=_as_text(payload.get("result")),
            error=_as_text(payload.get("error")),
            execution_time_ms=_as_int(_pick(payload, "executionTime", "execution_time")),
        )

    def _execution_created(self, payload: dict[str, Any]) -> Delta | None:
        execution_id = _execution_id(payload)
        if execution_id is None:
            return None
        fields: dict[str, Any] = {
            "execution_id": execution_id,
            "task_description": _as_text(
                _pick(payload, "taskDescription", "task_description")
            )
            or "",
        }
        created_at = _pick(payload, "createdAt", "created_at")
        if isinstance(created_at, (int, float)):
            fields["created_at"] = float(created_at)
        return ExecutionCreated(**fields)

    def _agent_created(self, payload: dict[str, Any]) -> Delta | None:
        execution_id = _execution_id(payload)
        ref, role = _agent_identity(payload)
        if execution_id is None or ref is None:
            return None
        expertise = payload.get("expertise") or []
        if isinstance(expertise, str):
            expertise = [expertise]
        return AgentAdded(
            execution_id=execution_id,
            id=str(_pick(payload, "id") or ref),
            agent_id=ref,
            role=role or ref,
            expertise=[str(item) for item in expertise],
        )

    def _tool_approval_request(self, payload: dict[str, Any]) -> Delta | None:
        request = payload.get("request")
        request = request if isinstance(request, dict) else {}
        execution_id = _execution_id(payload) or _execution_id(request)
        approval_id = _pick(payload, "approvalId", "approval_id")
        tool_call = _pick(request, "toolCall", "tool_call")
        tool_call = tool_call if isinstance(tool_call, dict) else {}
        tool_name = _pick(tool_call, "name", "toolName")
        if execution_id is None or approval_id is None or tool_name is None:
            return None
        thread_id = _pick(request, "threadId", "thread_id") or _pick(
            payload, "threadId", "thread_id"
        )
        task_id = _pick(request, "taskId", "task_id") or _pick(payload, "taskId", "task_id")
        agent_id = _pick(request, "agentId", "agent_id") or _pick(
            payload, "agentId", "agent_id"
        )
        server = _pick(request, "originalMCPServer", "mcpServer", "mcp_server")
        return ToolExecutionAdded(
            execution_id=execution_id,
            id=str(approval_id),
            tool_name=str(tool_name),
            mcp_server=str(server) if server else None,
            arguments=_parse_arguments(tool_call.get("arguments")),
            task_id=str(task_id) if task_id else None,
            agent_id=str(agent_id) if agent_id else None,
            thread_id=str(thread_id) if thread_id else None,
        )

    def _tool_execution_start(self, payload: dict[str, Any]) -> Delta | None:
        execution_id = _execution_id(payload)
        tool_id = _pick(payload, "approvalId", "toolExecutionId", "tool_execution_id")
        if execution_id is None or tool_id is None:
            return None
        return ToolDelta(
            execution_id=execution_id,
            tool_execution_id=str(tool_id),
            status=ToolStatus.EXECUTING,
        )

    def _tool_execution_complete(self, payload: dict[str, Any]) -> Delta | None:
        execution_id = _execution_id(payload)
        tool_id = _pick(payload, "approvalId", "toolExecutionId", "tool_execution_id")
        if execution_id is None or tool_id is None:
            return None
        success = bool(payload.get("success")) and payload.get("error") is None
        return ToolDelta(
            execution_id=execution_id,
            tool_execution_id=str(tool_id),
            status=ToolStatus.EXECUTED if success else ToolStatus.ERROR,
            result=_as_text(payload.get("result")) if success else None,
            error=None if success else (_as_text(payload.get("error")) or "Tool execution failed"),
            execution_time_ms=_as_int(_pick(payload, "executionTime", "execution_time")),
        )

    # -----------------------------------------------------------------
    # Live log fragments
    # -----------------------------------------------------------------

    def live_fragment(
        self,
        raw: ChannelMessage | dict[str, Any],
        fallback_execution_id: str | None = None,
    ) -> LogEntry | None:
        """Render a channel message as a live log line, if it produces one.

        Args:
            raw: The channel message.
            fallback_execution_id: Used for stream updates that do not name
                their execution (they belong to whatever is running).

        Returns:
            A LogEntry with ``is_live=True``, or None.
        """
        message = self.coerce_message(raw)
        if message is None:
            return None
        payload = message.payload
        execution_id = _execution_id(payload)

        log_type = LogType.INFO
        agent_role: str | None = None
        agent_id: str | None = None
        text: str | None = None

        if message.topic == ChannelTopic.STREAM_UPDATE:
            update = payload.get("update")
            if isinstance(update, dict):
                execution_id = execution_id or _execution_id(update)
                text = _as_text(_pick(update, "message", "content", "text")) or _as_text(update)
                agent_role = _as_text(_pick(update, "agentRole", "agent_role", "role"))
                if str(update.get("type", "")).lower() == "error":
                    log_type = LogType.ERROR
            else:
                text = _as_text(update)
            execution_id = execution_id or fallback_execution_id
        elif message.topic == ChannelTopic.AGENT_UPDATED:
            agent_id, agent_role = _agent_identity(payload)
            status = payload.get("status")
            current_task = _pick(payload, "currentTask", "current_task")
            label = agent_role or agent_id or "Agent"
            text = f"{label} is now {status}" if status else f"{label} updated"
            if current_task:
                text = f"{text}: {current_task}"
            log_type = LogType.AGENT_EXECUTION
        elif message.topic == ChannelTopic.EXECUTION_UPDATED:
            status = payload.get("status")
            error = payload.get("error")
            if error:
                text = f"Execution failed: {_as_text(error)}"
                log_type = LogType.ERROR
            elif status:
                text = f"Execution status changed to {status}"
                progress = payload.get("progress")
                if isinstance(progress, (int, float)):
                    text = f"{text} ({round(progress)}%)"
                log_type = LogType.STATUS_UPDATE
        elif message.topic == ChannelTopic.RESULT_SYNTHESIZED:
            result = _as_text(payload.get("result")) or ""
            preview = result if len(result) <= 200 else f"{result[:200]}..."
            text = f"Final result synthesized: {preview}" if preview else "Final result synthesized"
            log_type = LogType.SYNTHESIS

        if not text or not execution_id:
            return None
        return LogEntry(
            id=f"live_{uuid.uuid4().hex[:12]}",
            execution_id=execution_id,
            log_type=log_type,
            message=text,
            timestamp=message.received_at,
            agent_role=agent_role,
            agent_id=agent_id,
            is_live=True,
        )
