"""Event type definitions for the execution tracker.

Two families of events flow through the tracker:

- Inbound ``ChannelMessage`` objects, pushed by the orchestrator on its event
  channel. Their payloads are raw, loosely-shaped dicts that the
  EventNormalizer turns into graph deltas.
- Outbound ``StateEvent`` objects, published on the state bus whenever the
  tracker's view of an execution changes, so UI subscribers can re-render.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class ChannelTopic(StrEnum):
    """Topics emitted by the orchestrator on the push channel."""

    AGENT_UPDATED = "agent_updated"
    TASK_UPDATED = "task_updated"
    EXECUTION_UPDATED = "execution_updated"
    TOOL_EXECUTION_UPDATED = "tool_execution_updated"
    EXECUTION_CREATED = "execution_created"
    AGENT_CREATED = "agent_created"
    STREAM_UPDATE = "stream_update"
    RESULT_SYNTHESIZED = "result_synthesized"
    TOOL_APPROVAL_REQUEST = "tool_approval_request"
    TOOL_EXECUTION_START = "tool_execution_start"
    TOOL_EXECUTION_COMPLETE = "tool_execution_complete"


class ChannelMessage(BaseModel):
    """A single message received on the push channel.

    Payload schemas by topic (keys may arrive camelCase or snake_case):

    AGENT_UPDATED:
        - agentCard: dict - {id?, agent_id?, name?, role}, or agentId: str
        - status: str
        - currentTask: Optional[str]
        - executionId: str

    TASK_UPDATED:
        - taskId: str
        - status: str
        - result / error: Optional[str]
        - executionId: str

    EXECUTION_UPDATED:
        - executionId: str
        - status: str
        - result / error: Optional[str]
        - progress: Optional[float]

    TOOL_EXECUTION_UPDATED:
        - toolExecutionId: str
        - status: str
        - result / error: Optional[str]
        - executionTime: Optional[int] - milliseconds
        - executionId: str

    EXECUTION_CREATED:
        - executionId: str
        - taskDescription: str

    AGENT_CREATED:
        - executionId: str
        - agentId: str
        - role: str
        - expertise: Optional[list[str]]

    STREAM_UPDATE:
        - update: dict | str - free-form progress fragment

    RESULT_SYNTHESIZED:
        - executionId: str
        - result: str
        - agentCards: Optional[list[dict]]

    TOOL_APPROVAL_REQUEST:
        - approvalId: str
        - executionId: str
        - request: dict - {toolCall: {name, arguments}, originalMCPServer,
          threadId?, taskId?, agentId?}

    TOOL_EXECUTION_START:
        - executionId: str
        - approvalId: str
        - toolName: str

    TOOL_EXECUTION_COMPLETE:
        - executionId: str
        - approvalId: str
        - success: bool
        - result / error: Optional[Any]
        - executionTime: Optional[int]
    """

    topic: ChannelTopic
    payload: dict[str, Any] = Field(default_factory=dict)
    received_at: float = Field(default_factory=time.time)


class StateEventType(StrEnum):
    """Notifications published on the state bus."""

    GRAPH_REPLACED = "graph_replaced"
    GRAPH_UPDATED = "graph_updated"
    EXECUTION_ABORTED = "execution_aborted"
    TOOL_CALL_UPDATED = "tool_call_updated"
    LOG_APPENDED = "log_appended"
    WORKFLOW_COMPLETED = "workflow_completed"
    HISTORY_UPDATED = "history_updated"
    NOTICE = "notice"
    CHANNEL_CLOSED = "channel_closed"


class NoticeLevel(StrEnum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


class StateEvent(BaseModel):
    """A change notification delivered to state bus subscribers.

    ``channel`` is the execution id the event belongs to, or ``"global"``
    for notices and history changes that are not tied to one execution.

    Payload schemas by event type:

    GRAPH_REPLACED:
        - graph: dict - the full ExecutionGraph
        - outcome: str - ReconcileOutcome value

    GRAPH_UPDATED:
        - delta: dict - the applied delta

    TOOL_CALL_UPDATED:
        - tool_call: dict - the ToolExecution record

    LOG_APPENDED:
        - entry: dict - the LogEntry

    WORKFLOW_COMPLETED:
        - tool_call_id: str
        - result: str

    NOTICE:
        - level: str - NoticeLevel value
        - message: str
    """

    type: StateEventType
    channel: str
    timestamp: float = Field(default_factory=time.time)
    data: dict[str, Any] = Field(default_factory=dict)


GLOBAL_CHANNEL = "global"
