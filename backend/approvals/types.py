"""Types shared by the tool approval engine and its collaborators."""

import time
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from graph.models import ToolExecution, ToolStatus


class InvalidTransitionError(Exception):
    """A tool call was asked to move to a state its current state forbids."""

    def __init__(self, tool_call_id: str, current: ToolStatus, target: ToolStatus) -> None:
        super().__init__(
            f"Tool call {tool_call_id} cannot move from {current.value} to {target.value}"
        )
        self.tool_call_id = tool_call_id
        self.current = current
        self.target = target


class UnknownToolCallError(KeyError):
    """No tool call with the given id is registered."""


# -----------------------------------------------------------------------------
# Wire models
# -----------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ToolExecutionReport(_CamelModel):
    """Outcome of a locally executed tool, forwarded to a resumed workflow."""

    success: bool
    result: Any = None
    error: str | None = None
    tool_name: str
    server: str | None = None


class HumanInteractionResponse(_CamelModel):
    """Decision sent to a paused remote workflow when resuming it.

    Serialize with ``model_dump(by_alias=True, exclude_none=True)`` to get
    ``{id, approved, timestamp, toolExecutionResult?}``.
    """

    id: str
    approved: bool
    timestamp: float = Field(default_factory=time.time)
    tool_execution_result: ToolExecutionReport | None = None


# -----------------------------------------------------------------------------
# Collaborator results
# -----------------------------------------------------------------------------


@dataclass
class ToolInvocationResult:
    """Result of invoking a tool on a tool provider."""

    success: bool
    data: Any = None
    error: str | None = None


@dataclass
class ResumeResult:
    """Result of resuming a paused workflow.

    Attributes:
        success: The workflow accepted the decision.
        completed: The workflow ran to completion after resuming.
        result: Final workflow output, when completed.
        error: Failure description.
    """

    success: bool
    completed: bool = False
    result: str | None = None
    error: str | None = None


@dataclass
class CommandResult:
    success: bool
    error: str | None = None


@dataclass
class ActionResult:
    """What an approve, deny, reset or auto-approve did.

    Attributes:
        success: The action completed without a user-visible error.
        tool_call_id: The call acted on.
        status: Status of the call after the action.
        message: Short summary suitable for a notice.
        error: User-visible error, when ``success`` is False.
        workflow_completed: A resumed workflow reported completion.
        workflow_result: The completed workflow's output.
    """

    success: bool
    tool_call_id: str
    status: ToolStatus | None = None
    message: str | None = None
    error: str | None = None
    workflow_completed: bool = False
    workflow_result: str | None = None


# -----------------------------------------------------------------------------
# Collaborator protocols
# -----------------------------------------------------------------------------


class ToolInvoker(Protocol):
    async def invoke_tool(
        self, server: str, tool_name: str, arguments: dict[str, Any]
    ) -> ToolInvocationResult: ...


class WorkflowResumer(Protocol):
    async def resume(
        self, thread_id: str, response: HumanInteractionResponse
    ) -> ResumeResult: ...


class CommandChannel(Protocol):
    async def send_tool_decision(self, approval_id: str, approved: bool) -> CommandResult: ...


class ToolCallPersistence(Protocol):
    async def upsert_tool_execution(self, tool: ToolExecution, *, replace: bool = True) -> None: ...
