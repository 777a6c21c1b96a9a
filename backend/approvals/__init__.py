"""Human approval of agent tool calls.

Key Components:
    - ToolApprovalEngine: Per-call approval state machine
    - ToolServerPolicy: Provider configuration and auto-approval policy
    - ActionResult: Typed outcome of every approval action
"""

from approvals.engine import ToolApprovalEngine, can_transition
from approvals.policy import ToolServerPolicy
from approvals.types import (
    ActionResult,
    CommandResult,
    HumanInteractionResponse,
    InvalidTransitionError,
    ResumeResult,
    ToolExecutionReport,
    ToolInvocationResult,
    UnknownToolCallError,
)

__all__ = [
    "ActionResult",
    "CommandResult",
    "HumanInteractionResponse",
    "InvalidTransitionError",
    "ResumeResult",
    "ToolApprovalEngine",
    "ToolExecutionReport",
    "ToolInvocationResult",
    "ToolServerPolicy",
    "UnknownToolCallError",
    "can_transition",
]
