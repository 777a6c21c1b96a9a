"""Tool approval state machine.

Every tool call an agent requests waits in ``pending`` until it is approved,
denied, or auto-approved by policy. Approval either runs the tool directly
through a tool provider, or, when the remote workflow paused itself on the
call, runs the tool and then resumes the workflow with the outcome.

Transitions::

    pending   -> approved | denied | executing (paused workflow)
    approved  -> executing | executed | error | pending (reset)
    executing -> executed | error
    executed | error | denied -> pending (reset)

Every transition produces a log line, is mirrored into the graph through the
Reconciler, and is upserted to durable storage. Side-effect failures are
logged; in-memory state stays authoritative.
"""

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from approvals.policy import ToolServerPolicy
from approvals.types import (
    ActionResult,
    CommandChannel,
    CommandResult,
    HumanInteractionResponse,
    InvalidTransitionError,
    ResumeResult,
    ToolCallPersistence,
    ToolExecutionReport,
    ToolInvocationResult,
    ToolInvoker,
    UnknownToolCallError,
    WorkflowResumer,
)
from graph.deltas import ToolDelta
from graph.models import TERMINAL_TOOL_STATUSES, LogEntry, LogType, ToolExecution, ToolStatus
from graph.reconciler import Reconciler
from logs.aggregator import new_local_entry

logger = structlog.get_logger(__name__)

ToolCallListener = Callable[[ToolExecution], Awaitable[None]]
LogListener = Callable[[LogEntry], Awaitable[None]]

_ALLOWED_TRANSITIONS: dict[ToolStatus, frozenset[ToolStatus]] = {
    ToolStatus.PENDING: frozenset(
        {ToolStatus.APPROVED, ToolStatus.DENIED, ToolStatus.EXECUTING}
    ),
    ToolStatus.APPROVED: frozenset(
        {ToolStatus.EXECUTING, ToolStatus.EXECUTED, ToolStatus.ERROR, ToolStatus.PENDING}
    ),
    ToolStatus.EXECUTING: frozenset({ToolStatus.EXECUTED, ToolStatus.ERROR}),
    ToolStatus.EXECUTED: frozenset({ToolStatus.PENDING}),
    ToolStatus.ERROR: frozenset({ToolStatus.PENDING}),
    ToolStatus.DENIED: frozenset({ToolStatus.PENDING}),
}


def can_transition(current: ToolStatus, target: ToolStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


class ToolApprovalEngine:
    """Owns the approval state of every tool call the tracker has seen.

    The engine holds the authoritative record for each call; the graph store
    only mirrors it. A call whose workflow paused on it is tracked together
    with the paused thread id until the workflow is successfully resumed.

    Attributes:
        invoker: Runs tools on tool providers.
        workflow: Resumes paused remote workflows.
        commands: Sends decisions for orchestrator-side approvals.
        policy: Provider configuration and auto-approval policy.
        tool_timeout_seconds: Upper bound for a single tool invocation.
        approval_prefix: Id prefix of orchestrator-side approvals.
    """

    def __init__(
        self,
        invoker: ToolInvoker,
        workflow: WorkflowResumer,
        policy: ToolServerPolicy,
        commands: CommandChannel | None = None,
        reconciler: Reconciler | None = None,
        persistence: ToolCallPersistence | None = None,
        on_tool_call: ToolCallListener | None = None,
        on_log: LogListener | None = None,
        tool_timeout_seconds: float = 30.0,
        approval_prefix: str = "approval-",
    ) -> None:
        self.invoker = invoker
        self.workflow = workflow
        self.commands = commands
        self.policy = policy
        self.reconciler = reconciler
        self.persistence = persistence
        self.on_tool_call = on_tool_call
        self.on_log = on_log
        self.tool_timeout_seconds = tool_timeout_seconds
        self.approval_prefix = approval_prefix

        self._calls: dict[str, ToolExecution] = {}
        self._threads: dict[str, str] = {}
        self._auto_approved: set[str] = set()
        self._generations: dict[str, int] = {}
        self._inflight: set[asyncio.Task[ToolInvocationResult]] = set()
        self._timed_out: set[asyncio.Task[ToolInvocationResult]] = set()

    # -----------------------------------------------------------------
    # Registry
    # -----------------------------------------------------------------

    def get(self, call_id: str) -> ToolExecution | None:
        call = self._calls.get(call_id)
        return call.model_copy() if call is not None else None

    def list_calls(self, execution_id: str | None = None) -> list[ToolExecution]:
        return [
            call.model_copy()
            for call in self._calls.values()
            if execution_id is None or call.execution_id == execution_id
        ]

    def thread_for(self, call_id: str) -> str | None:
        """Return the paused workflow thread waiting on ``call_id``, if any."""
        return self._threads.get(call_id)

    def is_auto_approved(self, call_id: str) -> bool:
        return call_id in self._auto_approved

    async def register(self, call: ToolExecution, thread_id: str | None = None) -> ToolExecution:
        """Start tracking a requested tool call.

        Registering an id that is already known is a no-op, except that a
        newly reported thread id is attached.

        Args:
            call: The requested call. Its status is forced to ``pending``.
            thread_id: Thread of the remote workflow paused on this call.

        Returns:
            A copy of the tracked record.
        """
        existing = self._calls.get(call.id)
        if existing is not None:
            if thread_id and call.id not in self._threads:
                self._threads[call.id] = thread_id
            return existing.model_copy()

        record = call.model_copy(
            update={
                "status": ToolStatus.PENDING,
                "human_approved": False,
                "last_updated": time.time(),
            }
        )
        self._calls[record.id] = record
        self._generations[record.id] = 0
        if thread_id:
            self._threads[record.id] = thread_id

        logger.info(
            "tool_call_registered",
            tool_call_id=record.id,
            tool_name=record.tool_name,
            server=record.mcp_server,
            paused=thread_id is not None,
        )
        server = f" on {record.mcp_server}" if record.mcp_server else ""
        await self._emit(
            record,
            f"Tool approval requested: {record.tool_name}{server}",
            LogType.TOOL_REQUEST,
        )
        return record.model_copy()

    def adopt(self, calls: list[ToolExecution]) -> int:
        """Track calls loaded from durable storage with their stored status.

        Unlike ``register`` this neither resets the status nor logs or
        persists anything. Calls the engine already tracks are left alone.

        Returns:
            Number of calls newly tracked.
        """
        adopted = 0
        for call in calls:
            if call.id in self._calls:
                continue
            self._calls[call.id] = call.model_copy()
            self._generations[call.id] = 0
            adopted += 1
        if adopted:
            logger.debug("tool_calls_adopted", count=adopted)
        return adopted

    def forget(self, execution_id: str) -> int:
        """Drop every call belonging to an execution. Returns the count."""
        doomed = [cid for cid, call in self._calls.items() if call.execution_id == execution_id]
        for call_id in doomed:
            self._calls.pop(call_id, None)
            self._threads.pop(call_id, None)
            self._generations.pop(call_id, None)
            self._auto_approved.discard(call_id)
        return len(doomed)

    # -----------------------------------------------------------------
    # User actions
    # -----------------------------------------------------------------

    async def approve(self, call_id: str) -> ActionResult:
        """Approve a pending call and carry it through execution."""
        try:
            call = self._require(call_id, ToolStatus.APPROVED)
        except (UnknownToolCallError, InvalidTransitionError) as e:
            return self._rejected(call_id, e)
        return await self._run_approval(call, auto=False)

    async def deny(self, call_id: str) -> ActionResult:
        """Deny a pending call and tell whoever is waiting on it."""
        try:
            call = self._require(call_id, ToolStatus.DENIED)
        except (UnknownToolCallError, InvalidTransitionError) as e:
            return self._rejected(call_id, e)

        await self._transition(
            call,
            ToolStatus.DENIED,
            f"User denied tool execution: {call.tool_name}",
            LogType.WARNING,
            human_approved=False,
        )

        thread_id = self._threads.get(call.id)
        if thread_id is not None:
            response = HumanInteractionResponse(id=call.id, approved=False)
            return await self._resume(
                call,
                thread_id,
                response,
                ActionResult(
                    success=True,
                    tool_call_id=call.id,
                    status=call.status,
                    message=f"Denied {call.tool_name}",
                ),
            )

        if call.id.startswith(self.approval_prefix) and self.commands is not None:
            try:
                sent = await self.commands.send_tool_decision(call.id, False)
            except Exception as e:
                sent = CommandResult(success=False, error=str(e))
            if not sent.success:
                error = f"Failed to send denial: {sent.error or 'unknown error'}"
                logger.error("tool_denial_send_failed", tool_call_id=call.id, error=sent.error)
                await self._log(call, error, LogType.ERROR)
                return ActionResult(
                    success=False, tool_call_id=call.id, status=call.status, error=error
                )

        return ActionResult(
            success=True,
            tool_call_id=call.id,
            status=call.status,
            message=f"Denied {call.tool_name}",
        )

    async def reset(self, call_id: str) -> ActionResult:
        """Return a settled call to ``pending`` so it can be decided again.

        Any invocation still running for the call is orphaned: its result
        will be discarded when it arrives.
        """
        call = self._calls.get(call_id)
        if call is None:
            return self._rejected(call_id, UnknownToolCallError(call_id))
        if call.status not in TERMINAL_TOOL_STATUSES:
            return self._rejected(
                call_id, InvalidTransitionError(call_id, call.status, ToolStatus.PENDING)
            )

        self._generations[call.id] = self._generations.get(call.id, 0) + 1
        self._auto_approved.discard(call.id)
        await self._transition(
            call,
            ToolStatus.PENDING,
            f"Tool call reset to pending: {call.tool_name}",
            LogType.INFO,
            result=None,
            error=None,
            execution_time_ms=None,
            human_approved=False,
            completed_at=None,
        )
        return ActionResult(
            success=True,
            tool_call_id=call.id,
            status=call.status,
            message=f"Reset {call.tool_name}",
        )

    async def maybe_auto_approve(self, call_id: str) -> ActionResult | None:
        """Approve a pending call without user input if policy allows it.

        Each call is auto-approved at most once until it is reset.

        Returns:
            The approval outcome, or None if the call was not auto-approved.
        """
        call = self._calls.get(call_id)
        if call is None or call.status != ToolStatus.PENDING:
            return None
        if not self.policy.is_auto_approved(call.mcp_server):
            return None
        if call_id in self._auto_approved:
            return None

        self._auto_approved.add(call_id)
        logger.info(
            "tool_call_auto_approved",
            tool_call_id=call_id,
            server=call.mcp_server,
        )
        return await self._run_approval(call, auto=True)

    # -----------------------------------------------------------------
    # Remote progress
    # -----------------------------------------------------------------

    async def apply_remote_update(
        self,
        call_id: str,
        status: ToolStatus | None,
        result: str | None = None,
        error: str | None = None,
        execution_time_ms: int | None = None,
    ) -> bool:
        """Mirror orchestrator-reported progress for a call it executes.

        Remote updates never move a call out of ``pending`` and never move
        one back into it. That is how progress reported for a call the user
        has since reset gets discarded.

        Returns:
            True if the update was applied.
        """
        call = self._calls.get(call_id)
        if call is None or status is None or status == call.status:
            return False
        if call.status == ToolStatus.PENDING or status == ToolStatus.PENDING:
            logger.debug(
                "remote_tool_update_ignored",
                tool_call_id=call_id,
                current=call.status.value,
                reported=status.value,
            )
            return False
        if not can_transition(call.status, status):
            logger.debug(
                "remote_tool_update_invalid",
                tool_call_id=call_id,
                current=call.status.value,
                reported=status.value,
            )
            return False

        updates: dict[str, Any] = {}
        if result is not None:
            updates["result"] = result
        if error is not None:
            updates["error"] = error
        if execution_time_ms is not None:
            updates["execution_time_ms"] = execution_time_ms

        if status == ToolStatus.EXECUTING:
            message, log_type = f"Executing tool: {call.tool_name}", LogType.TOOL_REQUEST
        elif status == ToolStatus.ERROR:
            message, log_type = f"Tool execution failed: {error or 'unknown error'}", LogType.ERROR
        else:
            message, log_type = f"Tool {call.tool_name} finished", LogType.TOOL_RESULT
        await self._transition(call, status, message, log_type, **updates)
        return True

    # -----------------------------------------------------------------
    # Approval paths
    # -----------------------------------------------------------------

    async def _run_approval(self, call: ToolExecution, *, auto: bool) -> ActionResult:
        thread_id = self._threads.get(call.id)
        if thread_id is not None:
            return await self._approve_paused(call, thread_id, auto=auto)
        return await self._approve_direct(call, auto=auto)

    async def _approve_direct(self, call: ToolExecution, *, auto: bool) -> ActionResult:
        who = "Auto-approved" if auto else "User approved"
        await self._transition(
            call,
            ToolStatus.APPROVED,
            f"{who} tool execution: {call.tool_name}",
            LogType.INFO,
            human_approved=not auto,
        )

        config_error = self._configuration_error(call)
        if config_error is not None:
            return await self._fail(call, config_error)

        await self._transition(
            call,
            ToolStatus.EXECUTING,
            f"Starting execution of {call.tool_name} on {call.mcp_server}",
            LogType.TOOL_REQUEST,
        )
        outcome = await self._invoke(call)
        if outcome is None:
            return self._stale(call)
        return await self._record_outcome(call, *outcome)

    async def _approve_paused(
        self, call: ToolExecution, thread_id: str, *, auto: bool
    ) -> ActionResult:
        who = "Auto-approved" if auto else "User approved"
        await self._transition(
            call,
            ToolStatus.EXECUTING,
            f"{who} tool execution: {call.tool_name}. Starting execution...",
            LogType.INFO,
            human_approved=not auto,
        )

        report: ToolExecutionReport | None = None
        if self.policy.requires_invocation(call.mcp_server):
            config_error = self._configuration_error(call)
            if config_error is not None:
                local = await self._fail(call, config_error)
                report = ToolExecutionReport(
                    success=False,
                    error=config_error,
                    tool_name=call.tool_name,
                    server=call.mcp_server,
                )
            else:
                outcome = await self._invoke(call)
                if outcome is None:
                    return self._stale(call)
                invocation, elapsed_ms = outcome
                local = await self._record_outcome(call, invocation, elapsed_ms)
                report = ToolExecutionReport(
                    success=invocation.success,
                    result=invocation.data if invocation.success else None,
                    error=None if invocation.success else invocation.error,
                    tool_name=call.tool_name,
                    server=call.mcp_server,
                )
        else:
            await self._transition(
                call,
                ToolStatus.EXECUTED,
                f"Approval of {call.tool_name} handed to the workflow",
                LogType.TOOL_RESULT,
            )
            local = ActionResult(
                success=True,
                tool_call_id=call.id,
                status=call.status,
                message=f"Approved {call.tool_name}",
            )

        response = HumanInteractionResponse(
            id=call.id, approved=True, tool_execution_result=report
        )
        return await self._resume(call, thread_id, response, local)

    async def _resume(
        self,
        call: ToolExecution,
        thread_id: str,
        response: HumanInteractionResponse,
        local: ActionResult,
    ) -> ActionResult:
        """Resume the paused workflow; failures leave the call status as is."""
        try:
            resumed = await self.workflow.resume(thread_id, response)
        except Exception as e:
            resumed = ResumeResult(success=False, error=str(e))

        if not resumed.success:
            error = f"Failed to resume workflow: {resumed.error or 'unknown error'}"
            logger.error(
                "workflow_resume_failed",
                tool_call_id=call.id,
                thread_id=thread_id,
                error=resumed.error,
            )
            await self._log(call, error, LogType.ERROR)
            return ActionResult(
                success=False, tool_call_id=call.id, status=call.status, error=error
            )

        self._threads.pop(call.id, None)
        logger.info(
            "workflow_resumed",
            tool_call_id=call.id,
            thread_id=thread_id,
            approved=response.approved,
            completed=resumed.completed,
        )
        await self._log(call, "Workflow resumed successfully", LogType.INFO)

        if resumed.completed and resumed.result is not None:
            await self._log(call, "Workflow completed", LogType.SYNTHESIS)
            return ActionResult(
                success=local.success,
                tool_call_id=call.id,
                status=call.status,
                message="Workflow completed",
                error=local.error,
                workflow_completed=True,
                workflow_result=resumed.result,
            )
        return local

    # -----------------------------------------------------------------
    # Invocation
    # -----------------------------------------------------------------

    def _configuration_error(self, call: ToolExecution) -> str | None:
        if not call.mcp_server:
            return f"No tool server specified for {call.tool_name}"
        if not self.policy.is_configured(call.mcp_server):
            return f"Tool server {call.mcp_server} is not configured"
        return None

    async def _invoke(self, call: ToolExecution) -> tuple[ToolInvocationResult, int] | None:
        """Invoke the tool with a bounded wait.

        The invocation is not cancelled on timeout; whatever it returns later
        is logged and dropped.

        Returns:
            (result, elapsed milliseconds), or None if the call was reset or
            settled elsewhere while the invocation was running.
        """
        config_error = self._configuration_error(call)
        if config_error is not None or call.mcp_server is None:
            return ToolInvocationResult(success=False, error=config_error), 0
        generation = self._generations.get(call.id, 0)
        started = time.monotonic()
        task: asyncio.Task[ToolInvocationResult] = asyncio.create_task(
            self.invoker.invoke_tool(call.mcp_server, call.tool_name, dict(call.arguments)),
            name=f"tool_{call.id}",
        )
        self._inflight.add(task)
        task.add_done_callback(
            lambda t, cid=call.id: self._on_invocation_done(t, cid)
        )

        done, _ = await asyncio.wait({task}, timeout=self.tool_timeout_seconds)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if task not in done:
            self._timed_out.add(task)
            logger.warning(
                "tool_invocation_timeout",
                tool_call_id=call.id,
                timeout_seconds=self.tool_timeout_seconds,
            )
            result = ToolInvocationResult(
                success=False,
                error=f"Tool execution timed out after {self.tool_timeout_seconds:g}s",
            )
        else:
            try:
                result = task.result()
            except Exception as e:
                result = ToolInvocationResult(success=False, error=str(e))

        if self._generations.get(call.id, 0) != generation:
            logger.info("tool_invocation_result_discarded", tool_call_id=call.id)
            return None
        if call.status != ToolStatus.EXECUTING:
            # Settled by the orchestrator while we were waiting.
            logger.info(
                "tool_invocation_result_superseded",
                tool_call_id=call.id,
                status=call.status.value,
            )
            return None
        return result, elapsed_ms

    def _on_invocation_done(self, task: asyncio.Task[ToolInvocationResult], call_id: str) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            self._timed_out.discard(task)
            return
        # Retrieve the exception so asyncio does not report it as unhandled.
        error = task.exception()
        if task in self._timed_out:
            self._timed_out.discard(task)
            logger.info(
                "tool_invocation_late_result_discarded",
                tool_call_id=call_id,
                failed=error is not None,
            )

    async def _record_outcome(
        self, call: ToolExecution, result: ToolInvocationResult, elapsed_ms: int
    ) -> ActionResult:
        if result.success:
            await self._transition(
                call,
                ToolStatus.EXECUTED,
                f"Tool executed successfully in {elapsed_ms / 1000:.1f}s",
                LogType.TOOL_RESULT,
                result=_as_text(result.data),
                execution_time_ms=elapsed_ms,
            )
            return ActionResult(
                success=True,
                tool_call_id=call.id,
                status=call.status,
                message=f"Executed {call.tool_name}",
            )
        return await self._fail(call, result.error or "Tool execution failed", elapsed_ms)

    async def _fail(
        self, call: ToolExecution, error: str, elapsed_ms: int | None = None
    ) -> ActionResult:
        await self._transition(
            call,
            ToolStatus.ERROR,
            f"Tool execution failed: {error}",
            LogType.ERROR,
            error=error,
            execution_time_ms=elapsed_ms,
        )
        return ActionResult(success=False, tool_call_id=call.id, status=call.status, error=error)

    # -----------------------------------------------------------------
    # Transitions and side effects
    # -----------------------------------------------------------------

    def _require(self, call_id: str, target: ToolStatus) -> ToolExecution:
        call = self._calls.get(call_id)
        if call is None:
            raise UnknownToolCallError(call_id)
        if call.status != ToolStatus.PENDING or not can_transition(call.status, target):
            raise InvalidTransitionError(call_id, call.status, target)
        return call

    def _rejected(self, call_id: str, error: Exception) -> ActionResult:
        call = self._calls.get(call_id)
        message = (
            f"Unknown tool call {call_id}"
            if isinstance(error, UnknownToolCallError)
            else str(error)
        )
        logger.warning("tool_action_rejected", tool_call_id=call_id, error=message)
        return ActionResult(
            success=False,
            tool_call_id=call_id,
            status=call.status if call is not None else None,
            error=message,
        )

    def _stale(self, call: ToolExecution) -> ActionResult:
        return ActionResult(
            success=False,
            tool_call_id=call.id,
            status=call.status,
            error=f"Tool call {call.tool_name} changed while it was executing",
        )

    async def _transition(
        self,
        call: ToolExecution,
        target: ToolStatus,
        message: str,
        log_type: LogType,
        **updates: Any,
    ) -> None:
        if not can_transition(call.status, target):
            raise InvalidTransitionError(call.id, call.status, target)

        previous = call.status
        call.status = target
        for name, value in updates.items():
            setattr(call, name, value)
        now = time.time()
        call.last_updated = now
        if target in (ToolStatus.EXECUTED, ToolStatus.ERROR, ToolStatus.DENIED):
            call.completed_at = now

        logger.info(
            "tool_call_transition",
            tool_call_id=call.id,
            from_status=previous.value,
            to_status=target.value,
        )
        await self._emit(call, message, log_type)

    async def _emit(self, call: ToolExecution, message: str, log_type: LogType) -> None:
        """Mirror, persist, and announce the current state of ``call``."""
        if self.reconciler is not None and call.execution_id:
            self.reconciler.apply_delta(
                ToolDelta(
                    execution_id=call.execution_id,
                    tool_execution_id=call.id,
                    status=call.status,
                    result=call.result,
                    error=call.error,
                    execution_time_ms=call.execution_time_ms,
                    human_approved=call.human_approved,
                )
            )

        if self.persistence is not None:
            try:
                await self.persistence.upsert_tool_execution(call.model_copy())
            except Exception as e:
                logger.error("tool_call_persist_failed", tool_call_id=call.id, error=str(e))

        if self.on_tool_call is not None:
            try:
                await self.on_tool_call(call.model_copy())
            except Exception as e:
                logger.error("tool_call_listener_failed", tool_call_id=call.id, error=str(e))

        await self._log(call, message, log_type)

    async def _log(self, call: ToolExecution, message: str, log_type: LogType) -> None:
        if self.on_log is None:
            return
        entry = new_local_entry(
            call.execution_id or "",
            message,
            log_type,
            tool_name=call.tool_name,
            tool_execution_id=call.id,
            agent_id=call.agent_id,
            task_id=call.task_id,
        )
        try:
            await self.on_log(entry)
        except Exception as e:
            logger.error("tool_call_log_failed", tool_call_id=call.id, error=str(e))

    async def aclose(self) -> None:
        """Cancel invocations that are still running."""
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        self._inflight.clear()
        self._timed_out.clear()
