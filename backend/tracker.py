"""Execution tracker: the coordinator behind the API.

This module provides the ExecutionTracker class, which owns the live view of
one execution and wires the pieces that keep it consistent:

- EventNormalizer: Turns push-channel messages into deltas and live log lines
- Reconciler / GraphStore: Holds the single live execution subtree
- ToolApprovalEngine: Runs the approval state machine for tool calls
- SnapshotLoader / ExecutionStore: Durable history
- StateBus: Publishes every change to UI subscribers

Usage:
    >>> from events import get_state_bus
    >>> from models.database import ExecutionStore
    >>> from orchestrator_client import OrchestratorClient
    >>> from tracker import ExecutionTracker
    >>>
    >>> store = ExecutionStore("./data/executions.db")
    >>> await store.init()
    >>> client = OrchestratorClient("http://localhost:8000")
    >>> tracker = ExecutionTracker(
    ...     store, get_state_bus(), invoker=client, workflow=client, commands=client
    ... )
    >>> await tracker.start_channel_listener(client.stream_events)
    >>>
    >>> await tracker.view_execution("exec_abc123")
    >>> await tracker.approve_tool_call("approval-42")
    >>>
    >>> await tracker.cleanup_all()
"""

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable, Coroutine
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from approvals import ActionResult, ToolApprovalEngine, ToolServerPolicy
from approvals.types import CommandChannel, ToolInvoker, WorkflowResumer
from events.bus import StateBus
from events.normalizer import EventNormalizer
from events.types import (
    GLOBAL_CHANNEL,
    ChannelMessage,
    NoticeLevel,
    StateEvent,
    StateEventType,
)
from graph.deltas import (
    AgentAdded,
    AgentDelta,
    Delta,
    ExecutionCreated,
    ExecutionDelta,
    TaskAdded,
    TaskDelta,
    ToolDelta,
    ToolExecutionAdded,
)
from graph.loader import SnapshotLoader
from graph.models import (
    AFTER_ABORT_STATUSES,
    Agent,
    Execution,
    ExecutionGraph,
    ExecutionStatus,
    LogEntry,
    LogType,
    Task,
    ToolExecution,
    ToolStatus,
)
from graph.reconciler import Reconciler, ReconcileOutcome
from graph.store import GraphStore
from logs.aggregator import LiveLogBuffer, filter_logs, merge, synthesize_historical
from models.database import ExecutionStore

if TYPE_CHECKING:
    from config import Settings
    from orchestrator_client import OrchestratorClient

logger = structlog.get_logger()

ChannelSource = Callable[[], AsyncIterator[ChannelMessage]]


@dataclass
class ViewResult:
    """Outcome of opening or refreshing an execution.

    Attributes:
        execution_id: The execution that was requested.
        outcome: What the Reconciler did with the snapshot (None on failure).
        graph: The graph store contents after the call.
        error: User-visible error, if the snapshot could not be loaded.
        not_found: True if durable storage has no such execution.
    """

    execution_id: str
    outcome: ReconcileOutcome | None = None
    graph: ExecutionGraph | None = None
    error: str | None = None
    not_found: bool = False


class ExecutionTracker:
    """Coordinates live state, durable history, and tool approvals.

    All mutations happen on the event loop; the only concurrent work is the
    channel listener, auto-approval tasks, and API request handlers, which
    interleave at await points only.

    Attributes:
        execution_store: Durable storage for executions
        state_bus: Bus for publishing changes to UI subscribers
        store: The in-memory graph store
        reconciler: Sole mutator of ``store``
        engine: Tool approval state machine
    """

    def __init__(
        self,
        execution_store: ExecutionStore,
        state_bus: StateBus,
        invoker: ToolInvoker,
        workflow: WorkflowResumer,
        commands: CommandChannel | None = None,
        policy: ToolServerPolicy | None = None,
        tool_timeout_seconds: float = 30.0,
        approval_prefix: str = "approval-",
        history_limit: int = 50,
        reconnect_seconds: float = 2.0,
    ) -> None:
        self.execution_store = execution_store
        self.state_bus = state_bus
        self.history_limit = history_limit
        self.reconnect_seconds = reconnect_seconds

        self.store = GraphStore()
        self.reconciler = Reconciler(self.store)
        self.reconciler.add_listener(self._on_graph_change)
        self.normalizer = EventNormalizer()
        self.loader = SnapshotLoader(execution_store)
        self.log_buffer = LiveLogBuffer()
        self.engine = ToolApprovalEngine(
            invoker=invoker,
            workflow=workflow,
            policy=policy or ToolServerPolicy(),
            commands=commands,
            reconciler=self.reconciler,
            persistence=execution_store,
            on_tool_call=self._on_tool_call_changed,
            on_log=self._on_local_log,
            tool_timeout_seconds=tool_timeout_seconds,
            approval_prefix=approval_prefix,
        )

        self._history: list[Execution] = []
        self._background: set[asyncio.Task[Any]] = set()
        self._listener_task: asyncio.Task[None] | None = None
        logger.info("execution_tracker_initialized")

    # -----------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------

    def current_graph(self) -> ExecutionGraph | None:
        return self.store.snapshot()

    def current_execution_id(self) -> str | None:
        return self.store.current_execution_id()

    def is_active(self) -> bool:
        return self.store.is_active()

    def get_history(self) -> list[Execution]:
        return list(self._history)

    def is_listening(self) -> bool:
        return self._listener_task is not None and not self._listener_task.done()

    def list_tool_calls(self, execution_id: str | None = None) -> list[ToolExecution]:
        return self.engine.list_calls(execution_id)

    # -----------------------------------------------------------------
    # Push channel
    # -----------------------------------------------------------------

    async def handle_message(
        self, raw: ChannelMessage | dict[str, Any]
    ) -> ReconcileOutcome | None:
        """Process one push-channel message.

        Returns:
            What the Reconciler did with the resulting delta, or None when the
            message carried no delta.
        """
        message = self.normalizer.coerce_message(raw)
        if message is None:
            return None

        fragment = self.normalizer.live_fragment(
            message, fallback_execution_id=self.store.current_execution_id()
        )
        if fragment is not None:
            await self._record_fragment(fragment)

        delta = self.normalizer.normalize(message)
        if delta is None:
            return None

        if isinstance(delta, ToolExecutionAdded):
            return await self._handle_tool_request(delta)

        if isinstance(delta, ToolDelta) and self.engine.get(delta.tool_execution_id) is not None:
            return await self._handle_tool_progress(delta)

        await self._persist_delta(delta)
        outcome = self.reconciler.apply_delta(delta)
        if isinstance(delta, ExecutionCreated) and outcome.replaced_graph:
            self.log_buffer.keep_only(delta.execution_id)
            await self.load_history()
        return outcome

    async def _handle_tool_request(self, delta: ToolExecutionAdded) -> ReconcileOutcome:
        outcome = self.reconciler.apply_delta(delta)
        if outcome == ReconcileOutcome.DISCARDED_UNRESOLVED:
            logger.debug(
                "tool_request_orphan_dropped",
                execution_id=delta.execution_id,
                tool_call_id=delta.id,
            )
            return outcome
        await self.engine.register(
            ToolExecution(
                id=delta.id,
                execution_id=delta.execution_id,
                task_id=delta.task_id,
                agent_id=delta.agent_id,
                tool_name=delta.tool_name,
                mcp_server=delta.mcp_server,
                arguments=dict(delta.arguments),
            ),
            thread_id=delta.thread_id,
        )
        self._schedule(self._auto_approve(delta.id), name=f"auto_approve_{delta.id}")
        return outcome

    async def _handle_tool_progress(self, delta: ToolDelta) -> ReconcileOutcome:
        """Route orchestrator progress for a call the engine owns."""
        call = self.engine.get(delta.tool_execution_id)
        if (
            call is not None
            and delta.status == ToolStatus.PENDING
            and call.status == ToolStatus.PENDING
        ):
            self._schedule(
                self._auto_approve(call.id), name=f"auto_approve_{call.id}"
            )
            return ReconcileOutcome.IGNORED
        applied = await self.engine.apply_remote_update(
            delta.tool_execution_id,
            delta.status,
            result=delta.result,
            error=delta.error,
            execution_time_ms=delta.execution_time_ms,
        )
        return ReconcileOutcome.APPLIED if applied else ReconcileOutcome.IGNORED

    async def _auto_approve(self, call_id: str) -> None:
        result = await self.engine.maybe_auto_approve(call_id)
        if result is not None:
            await self._publish_action(result, auto=True)

    async def start_channel_listener(self, source: ChannelSource) -> asyncio.Task[None]:
        """Consume the push channel in a background task until cancelled.

        A dropped or failed stream is reopened after ``reconnect_seconds``.
        A message that fails to process is logged and skipped.

        Args:
            source: Zero-argument callable returning a fresh message iterator.

        Returns:
            The background asyncio.Task.
        """

        async def _loop() -> None:
            logger.info("channel_listener_started")
            while True:
                try:
                    async for message in source():
                        try:
                            await self.handle_message(message)
                        except Exception as e:
                            logger.error(
                                "channel_message_failed",
                                topic=message.topic.value,
                                error=str(e),
                            )
                    logger.warning("channel_stream_ended")
                    await asyncio.sleep(self.reconnect_seconds)
                except asyncio.CancelledError:
                    logger.info("channel_listener_stopped")
                    return
                except Exception as e:
                    logger.error("channel_stream_error", error=str(e))
                    try:
                        await asyncio.sleep(self.reconnect_seconds)
                    except asyncio.CancelledError:
                        logger.info("channel_listener_stopped")
                        return

        self._listener_task = asyncio.create_task(_loop(), name="channel_listener")
        return self._listener_task

    # -----------------------------------------------------------------
    # Snapshots and history
    # -----------------------------------------------------------------

    async def view_execution(self, execution_id: str) -> ViewResult:
        """Open an execution from durable storage.

        Opening the execution that is already live while it is still active
        keeps the live view; the stale snapshot is discarded.
        """
        snapshot = await self.loader.load_execution_graph(execution_id)
        if snapshot.graph is None:
            await self.load_history()
            await self._notice(NoticeLevel.ERROR, snapshot.error or "Failed to load execution")
            return ViewResult(
                execution_id=execution_id,
                graph=self.store.snapshot(),
                error=snapshot.error,
                not_found=snapshot.not_found,
            )

        outcome = self.reconciler.apply_snapshot(snapshot.graph)
        if outcome.replaced_graph:
            self.engine.adopt(snapshot.graph.tool_executions)
            self.log_buffer.keep_only(execution_id)
        return ViewResult(execution_id=execution_id, outcome=outcome, graph=self.store.snapshot())

    async def refresh_current(self) -> ViewResult | None:
        """Re-read the loaded execution from durable storage."""
        execution_id = self.store.current_execution_id()
        if execution_id is None:
            return None
        return await self.view_execution(execution_id)

    async def load_history(self, limit: int | None = None) -> list[Execution]:
        self._history = await self.loader.load_execution_history(limit or self.history_limit)
        await self.state_bus.publish(
            StateEvent(
                type=StateEventType.HISTORY_UPDATED,
                channel=GLOBAL_CHANNEL,
                data={"count": len(self._history)},
            )
        )
        return list(self._history)

    async def search_history(self, query: str, limit: int | None = None) -> list[Execution]:
        return await self.execution_store.search_executions(query, limit or self.history_limit)

    async def history_stats(self) -> dict[str, int]:
        return await self.execution_store.get_stats()

    def _drop_from_history(self, execution_id: str) -> None:
        before = len(self._history)
        self._history = [e for e in self._history if e.id != execution_id]
        if len(self._history) != before:
            self.state_bus.publish_nowait(
                StateEvent(
                    type=StateEventType.HISTORY_UPDATED,
                    channel=GLOBAL_CHANNEL,
                    data={"count": len(self._history), "removed": execution_id},
                )
            )

    # -----------------------------------------------------------------
    # Execution actions
    # -----------------------------------------------------------------

    async def abort_execution(self, execution_id: str) -> bool:
        """Mark the loaded execution aborted so it stops counting as active."""
        outcome = self.reconciler.abort(execution_id)
        if outcome != ReconcileOutcome.ABORTED:
            await self._notice(
                NoticeLevel.ERROR, f"Execution {execution_id} is not running here"
            )
            return False
        await self.execution_store.update_execution(
            execution_id, status=ExecutionStatus.ABORTED.value
        )
        await self._notice(NoticeLevel.INFO, f"Execution {execution_id} aborted")
        return True

    async def delete_execution(self, execution_id: str, force: bool = False) -> bool:
        """Delete an execution from durable storage.

        The live execution cannot be deleted while it is active unless
        ``force`` is set; deleting the loaded execution clears the view.
        """
        is_current = self.store.current_execution_id() == execution_id
        if is_current and self.store.is_active() and not force:
            await self._notice(
                NoticeLevel.ERROR, "Cannot delete an execution while it is running"
            )
            return False

        if force:
            deleted = await self.execution_store.force_delete_execution(execution_id)
        else:
            deleted = await self.execution_store.delete_execution(execution_id)
        if not deleted:
            await self._notice(NoticeLevel.ERROR, f"Failed to delete execution {execution_id}")
            return False

        if is_current:
            self.reconciler.clear()
        self.log_buffer.clear(execution_id)
        self.engine.forget(execution_id)
        self._drop_from_history(execution_id)
        await self.state_bus.close_channel(execution_id)
        self.state_bus.clear_event_history(execution_id)
        await self._notice(NoticeLevel.SUCCESS, f"Execution {execution_id} deleted")
        return True

    async def nuke_all_executions(self) -> int:
        """Delete every execution from durable storage and clear the view."""
        count = await self.execution_store.nuke_all_executions()
        current = self.store.current_execution_id()
        self.reconciler.clear()
        self.log_buffer.clear()
        for execution_id in {c.execution_id for c in self.engine.list_calls() if c.execution_id}:
            self.engine.forget(execution_id)
        if current is not None:
            await self.state_bus.close_channel(current)
            self.state_bus.clear_event_history(current)
        self._history = []
        await self.state_bus.publish(
            StateEvent(
                type=StateEventType.HISTORY_UPDATED,
                channel=GLOBAL_CHANNEL,
                data={"count": 0},
            )
        )
        await self._notice(NoticeLevel.SUCCESS, f"Deleted {count} executions")
        return count

    # -----------------------------------------------------------------
    # Tool approval actions
    # -----------------------------------------------------------------

    async def approve_tool_call(self, call_id: str) -> ActionResult:
        result = await self.engine.approve(call_id)
        await self._publish_action(result)
        return result

    async def deny_tool_call(self, call_id: str) -> ActionResult:
        result = await self.engine.deny(call_id)
        await self._publish_action(result)
        return result

    async def reset_tool_call(self, call_id: str) -> ActionResult:
        result = await self.engine.reset(call_id)
        await self._publish_action(result)
        return result

    async def _publish_action(self, result: ActionResult, auto: bool = False) -> None:
        """Surface the outcome of an approval action once."""
        if result.success:
            prefix = "Auto-approved: " if auto else ""
            await self._notice(NoticeLevel.SUCCESS, f"{prefix}{result.message or 'Done'}")
        else:
            await self._notice(NoticeLevel.ERROR, result.error or "Tool action failed")

        if result.workflow_completed:
            call = self.engine.get(result.tool_call_id)
            await self.state_bus.publish(
                StateEvent(
                    type=StateEventType.WORKFLOW_COMPLETED,
                    channel=(call.execution_id if call and call.execution_id else GLOBAL_CHANNEL),
                    data={
                        "tool_call_id": result.tool_call_id,
                        "result": result.workflow_result,
                    },
                )
            )

    # -----------------------------------------------------------------
    # Logs
    # -----------------------------------------------------------------

    async def get_logs(
        self,
        execution_id: str,
        log_type: LogType | None = None,
        query: str | None = None,
    ) -> list[LogEntry]:
        """Assemble the log view for an execution.

        Durable lines, lines derived from the graph, locally generated lines,
        and live stream fragments are merged; optional filters apply last.
        """
        durable = await self.execution_store.get_logs(execution_id)
        graph: ExecutionGraph | None
        if self.store.current_execution_id() == execution_id:
            graph = self.store.snapshot()
        else:
            graph = (await self.loader.load_execution_graph(execution_id)).graph
        historical = synthesize_historical(graph) if graph is not None else []
        merged = merge(
            durable,
            historical,
            self.log_buffer.local(execution_id),
            self.log_buffer.fragments(execution_id),
        )
        if log_type is None and not query:
            return merged
        return filter_logs(merged, log_type, query)

    # -----------------------------------------------------------------
    # Listeners and persistence
    # -----------------------------------------------------------------

    def _on_graph_change(
        self, outcome: ReconcileOutcome, execution_id: str, delta: Delta | None
    ) -> None:
        if outcome.replaced_graph:
            graph = self.store.snapshot()
            self.state_bus.publish_nowait(
                StateEvent(
                    type=StateEventType.GRAPH_REPLACED,
                    channel=execution_id,
                    data={
                        "outcome": outcome.value,
                        "graph": graph.model_dump(mode="json") if graph else None,
                    },
                )
            )
        elif outcome == ReconcileOutcome.ABORTED:
            self.state_bus.publish_nowait(
                StateEvent(type=StateEventType.EXECUTION_ABORTED, channel=execution_id)
            )
        elif delta is not None:
            self.state_bus.publish_nowait(
                StateEvent(
                    type=StateEventType.GRAPH_UPDATED,
                    channel=execution_id,
                    data={"delta": delta.model_dump(mode="json")},
                )
            )

    async def _on_tool_call_changed(self, call: ToolExecution) -> None:
        await self.state_bus.publish(
            StateEvent(
                type=StateEventType.TOOL_CALL_UPDATED,
                channel=call.execution_id or GLOBAL_CHANNEL,
                data={"tool_call": call.model_dump(mode="json")},
            )
        )

    async def _on_local_log(self, entry: LogEntry) -> None:
        if not entry.execution_id:
            current = self.store.current_execution_id()
            if current is None:
                return
            entry = entry.model_copy(update={"execution_id": current})
        self.log_buffer.add_local(entry)
        await self._publish_log(entry)
        await self.execution_store.append_log(entry)

    async def _record_fragment(self, entry: LogEntry) -> None:
        self.log_buffer.add_fragment(entry)
        await self._publish_log(entry)
        await self.execution_store.append_log(entry)

    async def _publish_log(self, entry: LogEntry) -> None:
        await self.state_bus.publish(
            StateEvent(
                type=StateEventType.LOG_APPENDED,
                channel=entry.execution_id,
                data={"entry": entry.model_dump(mode="json")},
            )
        )

    async def _persist_delta(self, delta: Delta) -> None:
        """Record a channel delta in durable storage.

        Fire-and-forget: storage failures are logged but never propagated.
        """
        try:
            if isinstance(delta, ExecutionCreated):
                await self.execution_store.save_execution(
                    Execution(
                        id=delta.execution_id,
                        task_description=delta.task_description,
                        status=ExecutionStatus.RUNNING,
                        created_at=delta.created_at,
                        started_at=delta.created_at,
                    )
                )
            elif isinstance(delta, AgentAdded):
                await self.execution_store.save_agent(
                    Agent(
                        id=delta.id,
                        execution_id=delta.execution_id,
                        agent_id=delta.agent_id,
                        role=delta.role,
                        expertise=list(delta.expertise),
                    )
                )
            elif isinstance(delta, TaskAdded):
                await self.execution_store.save_task(
                    Task(
                        id=delta.id,
                        execution_id=delta.execution_id,
                        agent_id=delta.agent_id,
                        task_description=delta.task_description,
                        priority=delta.priority,
                        max_iterations=delta.max_iterations,
                    )
                )
            elif isinstance(delta, ExecutionDelta):
                status = delta.status
                if (
                    self.store.is_aborted(delta.execution_id)
                    and status not in AFTER_ABORT_STATUSES
                ):
                    status = None
                await self.execution_store.update_execution(
                    delta.execution_id,
                    status=status.value if status else None,
                    result=delta.result,
                    error=delta.error,
                )
            elif isinstance(delta, AgentDelta):
                await self.execution_store.update_agent(
                    delta.execution_id,
                    delta.agent_id,
                    delta.role,
                    status=delta.status.value if delta.status else None,
                    current_task=delta.current_task,
                )
            elif isinstance(delta, TaskDelta):
                await self.execution_store.update_task(
                    delta.task_id,
                    status=delta.status.value if delta.status else None,
                    result=delta.result,
                    error=delta.error,
                )
            elif isinstance(delta, ToolDelta):
                await self.execution_store.update_tool_execution(
                    delta.tool_execution_id,
                    status=delta.status.value if delta.status else None,
                    result=delta.result,
                    error=delta.error,
                    execution_time_ms=delta.execution_time_ms,
                )
        except Exception as e:
            logger.error(
                "persist_delta_failed",
                kind=delta.kind,
                execution_id=delta.execution_id,
                error=str(e),
            )

    async def _notice(self, level: NoticeLevel, message: str) -> None:
        await self.state_bus.publish(
            StateEvent(
                type=StateEventType.NOTICE,
                channel=GLOBAL_CHANNEL,
                data={"level": level.value, "message": message},
            )
        )

    # -----------------------------------------------------------------
    # Background tasks and lifecycle
    # -----------------------------------------------------------------

    def _schedule(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for scheduled background work (auto-approvals) to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def cleanup_all(self) -> None:
        """Stop the listener, cancel background work, and close bus channels."""
        logger.info("cleanup_all_start", background_tasks=len(self._background))

        if self._listener_task is not None and not self._listener_task.done():
            self._listener_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener_task
        self._listener_task = None

        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        self._background.clear()

        await self.engine.aclose()

        for channel in self.state_bus.get_active_channels():
            await self.state_bus.close_channel(channel)

        logger.info("cleanup_all_complete")


def build_tracker(
    settings: "Settings",
    execution_store: ExecutionStore,
    orchestrator: "OrchestratorClient",
    state_bus: StateBus,
) -> ExecutionTracker:
    """Wire an ExecutionTracker from application settings."""
    return ExecutionTracker(
        execution_store,
        state_bus,
        invoker=orchestrator,
        workflow=orchestrator,
        commands=orchestrator,
        policy=ToolServerPolicy(
            configured=settings.tool_servers,
            auto_approved=settings.auto_approved_servers,
            workflow=settings.workflow_servers,
        ),
        tool_timeout_seconds=settings.tool_timeout_seconds,
        approval_prefix=settings.orchestrator_approval_prefix,
        history_limit=settings.history_limit,
        reconnect_seconds=settings.channel_reconnect_seconds,
    )
