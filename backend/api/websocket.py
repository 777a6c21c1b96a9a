"""WebSocket handler for real-time state streaming.

This module streams StateBus events for one channel (an execution id, or
``global`` for notices and history changes) to the frontend and receives
commands (approve, deny, reset, abort) from clients.
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from events import GLOBAL_CHANNEL, NoticeLevel, StateEvent, StateEventType, get_state_bus

if TYPE_CHECKING:
    from tracker import ExecutionTracker

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_tracker: "ExecutionTracker | None" = None


def set_tracker(tracker: "ExecutionTracker") -> None:
    """Set the tracker used by WebSocket command handlers."""
    global _tracker
    _tracker = tracker
    logger.info("websocket_tracker_configured")


def get_tracker() -> "ExecutionTracker":
    """Return configured tracker for WebSocket command handlers."""
    if _tracker is None:
        raise RuntimeError(
            "ExecutionTracker not configured for WebSocket handlers. "
            "Call set_tracker() during startup."
        )
    return _tracker


@websocket_router.websocket("/ws/{channel}")
async def websocket_endpoint(websocket: WebSocket, channel: str) -> None:
    """WebSocket endpoint for real-time state streaming.

    This endpoint handles bidirectional communication:
    - Server -> Client: StateEvents (graph changes, tool calls, logs, notices)
    - Client -> Server: Commands (approve, deny, reset, abort, ping)

    Args:
        websocket: The WebSocket connection.
        channel: Execution id to stream, or ``global``.
    """
    await websocket.accept()

    logger.info("websocket_connected", channel=channel)

    state_bus = get_state_bus()

    # Subscribe FIRST, then replay history; replayed events are skipped below
    # when they also arrive through the subscription buffer.
    queue = state_bus.subscribe(channel)

    try:
        last_replay_timestamp: float = 0.0
        history = state_bus.get_event_history(channel)
        if history:
            logger.info(
                "replaying_event_history",
                channel=channel,
                event_count=len(history),
            )
            for event in history:
                try:
                    await websocket.send_json(event.model_dump(mode="json"))
                    last_replay_timestamp = event.timestamp
                except WebSocketDisconnect:
                    logger.info("websocket_disconnect_during_replay", channel=channel)
                    return
                except Exception as e:
                    logger.error("websocket_replay_error", channel=channel, error=str(e))
                    return

        async def send_events() -> None:
            """Forward events from the state bus to the WebSocket client."""
            try:
                while True:
                    event = await queue.get()
                    if event.type == StateEventType.CHANNEL_CLOSED:
                        logger.info("channel_closed_sentinel", channel=channel)
                        break

                    if event.timestamp <= last_replay_timestamp:
                        logger.debug(
                            "event_skipped_duplicate",
                            channel=channel,
                            event_type=event.type.value,
                        )
                        continue

                    await websocket.send_json(event.model_dump(mode="json"))
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_send", channel=channel)
            except Exception as e:
                logger.error("websocket_send_error", channel=channel, error=str(e))

        async def receive_commands() -> None:
            """Receive and process commands from the WebSocket client."""
            try:
                while True:
                    data = await websocket.receive_json()
                    if not isinstance(data, dict):
                        logger.warning("invalid_ws_message", channel=channel)
                        continue
                    command_type = data.get("type")

                    logger.info(
                        "command_received",
                        channel=channel,
                        command_type=command_type,
                    )

                    if command_type == "ping":
                        await websocket.send_json(
                            {"type": "pong", "timestamp": data.get("timestamp")}
                        )
                    elif command_type in _COMMANDS:
                        reply = await handle_command(command_type, data)
                        await websocket.send_json(reply)
                    else:
                        logger.warning(
                            "unknown_command",
                            channel=channel,
                            command_type=command_type,
                        )
            except WebSocketDisconnect:
                logger.info("websocket_disconnect_during_receive", channel=channel)
            except Exception as e:
                logger.error("websocket_receive_error", channel=channel, error=str(e))

        send_task = asyncio.create_task(send_events())
        receive_task = asyncio.create_task(receive_commands())

        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    except WebSocketDisconnect:
        logger.info("websocket_disconnected", channel=channel)
    except Exception as e:
        logger.error("websocket_error", channel=channel, error=str(e))
    finally:
        state_bus.unsubscribe(channel, queue)
        logger.info("websocket_cleanup_complete", channel=channel)


_COMMANDS = frozenset({"approve", "deny", "reset", "abort"})


async def handle_command(command_type: str, data: dict[str, Any]) -> dict[str, Any]:
    """Run one client command against the tracker.

    Tool commands take ``toolCallId``; ``abort`` takes ``executionId``.

    Returns:
        A ``command_result`` reply for the client.
    """
    tracker = get_tracker()
    reply: dict[str, Any] = {"type": "command_result", "command": command_type}

    if command_type == "abort":
        execution_id = data.get("executionId") or data.get("execution_id")
        if not isinstance(execution_id, str):
            return {**reply, "success": False, "error": "executionId is required"}
        return {**reply, "success": await tracker.abort_execution(execution_id)}

    call_id = data.get("toolCallId") or data.get("tool_call_id")
    if not isinstance(call_id, str):
        await get_state_bus().publish(
            StateEvent(
                type=StateEventType.NOTICE,
                channel=GLOBAL_CHANNEL,
                data={"level": NoticeLevel.ERROR.value, "message": "toolCallId is required"},
            )
        )
        return {**reply, "success": False, "error": "toolCallId is required"}

    actions = {
        "approve": tracker.approve_tool_call,
        "deny": tracker.deny_tool_call,
        "reset": tracker.reset_tool_call,
    }
    try:
        result = await actions[command_type](call_id)
    except Exception as e:
        logger.error("command_failed", command_type=command_type, tool_call_id=call_id, error=str(e))
        return {**reply, "success": False, "tool_call_id": call_id, "error": str(e)}

    return {
        **reply,
        "success": result.success,
        "tool_call_id": call_id,
        "status": result.status.value if result.status else None,
        "error": result.error,
    }
