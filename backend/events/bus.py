"""Async state bus for execution-tracker subscribers.

Every change to the tracker's view (graph replaced, delta applied, tool call
transition, new log line, user-visible notice) is published here as a
StateEvent. WebSocket handlers subscribe per channel, where a channel is an
execution id or the ``global`` channel.

The bus supports:
- Multiple subscribers per channel
- Buffering of events published before the first subscriber connects
- Bounded per-channel history for replay on reconnect
- Channel close with a sentinel so consumers can exit their read loops
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import StateEvent, StateEventType

logger = structlog.get_logger()


class StateBus:
    """Pub/sub for StateEvents, keyed by channel.

    Event Buffering:
        Events published to a channel nobody listens on yet are buffered and
        handed to the first subscriber, so a UI that connects right after an
        execution starts does not miss its first events.

    Thread Safety:
        The subscriber registry is guarded by a threading.Lock. Delivery
        itself happens on the event loop via ``asyncio.Queue``.

    Attributes:
        _subscribers: Dict mapping channel to list of subscriber queues
        _event_buffer: Dict mapping channel to list of buffered events
        _event_history: Dict mapping channel to recent events for replay
    """

    MAX_HISTORY_PER_CHANNEL = 2000

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[StateEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[StateEvent]] = defaultdict(list)
        self._event_history: dict[str, list[StateEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("state_bus_initialized")

    def subscribe(self, channel: str) -> asyncio.Queue[StateEvent]:
        """Subscribe to a channel.

        Buffered events for the channel, if any, are delivered to the new
        queue immediately.

        Args:
            channel: Execution id, or ``"global"``.

        Returns:
            A queue receiving every StateEvent published to the channel.
        """
        queue: asyncio.Queue[StateEvent] = asyncio.Queue()
        buffered_events: list[StateEvent] = []

        with self._lock:
            self._subscribers[channel].append(queue)
            subscriber_count = len(self._subscribers[channel])
            if channel in self._event_buffer:
                buffered_events = self._event_buffer.pop(channel)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            channel=channel,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, channel: str, queue: asyncio.Queue[StateEvent]) -> None:
        """Remove a queue from a channel. Unknown queues are ignored."""
        with self._lock:
            queues = self._subscribers.get(channel)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", channel=channel)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[channel]
            logger.info(
                "subscriber_removed",
                channel=channel,
                subscriber_count=len(queues),
            )

    def _record(self, event: StateEvent) -> list[asyncio.Queue[StateEvent]]:
        """Store ``event`` in history and return its current subscribers.

        Buffers the event when nobody is subscribed. Must be called with the
        lock held.
        """
        if event.type != StateEventType.CHANNEL_CLOSED:
            history = self._event_history[event.channel]
            history.append(event)
            if len(history) > self.MAX_HISTORY_PER_CHANNEL:
                self._event_history[event.channel] = history[-self.MAX_HISTORY_PER_CHANNEL:]

        subscribers = list(self._subscribers.get(event.channel, []))
        if not subscribers:
            self._event_buffer[event.channel].append(event)
        return subscribers

    async def publish(self, event: StateEvent) -> None:
        """Publish an event to every subscriber of its channel.

        Each put is bounded so one stalled consumer cannot block the others.
        """
        with self._lock:
            subscribers = self._record(event)

        if not subscribers:
            logger.debug(
                "event_buffered",
                channel=event.channel,
                event_type=event.type.value,
            )
            return

        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    channel=event.channel,
                    event_type=event.type.value,
                )
            except Exception as e:
                logger.warning(
                    "event_delivery_failed",
                    channel=event.channel,
                    event_type=event.type.value,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            channel=event.channel,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def publish_nowait(self, event: StateEvent) -> None:
        """Publish from synchronous code running on the event loop.

        Used by Reconciler change listeners, which are plain callbacks.
        Subscriber queues are unbounded, so ``put_nowait`` never drops.
        """
        with self._lock:
            subscribers = self._record(event)

        for queue in subscribers:
            queue.put_nowait(event)

        logger.debug(
            "event_published_nowait",
            channel=event.channel,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, channel: str) -> list[StateEvent]:
        """Return stored events for a channel in publish order."""
        with self._lock:
            return list(self._event_history.get(channel, []))

    async def close_channel(self, channel: str) -> None:
        """Signal every subscriber of ``channel`` that no more events follow.

        Subscribers receive a CHANNEL_CLOSED sentinel and are removed. The
        buffer is dropped; history is kept for reconnects.
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(channel, [])
            buffer_count = len(self._event_buffer.pop(channel, []))

        sentinel = StateEvent(
            type=StateEventType.CHANNEL_CLOSED,
            channel=channel,
            data={"reason": "channel_closed"},
        )
        for queue in queues_to_signal:
            queue.put_nowait(sentinel)

        if queues_to_signal or buffer_count:
            logger.info(
                "channel_closed",
                channel=channel,
                subscribers_removed=len(queues_to_signal),
                buffered_events_cleared=buffer_count,
            )

    def get_subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, []))

    def get_active_channels(self) -> list[str]:
        with self._lock:
            return list(self._subscribers.keys())

    def clear_event_history(self, channel: str) -> None:
        """Forget stored history and buffered events for a channel."""
        with self._lock:
            self._event_history.pop(channel, None)
            self._event_buffer.pop(channel, None)


# Global state bus instance
_state_bus: StateBus | None = None
_bus_lock = threading.Lock()


def get_state_bus() -> StateBus:
    """Get the global StateBus instance, creating it on first call."""
    global _state_bus
    if _state_bus is None:
        with _bus_lock:
            if _state_bus is None:
                _state_bus = StateBus()
    return _state_bus


def reset_state_bus() -> None:
    """Drop the global StateBus instance (used by tests)."""
    global _state_bus
    with _bus_lock:
        _state_bus = None
    logger.info("state_bus_reset")
