"""Event system for the execution tracker.

This package covers both directions of event flow: raw messages arriving on
the orchestrator's push channel, and state-change notifications going out to
UI subscribers.

Key Components:
    - ChannelTopic / ChannelMessage: Inbound push-channel messages
    - EventNormalizer: Turns channel messages into graph deltas and live logs
    - StateEventType / StateEvent: Outbound change notifications
    - StateBus: Async pub/sub for StateEvents, keyed by execution id

Usage:
    >>> from events import StateBus, StateEvent, StateEventType, get_state_bus
    >>>
    >>> bus = get_state_bus()
    >>> queue = bus.subscribe("exec_123")
    >>>
    >>> await bus.publish(StateEvent(
    ...     type=StateEventType.NOTICE,
    ...     channel="exec_123",
    ...     data={"level": "info", "message": "Execution loaded"},
    ... ))
    >>> event = await queue.get()

Event Flow:
    1. The orchestrator pushes ChannelMessages over its event stream
    2. EventNormalizer reduces each one to a Delta (or a live log line)
    3. The Reconciler applies the Delta to the GraphStore
    4. The tracker publishes a StateEvent; WebSocket handlers forward it
"""

from events.bus import (
    StateBus,
    get_state_bus,
    reset_state_bus,
)
from events.normalizer import EventNormalizer
from events.types import (
    GLOBAL_CHANNEL,
    ChannelMessage,
    ChannelTopic,
    NoticeLevel,
    StateEvent,
    StateEventType,
)

__all__ = [
    # Inbound
    "ChannelTopic",
    "ChannelMessage",
    "EventNormalizer",
    # Outbound
    "GLOBAL_CHANNEL",
    "NoticeLevel",
    "StateEventType",
    "StateEvent",
    # State bus
    "StateBus",
    "get_state_bus",
    "reset_state_bus",
]
