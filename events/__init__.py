"""Event system for streaming run progress.

Key Components:
    - EventType: Enum of all event types in the system
    - AgentEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation keyed by run id
    - LLMMetrics: Token and latency metrics for individual LLM calls

Usage:
    >>> from events import AgentEvent, EventType, get_event_bus
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("run_123")
    >>> await bus.publish(AgentEvent(type=EventType.RUN_STARTED, run_id="run_123"))
    >>> event = await queue.get()
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    AgentEvent,
    EventType,
    LLMMetrics,
)

__all__ = [
    "EventType",
    "AgentEvent",
    "LLMMetrics",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
