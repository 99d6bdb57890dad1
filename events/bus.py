"""Async event bus for run events.

Runs publish events keyed by run id; HTTP/WebSocket consumers subscribe to
a run and receive its events through an asyncio.Queue.

The bus supports:
- Multiple subscribers per run
- Buffering of events published before anyone subscribes
- Per-run history for replay, dropped a while after the run closes
"""

import asyncio
import threading
import time
from collections import defaultdict

import structlog

from events.types import AgentEvent, EventType

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for run events.

    Event Buffering:
        Events published before any subscriber connects are buffered and
        delivered to the first subscriber.

    Thread Safety:
        The subscription registry is guarded by a threading.Lock.

    Attributes:
        _subscribers: Dict mapping run_id to list of subscriber queues
        _event_buffer: Dict mapping run_id to list of buffered events
        _event_history: Dict mapping run_id to every event published
        _closed_at: Dict mapping closed run_id to its monotonic close time
    """

    MAX_HISTORY_PER_RUN = 2000
    HISTORY_TTL_SECONDS = 3600.0

    def __init__(self, history_ttl_seconds: float | None = None) -> None:
        self.history_ttl_seconds = (
            history_ttl_seconds
            if history_ttl_seconds is not None
            else self.HISTORY_TTL_SECONDS
        )
        self._subscribers: dict[str, list[asyncio.Queue[AgentEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[AgentEvent]] = defaultdict(list)
        self._event_history: dict[str, list[AgentEvent]] = defaultdict(list)
        self._closed_at: dict[str, float] = {}
        self._lock = threading.Lock()

    def subscribe(self, run_id: str) -> asyncio.Queue[AgentEvent]:
        """Subscribe to events for a run.

        Buffered events for the run are delivered to the new queue immediately.

        Args:
            run_id: The run to subscribe to

        Returns:
            A queue that receives AgentEvent objects for the run
        """
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()

        with self._lock:
            self._subscribers[run_id].append(queue)
            buffered_events = self._event_buffer.pop(run_id, [])

        for event in buffered_events:
            queue.put_nowait(event)

        logger.debug(
            "subscriber_added",
            run_id=run_id,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, run_id: str, queue: asyncio.Queue[AgentEvent]) -> None:
        """Remove a subscriber queue. Unknown queues are ignored."""
        with self._lock:
            queues = self._subscribers.get(run_id)
            if not queues or queue not in queues:
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[run_id]

    async def publish(self, event: AgentEvent) -> None:
        """Publish an event to all subscribers of its run.

        Events with no subscribers are buffered. Every event except the
        closing sentinel is kept in the run history.

        Args:
            event: The AgentEvent to publish
        """
        with self._lock:
            if event.type != EventType.RUN_CLOSED:
                history = self._event_history[event.run_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_RUN:
                    del history[: len(history) - self.MAX_HISTORY_PER_RUN]

            subscribers = list(self._subscribers.get(event.run_id, []))
            if not subscribers:
                self._event_buffer[event.run_id].append(event)
                return

        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    run_id=event.run_id,
                    event_type=event.type.value,
                )

    def get_event_history(self, run_id: str) -> list[AgentEvent]:
        """Return every stored event for a run in chronological order."""
        with self._lock:
            return list(self._event_history.get(run_id, []))

    async def close_run(self, run_id: str) -> None:
        """Signal subscribers that a run has ended and drop its buffers.

        Each subscriber receives a RUN_CLOSED sentinel so that streaming
        loops can exit. History is kept for replay for
        ``history_ttl_seconds``; histories of runs closed longer ago are
        dropped here.
        """
        now = time.monotonic()
        with self._lock:
            queues = self._subscribers.pop(run_id, [])
            self._event_buffer.pop(run_id, None)
            self._closed_at[run_id] = now
            expired = [
                rid
                for rid, closed_at in self._closed_at.items()
                if now - closed_at >= self.history_ttl_seconds
            ]
            for rid in expired:
                del self._closed_at[rid]
                self._event_history.pop(rid, None)

        for queue in queues:
            await queue.put(AgentEvent(type=EventType.RUN_CLOSED, run_id=run_id))

        logger.debug(
            "run_closed",
            run_id=run_id,
            subscribers_removed=len(queues),
            expired_histories=len(expired),
        )

    def get_subscriber_count(self, run_id: str) -> int:
        """Get the number of subscribers for a run."""
        with self._lock:
            return len(self._subscribers.get(run_id, []))


_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    """Get the global EventBus instance, creating it on first use."""
    global _event_bus
    if _event_bus is None:
        with _bus_lock:
            if _event_bus is None:
                _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global EventBus instance (used by tests)."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
