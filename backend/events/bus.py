"""Async event bus for task progress pub/sub.

Producers (orchestrator, parallel manager, merger) publish TaskEvents keyed
by task id; consumers such as a CLI progress view subscribe per task and
read events from an asyncio.Queue.

Events published before anyone subscribes are buffered and handed to the
first subscriber, so a consumer attaching late still sees the task start.
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import EventType, TaskEvent

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub bus for task events.

    Subscriptions are tracked per task id. The registry is guarded by a
    threading.Lock because blocking work (Docker, filesystem) runs in
    executor threads that may publish through the same bus instance.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("task_123")
        >>> await bus.publish(TaskEvent(type=EventType.TASK_STARTED, task_id="task_123"))
        >>> event = await queue.get()
        >>> await bus.close_task("task_123")

    Attributes:
        _subscribers: Dict mapping task_id to subscriber queues
        _buffer: Events published while a task had no subscribers
        _history: Bounded per-task event history
    """

    MAX_HISTORY_PER_TASK = 2000

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[TaskEvent]]] = defaultdict(list)
        self._buffer: dict[str, list[TaskEvent]] = defaultdict(list)
        self._history: dict[str, list[TaskEvent]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, task_id: str) -> asyncio.Queue[TaskEvent]:
        """Subscribe to events for a task.

        Any buffered events for the task are delivered to the new queue
        immediately.

        Args:
            task_id: The task to subscribe to

        Returns:
            A queue receiving TaskEvent objects for the task
        """
        queue: asyncio.Queue[TaskEvent] = asyncio.Queue()

        with self._lock:
            self._subscribers[task_id].append(queue)
            buffered = self._buffer.pop(task_id, [])
            subscriber_count = len(self._subscribers[task_id])

        for event in buffered:
            queue.put_nowait(event)

        logger.debug(
            "subscriber_added",
            task_id=task_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered),
        )
        return queue

    def unsubscribe(self, task_id: str, queue: asyncio.Queue[TaskEvent]) -> None:
        """Remove a subscriber queue; unknown queues are ignored."""
        with self._lock:
            queues = self._subscribers.get(task_id)
            if not queues or queue not in queues:
                logger.warning("unsubscribe_queue_not_found", task_id=task_id)
                return
            queues.remove(queue)
            if not queues:
                del self._subscribers[task_id]

    async def publish(self, event: TaskEvent) -> None:
        """Publish an event to every subscriber of its task.

        The event is recorded in the task history. With no subscribers it is
        buffered for the first one to arrive.

        Args:
            event: The TaskEvent to publish
        """
        with self._lock:
            if event.type != EventType.TASK_CLOSED:
                history = self._history[event.task_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_TASK:
                    del history[: len(history) - self.MAX_HISTORY_PER_TASK]

            subscribers = list(self._subscribers.get(event.task_id, []))
            if not subscribers:
                self._buffer[event.task_id].append(event)
                return

        for queue in subscribers:
            # A stalled consumer must not block the producer
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    task_id=event.task_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            task_id=event.task_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, task_id: str) -> list[TaskEvent]:
        """Return the recorded events of a task in publication order."""
        with self._lock:
            return list(self._history.get(task_id, []))

    async def close_task(self, task_id: str) -> None:
        """Signal subscribers that a task has ended and drop its subscriptions.

        Each subscriber receives a TASK_CLOSED sentinel. History is kept.

        Args:
            task_id: The task to close
        """
        with self._lock:
            queues = self._subscribers.pop(task_id, [])
            self._buffer.pop(task_id, None)

        for queue in queues:
            await queue.put(
                TaskEvent(
                    type=EventType.TASK_CLOSED, task_id=task_id, data={"reason": "task_closed"}
                )
            )

        if queues:
            logger.info("task_events_closed", task_id=task_id, subscribers_removed=len(queues))

    def get_subscriber_count(self, task_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(task_id, []))


# Global event bus instance
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
