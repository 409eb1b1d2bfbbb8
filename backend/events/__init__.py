"""Event system for task progress reporting.

Key Components:
    - EventType: Enum of all event types published by the engine
    - TaskEvent: Pydantic model for events flowing through the bus
    - EventBus: Async pub/sub implementation keyed by task id

Usage:
    >>> from events import EventType, TaskEvent, get_event_bus
    >>> bus = get_event_bus()
    >>> queue = bus.subscribe("task_123")
    >>> await bus.publish(TaskEvent(type=EventType.TASK_STARTED, task_id="task_123"))
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    EventType,
    TaskEvent,
)

__all__ = [
    "EventType",
    "TaskEvent",
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
