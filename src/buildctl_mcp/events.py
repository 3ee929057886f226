"""Build lifecycle events and the in-process event bus.

Every orchestrated build publishes ``BuildStarted`` and then exactly one of
``BuildCompleted`` / ``BuildFailed``; tests publish ``TestsStarted`` and then
``TestsCompleted``. Both events of one invocation share a correlation id.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

from .errors import EventPublicationError

logger = logging.getLogger(__name__)

BUILD_EVENT_TYPE = "build"
DEFAULT_SOURCE = "build_manager"


class EventPriority(str, Enum):
    """Event priority levels."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    EventPriority.LOW: 0,
    EventPriority.NORMAL: 1,
    EventPriority.HIGH: 2,
    EventPriority.CRITICAL: 3,
}


@dataclass(frozen=True)
class BuildStarted:
    """A build was started."""

    kind: ClassVar[str] = "started"
    priority: ClassVar[EventPriority] = EventPriority.NORMAL

    target: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BuildCompleted:
    """A build finished successfully. ``duration`` is in seconds."""

    kind: ClassVar[str] = "completed"
    priority: ClassVar[EventPriority] = EventPriority.NORMAL

    target: str
    duration: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BuildFailed:
    """A build failed."""

    kind: ClassVar[str] = "failed"
    priority: ClassVar[EventPriority] = EventPriority.HIGH

    target: str
    error: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TestsStarted:
    """A test run was started."""

    kind: ClassVar[str] = "tests_started"
    priority: ClassVar[EventPriority] = EventPriority.NORMAL

    def to_dict(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True)
class TestsCompleted:
    """A test run finished (with either outcome)."""

    kind: ClassVar[str] = "tests_completed"
    priority: ClassVar[EventPriority] = EventPriority.NORMAL

    passed: int
    failed: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


LifecycleEvent = Union[BuildStarted, BuildCompleted, BuildFailed, TestsStarted, TestsCompleted]


def new_correlation_id() -> str:
    return uuid.uuid4().hex


@dataclass
class EventMessage:
    """Event wrapper with metadata."""

    event: LifecycleEvent
    priority: EventPriority = EventPriority.NORMAL
    source: str | None = None
    correlation_id: str | None = None
    event_type: str = BUILD_EVENT_TYPE
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_event(
        cls,
        event: LifecycleEvent,
        source: str = DEFAULT_SOURCE,
        correlation_id: str | None = None,
    ) -> EventMessage:
        """Wrap a lifecycle event using the event's own priority."""
        return cls(
            event=event,
            priority=event.priority,
            source=source,
            correlation_id=correlation_id,
        )

    @property
    def kind(self) -> str:
        return self.event.kind

    @property
    def data(self) -> dict[str, Any]:
        return self.event.to_dict()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "type": self.event_type,
            "kind": self.kind,
            "data": self.data,
            "priority": self.priority.value,
            "source": self.source,
            "correlationId": self.correlation_id,
            "timestamp": self.timestamp,
        }


@dataclass
class EventSubscription:
    """Filter deciding which events a handler or subscriber receives."""

    event_types: tuple[str, ...] = ("*",)
    kinds: tuple[str, ...] = ("*",)
    min_priority: EventPriority = EventPriority.LOW
    source_filter: str | None = None

    def matches(self, message: EventMessage) -> bool:
        if message.priority.rank < self.min_priority.rank:
            return False
        if self.source_filter is not None and message.source != self.source_filter:
            return False
        if "*" not in self.event_types and message.event_type not in self.event_types:
            return False
        if "*" not in self.kinds and message.kind not in self.kinds:
            return False
        return True


@dataclass
class EventStats:
    """Event statistics for monitoring."""

    total_events: int = 0
    events_by_kind: dict[str, int] = field(default_factory=dict)
    events_by_priority: dict[str, int] = field(default_factory=dict)
    error_count: int = 0

    def copy(self) -> EventStats:
        return EventStats(
            total_events=self.total_events,
            events_by_kind=dict(self.events_by_kind),
            events_by_priority=dict(self.events_by_priority),
            error_count=self.error_count,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalEvents": self.total_events,
            "eventsByKind": dict(self.events_by_kind),
            "eventsByPriority": dict(self.events_by_priority),
            "errorCount": self.error_count,
        }


EventHandler = Callable[[EventMessage], Union[Awaitable[None], None]]


class EventBus:
    """In-process publish/subscribe bus.

    ``publish`` returns once every matching handler has run and every matching
    subscriber queue has the message, so publish order is delivery order.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, tuple[EventHandler, EventSubscription]] = {}
        self._subscribers: list[tuple[asyncio.Queue[EventMessage], EventSubscription]] = []
        self._stats = EventStats()

    async def publish(self, message: EventMessage) -> None:
        """Deliver a message to all matching handlers and subscribers.

        A failing handler does not stop delivery to the others.

        Raises:
            EventPublicationError: If any handler or subscriber failed
        """
        logger.debug(f"Publishing event: {message.event_type}/{message.kind}")
        self._update_stats(message)

        failures: list[str] = []

        for queue, subscription in list(self._subscribers):
            if not subscription.matches(message):
                continue
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                failures.append("subscriber queue full")

        for name, (handler, subscription) in list(self._handlers.items()):
            if not subscription.matches(message):
                continue
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"Handler '{name}' failed to process event")
                failures.append(f"{name}: {e}")

        if failures:
            self._stats.error_count += len(failures)
            raise EventPublicationError(
                f"Failed to deliver {message.kind} event: {'; '.join(failures)}"
            )

    def subscribe(
        self,
        subscription: EventSubscription | None = None,
        maxsize: int = 0,
    ) -> asyncio.Queue[EventMessage]:
        """Receive matching messages on a queue."""
        queue: asyncio.Queue[EventMessage] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append((queue, subscription or EventSubscription()))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[EventMessage]) -> bool:
        """Stop delivering to a queue. Returns True if it was subscribed."""
        for i, (q, _) in enumerate(self._subscribers):
            if q is queue:
                del self._subscribers[i]
                return True
        return False

    def register_handler(
        self,
        name: str,
        handler: EventHandler,
        subscription: EventSubscription | None = None,
    ) -> None:
        """Register a (sync or async) handler under a unique name."""
        logger.debug(f"Registering event handler: {name}")
        self._handlers[name] = (handler, subscription or EventSubscription())

    def unregister_handler(self, name: str) -> bool:
        """Remove a handler. Returns True if it was registered."""
        logger.debug(f"Unregistering event handler: {name}")
        return self._handlers.pop(name, None) is not None

    def get_stats(self) -> EventStats:
        """Snapshot of event statistics."""
        return self._stats.copy()

    def _update_stats(self, message: EventMessage) -> None:
        stats = self._stats
        stats.total_events += 1
        stats.events_by_kind[message.kind] = stats.events_by_kind.get(message.kind, 0) + 1
        priority = message.priority.value
        stats.events_by_priority[priority] = stats.events_by_priority.get(priority, 0) + 1


class EventLog:
    """Bounded history of recent messages, usable as a bus handler."""

    def __init__(self, maxlen: int = 100):
        self._messages: deque[EventMessage] = deque(maxlen=maxlen)

    def __call__(self, message: EventMessage) -> None:
        self._messages.append(message)

    def __len__(self) -> int:
        return len(self._messages)

    def recent(self, limit: int | None = None) -> list[EventMessage]:
        """Most recent messages, oldest first."""
        messages = list(self._messages)
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    def clear(self) -> None:
        self._messages.clear()
