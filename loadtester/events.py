"""
Lifecycle events
================

* Producers (pool, runner) call ``publish()``; it never raises.
* Consumers either register a callback with ``subscribe()`` or iterate a
  ``channel()`` from a coroutine (the control API streams these over a
  websocket).
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Mapping

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    # runner
    TEST_STARTED = "test-started"
    RAMP_UP_COMPLETED = "ramp-up-completed"
    SESSION_STARTED = "session-started"
    SESSION_COMPLETED = "session-completed"
    SESSION_FAILED = "session-failed"
    MONITORING_UPDATE = "monitoring-update"
    TEST_COMPLETED = "test-completed"
    TEST_FAILED = "test-failed"
    ERROR_LOGGED = "error-logged"

    # pool
    INSTANCE_CREATED = "instance-created"
    INSTANCE_CREATION_FAILED = "instance-creation-failed"
    INSTANCE_DESTROYED = "instance-destroyed"
    INSTANCE_DISCONNECTED = "instance-disconnected"
    INSTANCE_RETIRED = "instance-retired"
    INSTANCE_UNHEALTHY = "instance-unhealthy"
    INSTANCE_CLEANED_IDLE = "instance-cleaned-idle"
    RESOURCE_LIMIT_EXCEEDED = "resource-limit-exceeded"
    LOCAL_STORAGE_INITIALIZED = "local-storage-initialized"


@dataclass(frozen=True)
class Event:
    type: EventType
    data: Mapping[str, Any] = field(default_factory=dict)
    test_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "testId": self.test_id,
            "timestamp": self.timestamp.isoformat(),
            "data": dict(self.data),
        }


Subscriber = Callable[[Event], Any]

_CLOSED = object()


class EventBus:
    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._queues: set[asyncio.Queue] = set()
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; returns a function that unsubscribes it."""
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def publish(self, event: Event) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._reap)
            except Exception:
                logger.exception("event subscriber failed on %s", event.type.value)
        for queue in list(self._queues):
            queue.put_nowait(event)

    def emit(self, type_: EventType, test_id: str | None = None, **data: Any) -> Event:
        event = Event(type=type_, data=data, test_id=test_id)
        self.publish(event)
        return event

    async def channel(self) -> AsyncIterator[Event]:
        """Yield events published once iteration has begun, until ``close()``."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.add(queue)
        try:
            while True:
                item = await queue.get()
                if item is _CLOSED:
                    return
                yield item
        finally:
            self._queues.discard(queue)

    def close(self) -> None:
        for queue in list(self._queues):
            queue.put_nowait(_CLOSED)

    def _reap(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("async event subscriber failed", exc_info=task.exception())
