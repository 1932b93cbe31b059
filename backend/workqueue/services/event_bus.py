"""In-process publish/subscribe sink for task lifecycle events.

Emission never blocks and never raises: synchronous subscribers run inline,
coroutine subscribers are scheduled on the running loop and tracked so that
``drain()`` can wait for them during shutdown and in tests.

    bus = EventBus()
    bus.subscribe(TASK_COMPLETED, on_completed)
    bus.subscribe("task:*", on_any_task_event)
    bus.emit(TASK_COMPLETED, {"task": task, "result": {...}, "duration": 12})
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from workqueue.core.logging import get_logger
from workqueue.models.task import utcnow

logger = get_logger("services.event_bus")

TASK_CREATED = "task:created"
TASK_STARTED = "task:started"
TASK_COMPLETED = "task:completed"
TASK_FAILED = "task:failed"
TASK_RETRYING = "task:retrying"
TASK_STALE_RESET = "task:stale_reset"

TASK_EVENTS = (
    TASK_CREATED,
    TASK_STARTED,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_RETRYING,
    TASK_STALE_RESET,
)


@dataclass(slots=True)
class DomainEvent:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


Subscriber = Callable[[DomainEvent], Awaitable[None] | None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscriber]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, name: str, callback: Subscriber) -> None:
        """Register ``callback`` for ``name``; ``task:*`` and ``*`` act as wildcards."""
        if callback not in self._subscribers[name]:
            self._subscribers[name].append(callback)

    def unsubscribe(self, name: str, callback: Subscriber) -> bool:
        callbacks = self._subscribers.get(name)
        if callbacks and callback in callbacks:
            callbacks.remove(callback)
            return True
        return False

    def subscriber_count(self, name: str | None = None) -> int:
        if name is None:
            return sum(len(items) for items in self._subscribers.values())
        return len(self._matching(name))

    def _matching(self, name: str) -> list[Subscriber]:
        callbacks = list(self._subscribers.get(name, ()))
        if ":" in name:
            callbacks.extend(self._subscribers.get(f"{name.split(':', 1)[0]}:*", ()))
        callbacks.extend(self._subscribers.get("*", ()))
        return callbacks

    def emit(self, name: str, payload: dict[str, Any] | None = None) -> DomainEvent:
        event = DomainEvent(name=name, payload=dict(payload or {}))
        for callback in self._matching(name):
            try:
                outcome = callback(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning("event_subscriber_failed", event_name=name, error=str(exc), exc_info=True)
                continue
            if inspect.isawaitable(outcome):
                self._track(name, outcome)
        return event

    def _track(self, name: str, awaitable: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
            task = asyncio.ensure_future(awaitable, loop=loop)
        except RuntimeError as exc:
            logger.warning("event_subscriber_not_scheduled", event_name=name, error=str(exc))
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._pending.add(task)
        task.add_done_callback(lambda done: self._finish(name, done))

    def _finish(self, name: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("event_subscriber_failed", event_name=name, error=str(exc))

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait until every scheduled async delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
