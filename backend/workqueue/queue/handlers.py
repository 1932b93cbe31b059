"""Task handler contract and the type -> handler registry."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from workqueue.core.logging import get_logger
from workqueue.models.task import Task

logger = get_logger("queue.handlers")


@dataclass(slots=True)
class TaskHandlerContext:
    task: Task
    worker_id: str
    is_shutting_down: Callable[[], bool] = field(default=lambda: False)

    @property
    def payload(self) -> dict[str, Any]:
        return self.task.payload or {}


@dataclass(slots=True)
class TaskHandlerResult:
    success: bool
    result: dict[str, Any] | None = None
    error: BaseException | str | None = None

    @classmethod
    def ok(cls, result: dict[str, Any] | None = None) -> "TaskHandlerResult":
        return cls(success=True, result=result)

    @classmethod
    def fail(cls, error: BaseException | str) -> "TaskHandlerResult":
        return cls(success=False, error=error)


TaskHandler = Callable[[TaskHandlerContext], Awaitable[TaskHandlerResult]]


@dataclass(slots=True)
class TaskHandlerRegistration:
    type: str
    handler: TaskHandler
    timeout: float | None = None
    max_attempts: int | None = None


class HandlerRegistry:
    """Maps task types to registrations. Registering a type twice replaces it."""

    def __init__(self, registrations: Iterable[TaskHandlerRegistration] = ()) -> None:
        self._items: dict[str, TaskHandlerRegistration] = {}
        for registration in registrations:
            self.add(registration)

    def add(self, registration: TaskHandlerRegistration) -> TaskHandlerRegistration:
        if registration.type in self._items:
            logger.warning("handler_overwritten", task_type=registration.type)
        self._items[registration.type] = registration
        return registration

    def register(
        self,
        task_type: str,
        handler: TaskHandler,
        *,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> TaskHandlerRegistration:
        return self.add(
            TaskHandlerRegistration(type=task_type, handler=handler, timeout=timeout, max_attempts=max_attempts)
        )

    def handler(
        self,
        task_type: str,
        *,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> Callable[[TaskHandler], TaskHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(func: TaskHandler) -> TaskHandler:
            self.register(task_type, func, timeout=timeout, max_attempts=max_attempts)
            return func

        return decorator

    def get(self, task_type: str) -> TaskHandlerRegistration | None:
        return self._items.get(task_type)

    def filter(self, task_types: Iterable[str]) -> "HandlerRegistry":
        wanted = set(task_types)
        return HandlerRegistry(item for key, item in self._items.items() if key in wanted)

    @property
    def types(self) -> list[str]:
        return list(self._items)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._items

    def __iter__(self) -> Iterator[TaskHandlerRegistration]:
        return iter(list(self._items.values()))

    def __len__(self) -> int:
        return len(self._items)
