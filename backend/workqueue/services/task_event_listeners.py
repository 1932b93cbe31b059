"""Structured-log subscribers for task lifecycle events."""

from __future__ import annotations

from workqueue.core.logging import get_logger
from workqueue.services.event_bus import (
    TASK_COMPLETED,
    TASK_CREATED,
    TASK_FAILED,
    TASK_RETRYING,
    TASK_STALE_RESET,
    TASK_STARTED,
    DomainEvent,
    EventBus,
)

logger = get_logger("services.task_events")


def _task_fields(event: DomainEvent) -> dict:
    task = event.payload.get("task")
    if task is None:
        return {}
    return {"task_id": getattr(task, "id", None), "task_type": getattr(task, "type", None)}


def log_task_created(event: DomainEvent) -> None:
    logger.info("task_created", **_task_fields(event))


def log_task_started(event: DomainEvent) -> None:
    logger.debug("task_started", worker_id=event.payload.get("worker_id"), **_task_fields(event))


def log_task_completed(event: DomainEvent) -> None:
    logger.info("task_completed", duration_ms=event.payload.get("duration"), **_task_fields(event))


def log_task_failed(event: DomainEvent) -> None:
    error = event.payload.get("error")
    logger.warning(
        "task_failed",
        error=str(error) if error is not None else None,
        will_retry=bool(event.payload.get("will_retry")),
        duration_ms=event.payload.get("duration"),
        **_task_fields(event),
    )


def log_task_retrying(event: DomainEvent) -> None:
    logger.info("task_retrying", next_attempt=event.payload.get("attempt"), **_task_fields(event))


def log_stale_reset(event: DomainEvent) -> None:
    logger.warning("stale_tasks_reset", count=event.payload.get("count"), worker_id=event.payload.get("worker_id"))


def register_task_event_listeners(bus: EventBus) -> EventBus:
    bus.subscribe(TASK_CREATED, log_task_created)
    bus.subscribe(TASK_STARTED, log_task_started)
    bus.subscribe(TASK_COMPLETED, log_task_completed)
    bus.subscribe(TASK_FAILED, log_task_failed)
    bus.subscribe(TASK_RETRYING, log_task_retrying)
    bus.subscribe(TASK_STALE_RESET, log_stale_reset)
    return bus
