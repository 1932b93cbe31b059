from __future__ import annotations

from datetime import timedelta

import pytest

from workqueue.core.config import Settings
from workqueue.core.context import anonymous_context, system_context
from workqueue.core.errors import TaskNotFoundError, TaskPermissionError, TaskValidationError
from workqueue.models.task import TaskStatus, utcnow
from workqueue.services.event_bus import TASK_CREATED, TASK_STALE_RESET
from workqueue.services.task_queue_service import TaskQueueService


@pytest.fixture
def service(store, bus, settings) -> TaskQueueService:
    return TaskQueueService(store, bus, settings=settings)


@pytest.mark.asyncio
async def test_enqueue_creates_task_and_emits_event(service, events) -> None:
    outcome = await service.enqueue(
        {"type": "email:send", "payload": {"to": "a@example.com"}, "priority": 10},
        system_context("producer"),
    )

    assert outcome.created is True
    assert outcome.task.status == TaskStatus.PENDING
    assert outcome.task.priority == 10
    assert outcome.task.created_by == "producer"
    assert [event.name for event in events] == [TASK_CREATED]
    assert events[0].payload["task"].id == outcome.task.id


@pytest.mark.asyncio
async def test_enqueue_with_existing_key_does_not_emit(service, events) -> None:
    request = {"type": "email:send", "payload": {}, "idempotency_key": "signup-7"}

    first = await service.enqueue(request, system_context())
    second = await service.enqueue(request, system_context())

    assert second.created is False
    assert second.task.id == first.task.id
    assert [event.name for event in events] == [TASK_CREATED]


@pytest.mark.parametrize(
    "request_data",
    [
        {"type": "", "payload": {}},
        {"type": "x" * 51, "payload": {}},
        {"type": "email:send", "payload": ["not", "an", "object"]},
        {"type": "email:send", "payload": {}, "priority": 0},
        {"type": "email:send", "payload": {}, "max_attempts": 101},
        {"type": "email:send", "payload": {}, "idempotency_key": "k" * 191},
        {"type": "email:send", "payload": {}, "unexpected": True},
        {"type": "email:send"},
    ],
)
@pytest.mark.asyncio
async def test_invalid_requests_are_rejected_before_insert(service, store, request_data) -> None:
    with pytest.raises(TaskValidationError) as exc_info:
        await service.enqueue(request_data, system_context())

    assert exc_info.value.code == "validation_error"
    assert exc_info.value.details
    assert (await store.get_stats()).total == 0


@pytest.mark.asyncio
async def test_default_max_attempts_comes_from_settings(store) -> None:
    service = TaskQueueService(store, settings=Settings(job_default_max_attempts=7))

    outcome = await service.enqueue({"type": "data:sync", "payload": {}}, system_context())

    assert outcome.task.max_attempts == 7


@pytest.mark.asyncio
async def test_parsed_request_without_max_attempts_gets_settings_default(store, make_request) -> None:
    service = TaskQueueService(store, settings=Settings(job_default_max_attempts=7))

    defaulted = await service.enqueue(make_request("data:sync"), system_context())
    explicit = await service.enqueue(make_request("data:sync", max_attempts=2), system_context())

    assert defaulted.task.max_attempts == 7
    assert explicit.task.max_attempts == 2


@pytest.mark.asyncio
async def test_operator_actions_require_admin(service) -> None:
    outcome = await service.enqueue({"type": "email:send", "payload": {}}, system_context())
    guest = anonymous_context()

    with pytest.raises(TaskPermissionError):
        await service.cancel_task(outcome.task.id, guest)
    with pytest.raises(TaskPermissionError):
        await service.retry_task(outcome.task.id, guest)
    with pytest.raises(TaskPermissionError):
        await service.recover_stale_tasks(guest)
    with pytest.raises(TaskPermissionError):
        await service.cleanup(30, guest)

    assert (await service.get_task(outcome.task.id)).status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_then_retry(service) -> None:
    admin = system_context("operator")
    outcome = await service.enqueue({"type": "email:send", "payload": {}}, admin)

    cancelled = await service.cancel_task(outcome.task.id, admin)
    retried = await service.retry_task(outcome.task.id, admin, reset_attempts=True)

    assert cancelled.status == TaskStatus.CANCELLED
    assert retried.status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_recover_stale_tasks_emits_event(service, store, events) -> None:
    await service.enqueue({"type": "email:send", "payload": {}}, system_context())
    await store.acquire_next_task("gone", -5)

    recovered = await service.recover_stale_tasks(system_context())

    assert recovered == 1
    stale = [event for event in events if event.name == TASK_STALE_RESET]
    assert stale[0].payload["count"] == 1


@pytest.mark.asyncio
async def test_cleanup_uses_retention_setting_by_default(service, store, set_columns) -> None:
    outcome = await service.enqueue({"type": "email:send", "payload": {}}, system_context())
    await store.acquire_next_task("w", 60)
    await store.mark_completed(outcome.task.id)
    await set_columns(outcome.task.id, finished_at=utcnow() - timedelta(days=31))

    assert await service.cleanup(None, system_context()) == 1
    with pytest.raises(TaskNotFoundError):
        await service.get_task(outcome.task.id)


@pytest.mark.asyncio
async def test_read_helpers(service) -> None:
    admin = system_context()
    await service.enqueue({"type": "email:send", "payload": {}}, admin)
    await service.enqueue({"type": "data:sync", "payload": {}}, admin)

    listed = await service.list_tasks(task_type="data:sync")
    stats = await service.get_stats()

    assert [task.type for task in listed] == ["data:sync"]
    assert stats.pending == 2
    assert stats.total == 2
