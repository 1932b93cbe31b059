from __future__ import annotations

import asyncio

import pytest
from structlog.testing import capture_logs

from workqueue.models.task import TaskStatus
from workqueue.queue.handlers import TaskHandlerContext, TaskHandlerResult
from workqueue.queue.worker import Worker, WorkerConfig, WorkerState
from workqueue.services.event_bus import (
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_RETRYING,
    TASK_STALE_RESET,
    TASK_STARTED,
)


def _config(**overrides) -> WorkerConfig:
    values = {
        "worker_id": "worker-test",
        "concurrency": 2,
        "poll_interval": 0.05,
        "task_timeout": 5.0,
        "lock_duration": 60.0,
        "stale_task_check_interval": 60.0,
    }
    values.update(overrides)
    return WorkerConfig(**values)


def _status_is(store, task_id: int, status: TaskStatus):
    async def _check():
        task = await store.get(task_id)
        return task if task is not None and task.status == status else None

    return _check


@pytest.mark.asyncio
async def test_worker_completes_task_end_to_end(store, bus, events, make_request, wait_until) -> None:
    async def handler(context: TaskHandlerContext) -> TaskHandlerResult:
        return TaskHandlerResult.ok({"ok": 1})

    created = await store.create(make_request("x", max_attempts=1))
    worker = Worker(store, _config(), event_bus=bus)
    worker.register_handler("x", handler)

    await worker.start()
    task = await wait_until(_status_is(store, created.id, TaskStatus.COMPLETED))
    await worker.stop()

    assert task.result == {"ok": 1}
    assert task.finished_at is not None
    names = [event.name for event in events]
    assert names.index(TASK_STARTED) < names.index(TASK_COMPLETED)
    completed = next(event for event in events if event.name == TASK_COMPLETED)
    assert completed.payload["result"] == {"ok": 1}
    assert completed.payload["duration"] >= 0
    stats = worker.get_stats()
    assert stats.tasks_processed == 1
    assert stats.tasks_succeeded == 1
    assert stats.is_running is False


@pytest.mark.asyncio
async def test_missing_handler_fails_task(store, bus, events, make_request, wait_until) -> None:
    created = await store.create(make_request("unknown:type", max_attempts=1))
    worker = Worker(store, _config(), event_bus=bus)

    await worker.start()
    task = await wait_until(_status_is(store, created.id, TaskStatus.FAILED))
    await worker.stop()

    assert task.error_message == "No handler for task type: unknown:type"
    failed = next(event for event in events if event.name == TASK_FAILED)
    assert failed.payload["will_retry"] is False
    assert worker.get_stats().tasks_failed == 1


@pytest.mark.asyncio
async def test_failed_attempt_is_retried(store, bus, events, make_request, wait_until) -> None:
    calls = []

    async def flaky(context: TaskHandlerContext) -> TaskHandlerResult:
        calls.append(context.task.attempts)
        if len(calls) == 1:
            raise ConnectionError("smtp unavailable")
        return TaskHandlerResult.ok({"attempt": context.task.attempts})

    created = await store.create(make_request("email:send", max_attempts=3))
    worker = Worker(store, _config(), event_bus=bus)
    worker.register_handler("email:send", flaky)

    await worker.start()
    task = await wait_until(_status_is(store, created.id, TaskStatus.COMPLETED))
    await worker.stop()

    assert calls == [1, 2]
    assert task.attempts == 2
    assert task.result == {"attempt": 2}
    failed = next(event for event in events if event.name == TASK_FAILED)
    assert failed.payload["will_retry"] is True
    assert isinstance(failed.payload["error"], ConnectionError)
    retrying = next(event for event in events if event.name == TASK_RETRYING)
    assert retrying.payload["attempt"] == 2


@pytest.mark.asyncio
async def test_handler_result_failure_is_recorded(store, make_request, wait_until) -> None:
    async def handler(context: TaskHandlerContext) -> TaskHandlerResult:
        return TaskHandlerResult.fail("invalid recipient")

    created = await store.create(make_request("email:send", max_attempts=1))
    worker = Worker(store, _config())
    worker.register_handler("email:send", handler)

    await worker.start()
    task = await wait_until(_status_is(store, created.id, TaskStatus.FAILED))
    await worker.stop()

    assert task.error_message == "invalid recipient"


@pytest.mark.asyncio
async def test_registration_max_attempts_overrides_task(store, make_request, wait_until) -> None:
    async def handler(context: TaskHandlerContext) -> TaskHandlerResult:
        return TaskHandlerResult.fail("permanent")

    created = await store.create(make_request("report:generate", max_attempts=5))
    worker = Worker(store, _config())
    worker.register_handler("report:generate", handler, max_attempts=1)

    await worker.start()
    task = await wait_until(_status_is(store, created.id, TaskStatus.FAILED))
    await worker.stop()

    assert task.attempts == 1


@pytest.mark.asyncio
async def test_timeout_fails_attempt_without_cancelling_handler(store, make_request, wait_until) -> None:
    observed_shutdown = asyncio.Event()

    async def slow(context: TaskHandlerContext) -> TaskHandlerResult:
        while not context.is_shutting_down():
            await asyncio.sleep(0.01)
        observed_shutdown.set()
        return TaskHandlerResult.fail("interrupted")

    created = await store.create(make_request("report:generate", max_attempts=1))
    worker = Worker(store, _config())
    worker.register_handler("report:generate", slow, timeout=0.05)

    await worker.start()
    task = await wait_until(_status_is(store, created.id, TaskStatus.FAILED))
    assert task.error_message == "Task timeout after 50ms"
    assert not observed_shutdown.is_set()

    await worker.stop()
    await asyncio.wait_for(observed_shutdown.wait(), timeout=2)


@pytest.mark.asyncio
async def test_concurrency_limits_in_flight_tasks(store, make_request, wait_until) -> None:
    gate = asyncio.Event()

    async def blocked(context: TaskHandlerContext) -> TaskHandlerResult:
        await gate.wait()
        return TaskHandlerResult.ok()

    ids = [(await store.create(make_request("data:sync"))).id for _ in range(5)]
    worker = Worker(store, _config(concurrency=2))
    worker.register_handler("data:sync", blocked)

    await worker.start()
    await wait_until(lambda: _running_count(store, 2))
    await asyncio.sleep(0.2)
    assert worker.get_stats().current_tasks == 2
    assert await store.count_by_status(TaskStatus.RUNNING) == 2

    gate.set()
    for task_id in ids:
        await wait_until(_status_is(store, task_id, TaskStatus.COMPLETED))
    await worker.stop()
    assert worker.get_stats().tasks_succeeded == 5


async def _running_count(store, expected: int) -> bool:
    return await store.count_by_status(TaskStatus.RUNNING) == expected


@pytest.mark.asyncio
async def test_stop_drains_in_flight_and_stops_acquiring(store, make_request, wait_until) -> None:
    gate = asyncio.Event()

    async def blocked(context: TaskHandlerContext) -> TaskHandlerResult:
        await gate.wait()
        return TaskHandlerResult.ok({"drained": True})

    first = await store.create(make_request("data:sync"))
    worker = Worker(store, _config(concurrency=2))
    worker.register_handler("data:sync", blocked)
    await worker.start()
    await wait_until(_status_is(store, first.id, TaskStatus.RUNNING))

    stopping = asyncio.create_task(worker.stop())
    await asyncio.sleep(0)
    assert worker.state is WorkerState.STOPPING
    assert worker.is_shutting_down()
    await asyncio.sleep(0.2)
    late = await store.create(make_request("data:sync"))
    await asyncio.sleep(0.2)
    assert not stopping.done()

    gate.set()
    await asyncio.wait_for(stopping, timeout=5)

    assert worker.state is WorkerState.STOPPED
    assert (await store.check(first.id)).status == TaskStatus.COMPLETED
    assert (await store.check(late.id)).status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_start_resets_stale_tasks(store, bus, events, make_request, wait_until) -> None:
    async def handler(context: TaskHandlerContext) -> TaskHandlerResult:
        return TaskHandlerResult.ok()

    created = await store.create(make_request("email:send"))
    await store.acquire_next_task("crashed-worker", -5)
    worker = Worker(store, _config(), event_bus=bus)
    worker.register_handler("email:send", handler)

    await worker.start()
    task = await wait_until(_status_is(store, created.id, TaskStatus.COMPLETED))
    await worker.stop()

    stale = next(event for event in events if event.name == TASK_STALE_RESET)
    assert stale.payload["count"] == 1
    assert task.attempts == 2


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent(store) -> None:
    worker = Worker(store, _config())

    await worker.stop()
    await worker.start()
    await worker.start()
    assert worker.is_running
    await worker.stop()
    await worker.stop()
    assert worker.state is WorkerState.STOPPED


class _BrokenStore:
    def __init__(self) -> None:
        self.acquire_calls = 0

    async def reset_stale_tasks(self) -> int:
        raise RuntimeError("database unavailable")

    async def acquire_next_task(self, *args, **kwargs):
        self.acquire_calls += 1
        raise RuntimeError("database unavailable")


@pytest.mark.asyncio
async def test_store_errors_during_poll_are_contained() -> None:
    broken = _BrokenStore()
    worker = Worker(broken, _config())

    await worker.start()
    assert await worker.poll() == 0
    assert await worker.check_stale_tasks() == 0
    await worker.stop()

    assert broken.acquire_calls >= 2


class _UnreportableStore(_BrokenStore):
    def __init__(self, task) -> None:
        super().__init__()
        self._task = task

    async def reset_stale_tasks(self) -> int:
        return 0

    async def acquire_next_task(self, *args, **kwargs):
        task, self._task = self._task, None
        return task

    async def mark_completed(self, *args, **kwargs):
        raise RuntimeError("connection lost")


@pytest.mark.asyncio
async def test_report_errors_are_logged_not_raised(store, bus, events, make_request) -> None:
    created = await store.create(make_request("email:send"))
    leased = await store.acquire_next_task("other", 60)
    assert leased.id == created.id

    async def handler(context: TaskHandlerContext) -> TaskHandlerResult:
        return TaskHandlerResult.ok()

    worker = Worker(_UnreportableStore(leased), _config(), event_bus=bus)
    worker.register_handler("email:send", handler)

    await worker.start()
    await worker.stop()

    assert worker.get_stats().tasks_processed == 1
    assert not any(event.name == TASK_COMPLETED for event in events)


def test_config_from_settings_applies_overrides(settings) -> None:
    config = WorkerConfig.from_settings(settings, concurrency=7, task_types=["a"])

    assert config.concurrency == 7
    assert config.poll_interval == 0.05
    assert config.task_types == ["a"]
    assert config.omit_task_types == []
    assert config.worker_id.startswith("worker-")


@pytest.mark.asyncio
async def test_handler_timeout_is_capped_at_lease_duration(store, make_request, wait_until) -> None:
    async def slow(context: TaskHandlerContext) -> TaskHandlerResult:
        while not context.is_shutting_down():
            await asyncio.sleep(0.01)
        return TaskHandlerResult.fail("interrupted")

    created = await store.create(make_request("report:generate", max_attempts=1))
    worker = Worker(store, _config(lock_duration=0.05))
    worker.register_handler("report:generate", slow, timeout=5.0)

    with capture_logs() as captured:
        await worker.start()
    task = await wait_until(_status_is(store, created.id, TaskStatus.FAILED))
    await worker.stop()

    assert task.error_message == "Task timeout after 50ms"
    warnings = [entry for entry in captured if entry["event"] == "handler_timeout_exceeds_lease"]
    assert warnings[0]["task_type"] == "report:generate"
    assert warnings[0]["timeout_seconds"] == 5.0
