from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import update

from workqueue.core.config import Settings
from workqueue.core.database import Base, build_engine, build_session_factory
from workqueue.models.task import Task
from workqueue.repositories.task_store import TaskStore
from workqueue.schemas.task import EnqueueTaskRequest
from workqueue.services.event_bus import DomainEvent, EventBus


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'worker_tasks.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory) -> TaskStore:
    return TaskStore(session_factory)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        job_concurrency=2,
        job_poll_interval_seconds=0.05,
        job_timeout_seconds=5.0,
        job_stale_check_interval_seconds=60.0,
        cleanup_retention_days=30,
        worker_instances=[],
    )


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(bus: EventBus) -> list[DomainEvent]:
    received: list[DomainEvent] = []
    bus.subscribe("*", received.append)
    return received


@pytest.fixture
def make_request() -> Callable[..., EnqueueTaskRequest]:
    def _make(task_type: str = "email:send", **overrides: Any) -> EnqueueTaskRequest:
        values: dict[str, Any] = {"type": task_type, "payload": {"to": "user@example.com"}}
        values.update(overrides)
        return EnqueueTaskRequest(**values)

    return _make


@pytest.fixture
def set_columns(session_factory):
    async def _set(task_id: int, **values: Any) -> None:
        async with session_factory() as db:
            await db.execute(update(Task).where(Task.id == task_id).values(**values))
            await db.commit()

    return _set


@pytest.fixture
def wait_until():
    async def _wait(
        predicate: Callable[[], Awaitable[Any]],
        *,
        timeout: float = 5.0,
        interval: float = 0.02,
    ) -> Any:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            value = await predicate()
            if value:
                return value
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(interval)

    return _wait
