"""Polling worker: leases tasks from the store and runs their handlers.

The worker drives two periodic loops on the running event loop (task polling
and stale-lease recovery) plus one asyncio task per in-flight execution. It
never holds database state of its own; every transition goes through the
task store.
"""

from __future__ import annotations

import asyncio
import os
import secrets
import socket
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

from workqueue.core.config import Settings, get_settings
from workqueue.core.context import system_context
from workqueue.core.errors import TaskTimeoutError
from workqueue.core.logging import get_logger
from workqueue.models.task import Task, TaskStatus, utcnow
from workqueue.queue.handlers import (
    HandlerRegistry,
    TaskHandler,
    TaskHandlerContext,
    TaskHandlerRegistration,
    TaskHandlerResult,
)
from workqueue.repositories.task_store import TaskStore
from workqueue.services.event_bus import (
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_RETRYING,
    TASK_STALE_RESET,
    TASK_STARTED,
    EventBus,
)

logger = get_logger("queue.worker")


def default_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(3)}"


@dataclass(slots=True)
class WorkerConfig:
    worker_id: str = field(default_factory=default_worker_id)
    concurrency: int = 5
    poll_interval: float = 1.0
    task_timeout: float = 300.0
    lock_duration: float = 300.0
    task_types: list[str] = field(default_factory=list)
    omit_task_types: list[str] = field(default_factory=list)
    stale_task_check_interval: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> "WorkerConfig":
        settings = settings or get_settings()
        values: dict[str, Any] = {
            "concurrency": settings.job_concurrency,
            "poll_interval": settings.job_poll_interval_seconds,
            "task_timeout": settings.job_timeout_seconds,
            "lock_duration": settings.job_lock_duration_seconds,
            "stale_task_check_interval": settings.job_stale_check_interval_seconds,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


class WorkerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(slots=True)
class WorkerStats:
    worker_id: str
    is_running: bool
    tasks_processed: int
    tasks_succeeded: int
    tasks_failed: int
    current_tasks: int
    uptime_seconds: float
    started_at: datetime | None


class Worker:
    def __init__(
        self,
        store: TaskStore,
        config: WorkerConfig | None = None,
        *,
        event_bus: EventBus | None = None,
        handlers: Iterable[TaskHandlerRegistration] | None = None,
    ) -> None:
        self.store = store
        self.config = config or WorkerConfig.from_settings()
        self.event_bus = event_bus
        self.handlers = HandlerRegistry(handlers or ())

        self._state = WorkerState.STOPPED
        self._shutdown = asyncio.Event()
        self._poll_lock = asyncio.Lock()
        self._loops: list[asyncio.Task] = []
        self._in_flight: dict[int, asyncio.Task] = {}
        self._abandoned: set[asyncio.Task] = set()
        self._ctx = system_context(self.config.worker_id)

        self._tasks_processed = 0
        self._tasks_succeeded = 0
        self._tasks_failed = 0
        self._started_at: datetime | None = None
        self._started_monotonic: float | None = None

    @property
    def worker_id(self) -> str:
        return self.config.worker_id

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is WorkerState.RUNNING

    def is_shutting_down(self) -> bool:
        return self._shutdown.is_set()

    # ── Handlers ──

    def register_handler(
        self,
        task_type: str,
        handler: TaskHandler,
        *,
        timeout: float | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.handlers.register(task_type, handler, timeout=timeout, max_attempts=max_attempts)

    def register(self, registration: TaskHandlerRegistration) -> None:
        self.handlers.add(registration)

    # ── Lifecycle ──

    async def start(self) -> None:
        if self._state is not WorkerState.STOPPED:
            logger.warning("worker_already_running", worker_id=self.worker_id, state=self._state.value)
            return

        self._shutdown = asyncio.Event()
        self._state = WorkerState.RUNNING
        self._started_at = utcnow()
        self._started_monotonic = time.monotonic()
        logger.info(
            "worker_starting",
            worker_id=self.worker_id,
            concurrency=self.config.concurrency,
            task_types=self.config.task_types or None,
            omit_task_types=self.config.omit_task_types or None,
            handlers=self.handlers.types,
        )
        for registration in self.handlers:
            requested = registration.timeout or self.config.task_timeout
            if requested > self.config.lock_duration:
                logger.warning(
                    "handler_timeout_exceeds_lease",
                    worker_id=self.worker_id,
                    task_type=registration.type,
                    timeout_seconds=requested,
                    lock_duration_seconds=self.config.lock_duration,
                )

        await self.check_stale_tasks()
        self._loops = [
            asyncio.create_task(
                self._periodic_loop("poll", self.config.poll_interval, self.poll),
                name=f"{self.worker_id}-poll",
            ),
            asyncio.create_task(
                self._periodic_loop("stale_check", self.config.stale_task_check_interval, self.check_stale_tasks),
                name=f"{self.worker_id}-stale-check",
            ),
        ]
        await self.poll()

    async def stop(self) -> None:
        """Stop polling, then wait for every acquired task to be reported."""
        if self._state is not WorkerState.RUNNING:
            return

        self._state = WorkerState.STOPPING
        self._shutdown.set()
        logger.info("worker_stopping", worker_id=self.worker_id, in_flight=len(self._in_flight))

        loops, self._loops = self._loops, []
        await asyncio.gather(*loops, return_exceptions=True)

        async with self._poll_lock:
            pass

        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

        self._state = WorkerState.STOPPED
        logger.info(
            "worker_stopped",
            worker_id=self.worker_id,
            tasks_processed=self._tasks_processed,
            tasks_succeeded=self._tasks_succeeded,
            tasks_failed=self._tasks_failed,
        )

    async def _periodic_loop(self, name: str, interval: float, job: Callable[[], Awaitable[Any]]) -> None:
        logger.debug("worker_loop_started", worker_id=self.worker_id, loop=name, interval_seconds=interval)
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if self._shutdown.is_set():
                break
            try:
                await job()
            except Exception as exc:  # noqa: BLE001
                logger.error("worker_loop_error", worker_id=self.worker_id, loop=name, error=str(exc))
        logger.debug("worker_loop_stopped", worker_id=self.worker_id, loop=name)

    # ── Polling ──

    async def poll(self) -> int:
        """Fill free execution slots with newly leased tasks; returns how many were dispatched."""
        if self._state is not WorkerState.RUNNING:
            return 0

        dispatched = 0
        async with self._poll_lock:
            available = self.config.concurrency - len(self._in_flight)
            for _ in range(max(0, available)):
                if self._shutdown.is_set():
                    break
                try:
                    task = await self.store.acquire_next_task(
                        self.worker_id,
                        self.config.lock_duration,
                        task_types=self.config.task_types,
                        omit_task_types=self.config.omit_task_types,
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.error("task_acquire_failed", worker_id=self.worker_id, error=str(exc))
                    break
                if task is None:
                    break
                self._dispatch(task)
                dispatched += 1
        return dispatched

    def _dispatch(self, task: Task) -> None:
        execution = asyncio.create_task(self._execute(task), name=f"{self.worker_id}-task-{task.id}")
        self._in_flight[task.id] = execution

        def _on_done(done: asyncio.Task, task_id: int = task.id) -> None:
            self._in_flight.pop(task_id, None)
            if not done.cancelled() and done.exception() is not None:
                logger.error("task_execution_crashed", worker_id=self.worker_id, task_id=task_id, error=str(done.exception()))

        execution.add_done_callback(_on_done)

    # ── Execution ──

    async def _execute(self, task: Task) -> None:
        with structlog.contextvars.bound_contextvars(task_id=task.id, worker_id=self.worker_id):
            started = time.monotonic()
            self._emit(TASK_STARTED, {"task": task, "worker_id": self.worker_id})

            registration = self.handlers.get(task.type)
            if registration is None:
                outcome = TaskHandlerResult.fail(f"No handler for task type: {task.type}")
            else:
                outcome = await self._run_handler(registration, task)

            duration_ms = int((time.monotonic() - started) * 1000)
            self._tasks_processed += 1
            if outcome.success:
                await self._report_success(task, outcome, duration_ms)
            else:
                await self._report_failure(task, outcome.error, registration, duration_ms)

    async def _run_handler(self, registration: TaskHandlerRegistration, task: Task) -> TaskHandlerResult:
        timeout = self._handler_timeout(registration)
        context = TaskHandlerContext(task=task, worker_id=self.worker_id, is_shutting_down=self.is_shutting_down)
        handler_task = asyncio.create_task(self._invoke(registration.handler, context))

        done, _ = await asyncio.wait({handler_task}, timeout=timeout)
        if not done:
            # The handler keeps running; it is expected to watch is_shutting_down().
            self._abandon(task, handler_task)
            return TaskHandlerResult.fail(TaskTimeoutError(timeout))

        try:
            outcome = handler_task.result()
        except asyncio.CancelledError:
            return TaskHandlerResult.fail("Task handler was cancelled")
        except Exception as exc:  # noqa: BLE001
            return TaskHandlerResult.fail(exc)

        if not isinstance(outcome, TaskHandlerResult):
            return TaskHandlerResult.fail(
                TypeError(f"Handler for {task.type} returned {outcome.__class__.__name__}, expected TaskHandlerResult")
            )
        return outcome

    def _handler_timeout(self, registration: TaskHandlerRegistration) -> float:
        """Handler budget, capped at the lease duration."""
        return min(registration.timeout or self.config.task_timeout, self.config.lock_duration)

    @staticmethod
    async def _invoke(handler: TaskHandler, context: TaskHandlerContext) -> TaskHandlerResult:
        return await handler(context)

    def _abandon(self, task: Task, handler_task: asyncio.Task) -> None:
        self._abandoned.add(handler_task)

        def _on_done(done: asyncio.Task, task_id: int = task.id) -> None:
            self._abandoned.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            logger.info(
                "timed_out_handler_finished",
                worker_id=self.worker_id,
                task_id=task_id,
                error=str(exc) if exc is not None else None,
            )

        handler_task.add_done_callback(_on_done)

    async def _report_success(self, task: Task, outcome: TaskHandlerResult, duration_ms: int) -> None:
        self._tasks_succeeded += 1
        try:
            updated = await self.store.mark_completed(task.id, outcome.result, ctx=self._ctx)
        except Exception as exc:  # noqa: BLE001
            logger.error("task_completion_report_failed", task_id=task.id, error=str(exc))
            return
        self._emit(TASK_COMPLETED, {"task": updated, "result": outcome.result, "duration": duration_ms})

    async def _report_failure(
        self,
        task: Task,
        error: BaseException | str | None,
        registration: TaskHandlerRegistration | None,
        duration_ms: int,
    ) -> None:
        self._tasks_failed += 1
        if error is None:
            error = "Task failed without error"
        try:
            updated = await self.store.mark_failed(
                task.id,
                error,
                ctx=self._ctx,
                max_attempts=registration.max_attempts if registration else None,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("task_failure_report_failed", task_id=task.id, error=str(exc))
            return

        will_retry = updated.status == TaskStatus.PENDING
        self._emit(TASK_FAILED, {"task": updated, "error": error, "will_retry": will_retry, "duration": duration_ms})
        if will_retry:
            self._emit(
                TASK_RETRYING,
                {"task": updated, "attempt": (updated.attempts or 0) + 1, "next_attempt_at": utcnow()},
            )

    # ── Stale leases ──

    async def check_stale_tasks(self) -> int:
        try:
            count = await self.store.reset_stale_tasks()
        except Exception as exc:  # noqa: BLE001
            logger.error("stale_task_check_failed", worker_id=self.worker_id, error=str(exc))
            return 0
        if count:
            logger.info("stale_tasks_recovered", worker_id=self.worker_id, count=count)
            self._emit(TASK_STALE_RESET, {"count": count, "worker_id": self.worker_id})
        return count

    # ── Introspection ──

    def _emit(self, name: str, payload: dict[str, Any]) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(name, payload)

    def get_stats(self) -> WorkerStats:
        uptime = 0.0
        if self._started_monotonic is not None and self._state is not WorkerState.STOPPED:
            uptime = time.monotonic() - self._started_monotonic
        return WorkerStats(
            worker_id=self.worker_id,
            is_running=self.is_running,
            tasks_processed=self._tasks_processed,
            tasks_succeeded=self._tasks_succeeded,
            tasks_failed=self._tasks_failed,
            current_tasks=len(self._in_flight),
            uptime_seconds=round(uptime, 3),
            started_at=self._started_at,
        )
