"""Task store: sole authority for worker task persistence and the lease protocol.

Every method opens its own session, so the store can be shared by any number
of workers in one process. Cross-process safety comes from the database:
lease acquisition selects with ``FOR UPDATE SKIP LOCKED`` and updates the row
inside the same transaction.
"""

from __future__ import annotations

import traceback
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from workqueue.core.context import ExecutionContext
from workqueue.core.errors import InvalidTaskTransition, TaskConflictError, TaskNotFoundError
from workqueue.core.json_utils import json_object
from workqueue.core.logging import get_logger
from workqueue.domain.task_state import validate_transition
from workqueue.models.task import (
    ACTIVE_STATUSES,
    DEFAULT_MAX_ATTEMPTS,
    TERMINAL_STATUSES,
    Task,
    TaskStatus,
    utcnow,
)
from workqueue.schemas.task import EnqueueTaskRequest, TaskStats

logger = get_logger("repositories.task_store")

IDEMPOTENT_CREATE_ATTEMPTS = 3
RETRYABLE_STATUSES = (TaskStatus.FAILED, TaskStatus.CANCELLED)


@dataclass(slots=True)
class CreateTaskResult:
    task: Task
    created: bool


def describe_error(error: BaseException | str) -> tuple[str, str | None]:
    """Split an error into the message and stack stored on the task row."""
    if isinstance(error, BaseException):
        message = str(error) or error.__class__.__name__
        stack = "".join(traceback.format_exception(error.__class__, error, error.__traceback__))
        return message, stack
    return str(error) or "Task failed without error", None


def _as_timedelta(value: float | timedelta) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=float(value))


def _actor(ctx: ExecutionContext | None) -> str | None:
    return ctx.actor if ctx else None


class TaskStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    # ── Creation ──

    def _build_task(self, data: EnqueueTaskRequest, ctx: ExecutionContext | None) -> Task:
        return Task(
            type=data.type,
            payload=json_object(data.payload),
            status=TaskStatus.PENDING,
            priority=data.priority,
            attempts=0,
            max_attempts=data.max_attempts if data.max_attempts is not None else DEFAULT_MAX_ATTEMPTS,
            idempotency_key=data.idempotency_key,
            scheduled_at=data.scheduled_at,
            created_by=_actor(ctx),
        )

    async def create(self, data: EnqueueTaskRequest, *, ctx: ExecutionContext | None = None) -> Task:
        async with self._session_factory() as db:
            task = self._build_task(data, ctx)
            db.add(task)
            await db.flush()
            await db.commit()
            await db.refresh(task)
        logger.debug("task_created", task_id=task.id, task_type=task.type, actor=_actor(ctx))
        return task

    async def create_idempotent(
        self,
        data: EnqueueTaskRequest,
        *,
        ctx: ExecutionContext | None = None,
    ) -> CreateTaskResult:
        """Insert a task unless an active or completed task already holds its key.

        A concurrent creator that loses the race on the partial unique index
        retries and then finds the winner's row.
        """
        if not data.idempotency_key:
            return CreateTaskResult(task=await self.create(data, ctx=ctx), created=True)

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(IDEMPOTENT_CREATE_ATTEMPTS),
            retry=retry_if_exception_type(IntegrityError),
            reraise=True,
        ):
            with attempt:
                return await self._create_idempotent_once(data, ctx)
        raise RuntimeError("idempotent create exhausted its retries")

    async def _create_idempotent_once(
        self,
        data: EnqueueTaskRequest,
        ctx: ExecutionContext | None,
    ) -> CreateTaskResult:
        key = data.idempotency_key
        async with self._session_factory() as db:
            existing = await self._active_by_key(db, key)
            if existing is None:
                latest = await self._latest_by_key(db, key)
                if latest is not None and latest.status == TaskStatus.COMPLETED:
                    existing = latest
            if existing is not None:
                return CreateTaskResult(task=existing, created=False)

            task = self._build_task(data, ctx)
            db.add(task)
            try:
                await db.flush()
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("task_idempotency_race", idempotency_key=key, task_type=data.type)
                raise
            await db.refresh(task)
        return CreateTaskResult(task=task, created=True)

    async def _active_by_key(self, db: AsyncSession, key: str) -> Task | None:
        row = await db.execute(
            select(Task)
            .where(Task.idempotency_key == key, Task.status.in_(ACTIVE_STATUSES))
            .limit(1)
        )
        return row.scalar_one_or_none()

    async def _latest_by_key(self, db: AsyncSession, key: str) -> Task | None:
        row = await db.execute(
            select(Task)
            .where(Task.idempotency_key == key)
            .order_by(Task.created_at.desc(), Task.id.desc())
            .limit(1)
        )
        return row.scalar_one_or_none()

    async def find_by_idempotency_key(self, key: str) -> Task | None:
        async with self._session_factory() as db:
            return await self._latest_by_key(db, key)

    # ── Lease protocol ──

    async def acquire_next_task(
        self,
        worker_id: str,
        lock_duration: float | timedelta = 300.0,
        *,
        task_types: Iterable[str] | None = None,
        omit_task_types: Iterable[str] | None = None,
    ) -> Task | None:
        """Lease the best eligible pending task for ``worker_id``.

        Rows locked by concurrent acquirers are skipped, never waited on, so
        two callers can never lease the same task.
        """
        now = self._clock()
        stmt = (
            select(Task)
            .where(
                Task.status == TaskStatus.PENDING,
                or_(Task.scheduled_at.is_(None), Task.scheduled_at <= now),
            )
            .order_by(Task.priority.desc(), Task.created_at.asc(), Task.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        allowed = list(task_types or [])
        denied = list(omit_task_types or [])
        if allowed:
            stmt = stmt.where(Task.type.in_(allowed))
        if denied:
            stmt = stmt.where(Task.type.not_in(denied))

        async with self._session_factory() as db:
            row = await db.execute(stmt)
            task = row.scalar_one_or_none()
            if task is None:
                return None
            task.status = TaskStatus.RUNNING
            task.locked_by = worker_id
            task.locked_until = now + _as_timedelta(lock_duration)
            task.started_at = now
            task.attempts = (task.attempts or 0) + 1
            task.updated_at = now
            await db.commit()
        logger.debug("task_acquired", task_id=task.id, task_type=task.type, worker_id=worker_id, attempt=task.attempts)
        return task

    async def mark_completed(
        self,
        task_id: int,
        result: dict[str, Any] | None = None,
        *,
        ctx: ExecutionContext | None = None,
    ) -> Task:
        now = self._clock()
        async with self._session_factory() as db:
            task = await db.get(Task, task_id, with_for_update=True)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.status != TaskStatus.RUNNING:
                logger.warning("task_completed_without_lease", task_id=task_id, status=task.status.value, actor=_actor(ctx))
            task.status = TaskStatus.COMPLETED
            task.finished_at = now
            task.result = json_object(result) if result is not None else None
            task.locked_by = None
            task.locked_until = None
            task.error_message = None
            task.error_stack = None
            task.updated_at = now
            await db.commit()
        return task

    async def mark_failed(
        self,
        task_id: int,
        error: BaseException | str,
        *,
        ctx: ExecutionContext | None = None,
        max_attempts: int | None = None,
    ) -> Task:
        """Record a failed attempt.

        The task goes back to PENDING while ``attempts < max_attempts``;
        otherwise it becomes terminally FAILED. ``max_attempts`` overrides the
        row's own ceiling (per-handler override).
        """
        message, stack = describe_error(error)
        now = self._clock()
        async with self._session_factory() as db:
            task = await db.get(Task, task_id, with_for_update=True)
            if task is None:
                raise TaskNotFoundError(task_id)
            limit = max_attempts if max_attempts is not None else task.max_attempts
            can_retry = (task.attempts or 0) < limit
            task.status = TaskStatus.PENDING if can_retry else TaskStatus.FAILED
            task.finished_at = None if can_retry else now
            task.error_message = message
            task.error_stack = stack
            task.locked_by = None
            task.locked_until = None
            task.updated_at = now
            await db.commit()
        logger.debug(
            "task_failure_recorded",
            task_id=task_id,
            status=task.status.value,
            attempts=task.attempts,
            limit=limit,
            actor=_actor(ctx),
        )
        return task

    async def release_lock(self, task_id: int, *, ctx: ExecutionContext | None = None) -> Task:
        """Hand a running task back to the queue without recording a failure."""
        now = self._clock()
        async with self._session_factory() as db:
            task = await db.get(Task, task_id, with_for_update=True)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.status != TaskStatus.RUNNING:
                raise InvalidTaskTransition(
                    f"Cannot release lock of task {task_id} in status {task.status.value}",
                    details={"task_id": task_id, "status": task.status.value},
                )
            task.status = TaskStatus.PENDING
            task.locked_by = None
            task.locked_until = None
            task.started_at = None
            task.updated_at = now
            await db.commit()
        logger.info("task_lock_released", task_id=task_id, actor=_actor(ctx))
        return task

    async def find_stale_tasks(self) -> list[Task]:
        now = self._clock()
        async with self._session_factory() as db:
            rows = await db.execute(
                select(Task)
                .where(Task.status == TaskStatus.RUNNING, Task.locked_until < now)
                .order_by(Task.locked_until.asc())
            )
            return list(rows.scalars().all())

    async def reset_stale_tasks(self) -> int:
        now = self._clock()
        async with self._session_factory() as db:
            result = await db.execute(
                update(Task)
                .where(Task.status == TaskStatus.RUNNING, Task.locked_until < now)
                .values(
                    status=TaskStatus.PENDING,
                    locked_by=None,
                    locked_until=None,
                    started_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return int(result.rowcount or 0)

    # ── Operator transitions ──

    async def cancel(self, task_id: int, *, ctx: ExecutionContext | None = None) -> Task:
        now = self._clock()
        async with self._session_factory() as db:
            task = await db.get(Task, task_id, with_for_update=True)
            if task is None:
                raise TaskNotFoundError(task_id)
            self._assert_transition(task, TaskStatus.CANCELLED)
            task.status = TaskStatus.CANCELLED
            task.finished_at = now
            task.updated_at = now
            await db.commit()
        logger.info("task_cancelled", task_id=task_id, actor=_actor(ctx))
        return task

    async def retry(
        self,
        task_id: int,
        *,
        reset_attempts: bool = False,
        ctx: ExecutionContext | None = None,
    ) -> Task:
        now = self._clock()
        async with self._session_factory() as db:
            task = await db.get(Task, task_id, with_for_update=True)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.status not in RETRYABLE_STATUSES:
                raise InvalidTaskTransition(
                    f"Cannot retry task in status: {task.status.value}. Only failed or cancelled tasks can be retried.",
                    details={
                        "task_id": task_id,
                        "from_state": task.status.value,
                        "to_state": TaskStatus.PENDING.value,
                    },
                )
            task.status = TaskStatus.PENDING
            task.error_message = None
            task.error_stack = None
            task.finished_at = None
            task.started_at = None
            task.locked_by = None
            task.locked_until = None
            task.updated_at = now
            if reset_attempts:
                task.attempts = 0
            key = task.idempotency_key
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise TaskConflictError(
                    f"Another active task already holds idempotency key {key!r}",
                    details={"task_id": task_id, "idempotency_key": key},
                ) from exc
        logger.info("task_retry_requested", task_id=task_id, reset_attempts=reset_attempts, actor=_actor(ctx))
        return task

    @staticmethod
    def _assert_transition(task: Task, target: TaskStatus) -> None:
        result = validate_transition(task.status, target)
        if result.valid:
            return
        raise InvalidTaskTransition(
            f"Cannot move task {task.id} from {task.status.value} to {target.value}",
            details={
                "task_id": task.id,
                "from_state": task.status.value,
                "to_state": target.value,
                "allowed_targets": [item.value for item in result.allowed_targets],
            },
        )

    # ── Reads & maintenance ──

    async def get(self, task_id: int) -> Task | None:
        async with self._session_factory() as db:
            return await db.get(Task, task_id)

    async def check(self, task_id: int) -> Task:
        task = await self.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def find_pending(
        self,
        *,
        task_types: Iterable[str] | None = None,
        limit: int = 100,
    ) -> list[Task]:
        now = self._clock()
        stmt = (
            select(Task)
            .where(
                Task.status == TaskStatus.PENDING,
                or_(Task.scheduled_at.is_(None), Task.scheduled_at <= now),
            )
            .order_by(Task.priority.desc(), Task.created_at.asc(), Task.id.asc())
            .limit(max(1, limit))
        )
        allowed = list(task_types or [])
        if allowed:
            stmt = stmt.where(Task.type.in_(allowed))
        async with self._session_factory() as db:
            rows = await db.execute(stmt)
            return list(rows.scalars().all())

    async def find_running(self) -> list[Task]:
        async with self._session_factory() as db:
            rows = await db.execute(
                select(Task).where(Task.status == TaskStatus.RUNNING).order_by(Task.started_at.asc())
            )
            return list(rows.scalars().all())

    async def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        task_type: str | None = None,
        limit: int = 50,
    ) -> list[Task]:
        stmt = select(Task)
        if status:
            stmt = stmt.where(Task.status == status)
        if task_type:
            stmt = stmt.where(Task.type == task_type)
        stmt = stmt.order_by(Task.created_at.desc(), Task.id.desc()).limit(max(1, min(limit, 200)))
        async with self._session_factory() as db:
            rows = await db.execute(stmt)
            return list(rows.scalars().all())

    async def count_by_status(self, status: TaskStatus) -> int:
        async with self._session_factory() as db:
            row = await db.execute(select(func.count(Task.id)).where(Task.status == status))
            return int(row.scalar_one() or 0)

    async def get_stats(self) -> TaskStats:
        async with self._session_factory() as db:
            rows = await db.execute(select(Task.status, func.count(Task.id)).group_by(Task.status))
            counts = rows.all()
        stats = TaskStats()
        for status, count in counts:
            count = int(count or 0)
            setattr(stats, TaskStatus(status).value.lower(), count)
            stats.total += count
        return stats

    async def cleanup_old_tasks(self, older_than_days: int) -> int:
        """Delete COMPLETED/FAILED tasks that finished more than ``older_than_days`` ago."""
        cutoff = self._clock() - timedelta(days=max(0, older_than_days))
        async with self._session_factory() as db:
            result = await db.execute(
                delete(Task)
                .where(Task.status.in_(TERMINAL_STATUSES), Task.finished_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        deleted = int(result.rowcount or 0)
        if deleted:
            logger.info("tasks_cleaned_up", deleted=deleted, older_than_days=older_than_days)
        return deleted
