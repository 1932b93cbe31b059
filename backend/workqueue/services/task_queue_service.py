"""Producer and operator facade over the task store (enqueue/cancel/retry/inspect)."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from workqueue.core.config import Settings, get_settings
from workqueue.core.context import ExecutionContext
from workqueue.core.errors import TaskPermissionError, TaskValidationError
from workqueue.core.logging import get_logger
from workqueue.models.task import Task, TaskStatus
from workqueue.repositories.task_store import CreateTaskResult, TaskStore
from workqueue.schemas.task import EnqueueTaskRequest, TaskStats
from workqueue.services.event_bus import TASK_CREATED, TASK_STALE_RESET, EventBus

logger = get_logger("services.task_queue")


class TaskQueueService:
    def __init__(
        self,
        store: TaskStore,
        event_bus: EventBus | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.store = store
        self.event_bus = event_bus
        self._settings = settings or get_settings()

    def _emit(self, name: str, payload: dict[str, Any]) -> None:
        if self.event_bus is not None:
            self.event_bus.emit(name, payload)

    def _parse(self, data: EnqueueTaskRequest | Mapping[str, Any]) -> EnqueueTaskRequest:
        if isinstance(data, EnqueueTaskRequest):
            request = data
        else:
            try:
                request = EnqueueTaskRequest.model_validate(dict(data))
            except ValidationError as exc:
                raise TaskValidationError(
                    "Invalid task request",
                    details=exc.errors(include_url=False, include_context=False),
                ) from exc
        if request.max_attempts is None:
            request = request.model_copy(update={"max_attempts": self._settings.job_default_max_attempts})
        return request

    @staticmethod
    def _require_admin(ctx: ExecutionContext, action: str) -> None:
        if not ctx.is_admin:
            logger.warning("task_action_denied", action=action, actor=ctx.actor)
            raise TaskPermissionError(
                f"Actor {ctx.actor!r} may not {action} tasks",
                details={"actor": ctx.actor, "action": action},
            )

    async def enqueue(
        self,
        data: EnqueueTaskRequest | Mapping[str, Any],
        ctx: ExecutionContext,
    ) -> CreateTaskResult:
        request = self._parse(data)
        outcome = await self.store.create_idempotent(request, ctx=ctx)
        if outcome.created:
            self._emit(TASK_CREATED, {"task": outcome.task})
        else:
            logger.info(
                "task_enqueue_reused",
                task_id=outcome.task.id,
                idempotency_key=request.idempotency_key,
                status=outcome.task.status.value,
            )
        return outcome

    async def get_task(self, task_id: int) -> Task:
        return await self.store.check(task_id)

    async def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        task_type: str | None = None,
        limit: int = 50,
    ) -> list[Task]:
        return await self.store.list_tasks(status=status, task_type=task_type, limit=limit)

    async def get_stats(self) -> TaskStats:
        return await self.store.get_stats()

    async def cancel_task(self, task_id: int, ctx: ExecutionContext) -> Task:
        self._require_admin(ctx, "cancel")
        return await self.store.cancel(task_id, ctx=ctx)

    async def retry_task(
        self,
        task_id: int,
        ctx: ExecutionContext,
        *,
        reset_attempts: bool = False,
    ) -> Task:
        self._require_admin(ctx, "retry")
        return await self.store.retry(task_id, reset_attempts=reset_attempts, ctx=ctx)

    async def recover_stale_tasks(self, ctx: ExecutionContext) -> int:
        self._require_admin(ctx, "recover")
        count = await self.store.reset_stale_tasks()
        if count:
            self._emit(TASK_STALE_RESET, {"count": count, "actor": ctx.actor})
        logger.info("stale_tasks_recovered", count=count, actor=ctx.actor)
        return count

    async def cleanup(self, older_than_days: int | None, ctx: ExecutionContext) -> int:
        self._require_admin(ctx, "clean up")
        days = older_than_days if older_than_days is not None else self._settings.cleanup_retention_days
        if days < 0:
            raise TaskValidationError("older_than_days must be >= 0", details={"older_than_days": days})
        return await self.store.cleanup_old_tasks(days)
