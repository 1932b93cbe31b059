"""Worker task API routes (enqueue, inspect and operate on tasks)."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, Query, status

from workqueue.api.deps.services import get_execution_context, get_task_service
from workqueue.api.envelope import success_envelope
from workqueue.core.context import ExecutionContext
from workqueue.models.task import Task, TaskStatus
from workqueue.schemas.task import EnqueueTaskRequest, EnqueueTaskResponse, RetryTaskRequest, TaskOut
from workqueue.services.task_queue_service import TaskQueueService

router = APIRouter(prefix="/tasks", tags=["Tasks"])


def _task_out(task: Task) -> dict[str, Any]:
    return TaskOut.model_validate(task).model_dump(mode="json")


def _task_envelope(task: Task, *, status_code: int = 200):
    return success_envelope(_task_out(task), status_code=status_code)


@router.post("", status_code=status.HTTP_201_CREATED)
async def enqueue_task(
    payload: EnqueueTaskRequest,
    service: TaskQueueService = Depends(get_task_service),
    ctx: ExecutionContext = Depends(get_execution_context),
):
    outcome = await service.enqueue(payload, ctx)
    response = EnqueueTaskResponse(task=TaskOut.model_validate(outcome.task), created=outcome.created)
    return success_envelope(response.model_dump(mode="json"), status_code=status.HTTP_201_CREATED)


@router.get("")
async def list_tasks(
    limit: int = Query(50, ge=1, le=200),
    status_filter: TaskStatus | None = Query(default=None, alias="status"),
    task_type: str | None = Query(default=None, alias="type", max_length=50),
    service: TaskQueueService = Depends(get_task_service),
):
    tasks = await service.list_tasks(status=status_filter, task_type=task_type, limit=limit)
    return success_envelope({"items": [_task_out(task) for task in tasks], "total": len(tasks)})


@router.get("/stats")
async def get_task_stats(service: TaskQueueService = Depends(get_task_service)):
    stats = await service.get_stats()
    return success_envelope(stats.model_dump())


@router.get("/{task_id}")
async def get_task(task_id: int, service: TaskQueueService = Depends(get_task_service)):
    return _task_envelope(await service.get_task(task_id))


@router.post("/{task_id}/cancel")
async def cancel_task(
    task_id: int,
    service: TaskQueueService = Depends(get_task_service),
    ctx: ExecutionContext = Depends(get_execution_context),
):
    return _task_envelope(await service.cancel_task(task_id, ctx))


@router.post("/{task_id}/retry", status_code=status.HTTP_202_ACCEPTED)
async def retry_task(
    task_id: int,
    body: RetryTaskRequest | None = Body(default=None),
    service: TaskQueueService = Depends(get_task_service),
    ctx: ExecutionContext = Depends(get_execution_context),
):
    reset_attempts = body.reset_attempts if body else False
    task = await service.retry_task(task_id, ctx, reset_attempts=reset_attempts)
    return _task_envelope(task, status_code=status.HTTP_202_ACCEPTED)


@router.post("/recover/stale")
async def recover_stale_tasks(
    service: TaskQueueService = Depends(get_task_service),
    ctx: ExecutionContext = Depends(get_execution_context),
):
    recovered = await service.recover_stale_tasks(ctx)
    return success_envelope({"status": "ok", "recovered": recovered})


@router.post("/cleanup")
async def cleanup_tasks(
    older_than_days: int | None = Query(default=None, ge=0, le=3650),
    service: TaskQueueService = Depends(get_task_service),
    ctx: ExecutionContext = Depends(get_execution_context),
):
    deleted = await service.cleanup(older_than_days, ctx)
    return success_envelope({"status": "ok", "deleted": deleted})
