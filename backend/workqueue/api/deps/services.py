from __future__ import annotations

from fastapi import Header, Request

from workqueue.core.context import ExecutionContext
from workqueue.services.task_queue_service import TaskQueueService


def get_task_service(request: Request) -> TaskQueueService:
    return request.app.state.task_service


async def get_execution_context(x_actor: str | None = Header(default=None)) -> ExecutionContext:
    # The operator surface has no authentication; callers act as admins.
    actor = (x_actor or "").strip()[:128] or "api"
    return ExecutionContext(actor=actor, is_authenticated=True, is_admin=True)
