"""Pydantic schemas."""
from workqueue.schemas.task import (
    EnqueueTaskRequest,
    EnqueueTaskResponse,
    RetryTaskRequest,
    TaskCreate,
    TaskOut,
    TaskStats,
)

__all__ = [
    "EnqueueTaskRequest",
    "EnqueueTaskResponse",
    "RetryTaskRequest",
    "TaskCreate",
    "TaskOut",
    "TaskStats",
]
