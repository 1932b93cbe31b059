from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from workqueue.models.task import TaskPriority, TaskStatus


def _to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class EnqueueTaskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str = Field(..., min_length=1, max_length=50)
    payload: dict[str, Any]
    priority: int = Field(default=int(TaskPriority.NORMAL), ge=1, le=100)
    max_attempts: int | None = Field(default=None, ge=1, le=100)
    scheduled_at: datetime | None = None
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=190)

    @field_validator("type")
    @classmethod
    def _strip_type(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("type must not be blank")
        return value

    @field_validator("scheduled_at")
    @classmethod
    def _normalize_scheduled_at(cls, value: datetime | None) -> datetime | None:
        return _to_naive_utc(value)


class RetryTaskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reset_attempts: bool = False


class TaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus
    priority: int
    attempts: int
    max_attempts: int
    idempotency_key: str | None = None
    created_by: str | None = None
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error_message: str | None = None
    result: dict[str, Any] | None = None
    locked_by: str | None = None
    locked_until: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


TaskCreate = EnqueueTaskRequest


class EnqueueTaskResponse(BaseModel):
    task: TaskOut
    created: bool


class TaskStats(BaseModel):
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0
