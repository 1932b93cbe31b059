"""Worker task model: the persistent unit of work for the database queue."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from workqueue.core.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every datetime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TaskStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TaskPriority(int, enum.Enum):
    LOW = 1
    NORMAL = 5
    HIGH = 10
    CRITICAL = 20


ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.RUNNING)
TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)
DEFAULT_MAX_ATTEMPTS = 3

_JSONDocument = JSON().with_variant(JSONB(), "postgresql")
_ACTIVE_KEY_PREDICATE = text("idempotency_key IS NOT NULL AND status IN ('PENDING', 'RUNNING')")


class Task(Base):
    __tablename__ = "worker_tasks"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    type = Column(String(50), nullable=False, index=True)
    payload = Column(_JSONDocument, nullable=False, default=dict)
    status = Column(
        Enum(TaskStatus, name="worker_task_status", native_enum=False, length=16),
        nullable=False,
        default=TaskStatus.PENDING,
        index=True,
    )
    priority = Column(Integer, nullable=False, default=int(TaskPriority.NORMAL))
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=DEFAULT_MAX_ATTEMPTS)
    idempotency_key = Column(String(190), nullable=True)
    created_by = Column(String(128), nullable=True)
    scheduled_at = Column(DateTime, nullable=True, index=True)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    error_stack = Column(Text, nullable=True)
    result = Column(_JSONDocument, nullable=True)
    locked_by = Column(String(255), nullable=True, index=True)
    locked_until = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_worker_tasks_pending", "status", "priority", "scheduled_at"),
        Index("ix_worker_tasks_stale", "status", "locked_until"),
        Index("ix_worker_tasks_cleanup", "status", "finished_at"),
        Index(
            "ix_worker_tasks_idempotency_active",
            "idempotency_key",
            unique=True,
            postgresql_where=_ACTIVE_KEY_PREDICATE,
            sqlite_where=_ACTIVE_KEY_PREDICATE,
        ),
    )

    def __repr__(self) -> str:
        return f"<Task id={self.id} type={self.type!r} status={self.status} attempts={self.attempts}/{self.max_attempts}>"
