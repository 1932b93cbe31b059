"""Models package."""
from workqueue.models.task import (
    ACTIVE_STATUSES,
    DEFAULT_MAX_ATTEMPTS,
    TERMINAL_STATUSES,
    Task,
    TaskPriority,
    TaskStatus,
    utcnow,
)

__all__ = [
    "ACTIVE_STATUSES",
    "DEFAULT_MAX_ATTEMPTS",
    "TERMINAL_STATUSES",
    "Task",
    "TaskPriority",
    "TaskStatus",
    "utcnow",
]
