"""Task queue error taxonomy.

Every error carries a stable snake_case ``code`` that the HTTP layer puts into
the error envelope.
"""

from __future__ import annotations

from typing import Any


class TaskError(Exception):
    code = "task_error"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class TaskNotFoundError(TaskError, LookupError):
    code = "task_not_found"

    def __init__(self, task_id: int) -> None:
        super().__init__(f"Task not found: {task_id}", details={"task_id": task_id})
        self.task_id = task_id


class TaskValidationError(TaskError, ValueError):
    code = "validation_error"


class InvalidTaskTransition(TaskError):
    code = "invalid_state_transition"


class TaskConflictError(TaskError):
    code = "task_conflict"


class TaskPermissionError(TaskError, PermissionError):
    code = "permission_denied"


class TaskTimeoutError(TaskError, TimeoutError):
    code = "task_timeout"

    def __init__(self, timeout_seconds: float) -> None:
        timeout_ms = int(round(timeout_seconds * 1000))
        super().__init__(f"Task timeout after {timeout_ms}ms", details={"timeout_ms": timeout_ms})
        self.timeout_seconds = timeout_seconds
