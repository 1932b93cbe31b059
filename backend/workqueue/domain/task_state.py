from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from workqueue.models.task import TaskStatus


STATE_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.RUNNING, TaskStatus.CANCELLED},
    TaskStatus.RUNNING: {TaskStatus.COMPLETED, TaskStatus.PENDING, TaskStatus.FAILED},
    TaskStatus.FAILED: {TaskStatus.PENDING},
    TaskStatus.CANCELLED: {TaskStatus.PENDING},
    TaskStatus.COMPLETED: set(),
}


@dataclass(slots=True)
class TransitionValidationResult:
    valid: bool
    from_state: TaskStatus
    to_state: TaskStatus
    allowed_targets: list[TaskStatus]


def allowed_targets(from_state: TaskStatus) -> set[TaskStatus]:
    return set(STATE_TRANSITIONS.get(from_state, set()))


def can_transition(from_state: TaskStatus, to_state: TaskStatus) -> bool:
    return to_state in allowed_targets(from_state)


def validate_transition(from_state: TaskStatus, to_state: TaskStatus) -> TransitionValidationResult:
    targets = sorted(allowed_targets(from_state), key=lambda item: item.value)
    return TransitionValidationResult(
        valid=can_transition(from_state, to_state),
        from_state=from_state,
        to_state=to_state,
        allowed_targets=targets,
    )


def validate_path(states: Iterable[TaskStatus]) -> bool:
    sequence = list(states)
    if len(sequence) <= 1:
        return True
    return all(can_transition(sequence[idx], sequence[idx + 1]) for idx in range(0, len(sequence) - 1))
