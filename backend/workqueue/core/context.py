"""Execution context passed to service and store calls."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    actor: str
    is_authenticated: bool = False
    is_admin: bool = False


def system_context(actor: str = "system") -> ExecutionContext:
    """Context for non-human callers (workers, schedulers).

    System callers bypass the operator permission checks.
    """
    return ExecutionContext(actor=actor, is_authenticated=True, is_admin=True)


def anonymous_context() -> ExecutionContext:
    return ExecutionContext(actor="anonymous")
