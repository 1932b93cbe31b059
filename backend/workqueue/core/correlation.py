"""Per-request identifiers shared by the API middleware and the envelope meta."""

from __future__ import annotations

from contextvars import ContextVar, Token
from dataclasses import dataclass
from uuid import uuid4


@dataclass(frozen=True, slots=True)
class RequestScope:
    request_id: str = ""
    actor: str = ""


_scope: ContextVar[RequestScope] = ContextVar("workqueue_request_scope", default=RequestScope())


def new_request_id() -> str:
    return f"req-{uuid4().hex[:16]}"


def bind_request(request_id: str, actor: str | None = None) -> Token:
    return _scope.set(RequestScope(request_id=request_id or "", actor=(actor or "").strip()[:128]))


def reset_request(token: Token) -> None:
    _scope.reset(token)


def get_request_id() -> str:
    return _scope.get().request_id


def get_request_actor() -> str:
    return _scope.get().actor
