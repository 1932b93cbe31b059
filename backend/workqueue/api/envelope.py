from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

from workqueue.core.correlation import get_request_actor, get_request_id
from workqueue.core.json_utils import to_json_safe
from workqueue.models.task import utcnow


def response_meta(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "request_id": get_request_id() or None,
        "actor": get_request_actor() or None,
        "timestamp": utcnow().isoformat() + "Z",
    }
    meta.update(extra or {})
    return meta


def _envelope(
    status_code: int,
    *,
    data: Any = None,
    error: dict[str, Any] | None = None,
    meta: dict[str, Any] | None = None,
) -> JSONResponse:
    body = {
        "ok": error is None,
        "data": to_json_safe(data),
        "error": error,
        "meta": response_meta(meta),
    }
    return JSONResponse(status_code=status_code, content=body)


def success_envelope(data: Any, *, status_code: int = 200, meta: dict[str, Any] | None = None) -> JSONResponse:
    return _envelope(status_code, data=data, meta=meta)


def error_envelope(
    *,
    code: str,
    message: str,
    status_code: int = 400,
    details: Any = None,
    meta: dict[str, Any] | None = None,
) -> JSONResponse:
    """Error response; ``details`` is coerced to plain JSON (enums, datetimes)."""
    error = {"code": code, "message": message, "details": to_json_safe(details)}
    return _envelope(status_code, error=error, meta=meta)
