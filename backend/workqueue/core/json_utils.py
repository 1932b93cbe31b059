"""Helpers to keep task payloads and results storable in JSON columns."""

from __future__ import annotations

import enum
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any
from uuid import UUID


def to_json_safe(value: Any) -> Any:
    """Recursively convert a value into plain JSON types."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, enum.Enum):
        return to_json_safe(value.value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, dict):
        return {str(key): to_json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_safe(item) for item in value]
    return str(value)


def json_object(value: Any) -> dict[str, Any]:
    """Return a JSON-safe dict, wrapping non-mapping values under ``value``."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return to_json_safe(value)
    return {"value": to_json_safe(value)}
