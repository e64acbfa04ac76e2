"""Structured JSON-line events shared by every importer component."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from core.errors import ImportFailure

_LEVELS = {"debug", "info", "warning", "error"}


def emit_json_event(
    event_type: str,
    *,
    run_id: str | None,
    component: str,
    level: str = "info",
    **payload: Any,
) -> str:
    """Print one JSON event line to stdout and return it for testability."""
    if level not in _LEVELS:
        raise ValueError(f"unknown log level: {level}")
    event: dict[str, Any] = {
        "event_type": event_type,
        "component": component,
        "level": level,
        "timestamp": datetime.now(UTC).isoformat(),
        "run_id": run_id,
    }
    event.update(payload)
    line = json.dumps(event, ensure_ascii=True, sort_keys=True, default=str)
    print(line)
    return line


def error_fields(exc: BaseException) -> dict[str, Any]:
    """Flatten an exception into log fields, keeping import error codes."""
    fields: dict[str, Any] = {
        "error_type": type(exc).__name__,
        "error": str(exc),
    }
    if isinstance(exc, ImportFailure):
        fields["error_code"] = exc.code.value
        fields["error_reason"] = exc.reason
    return fields
