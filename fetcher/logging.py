"""Structured logging helpers for fetch operations."""

from __future__ import annotations

from typing import Any

from core.models import FetchLog
from core.structured_logging import emit_json_event


def fetch_log_to_dict(fetch_log: FetchLog) -> dict[str, Any]:
    """Convert FetchLog to a JSON-safe dictionary."""
    return {
        "fetch_id": fetch_log.id,
        "url": fetch_log.url,
        "pinned_ip": fetch_log.pinned_ip,
        "tls_fallback": fetch_log.tls_fallback,
        "status_code": fetch_log.status_code,
        "latency_ms": fetch_log.latency_ms,
        "bytes_received": fetch_log.bytes_received,
        "error_code": fetch_log.error_code.value if fetch_log.error_code else None,
        "error_reason": fetch_log.error_reason,
        "fetched_at": fetch_log.created_at.isoformat(),
    }


def emit_fetch_log(fetch_log: FetchLog) -> str:
    """Emit one `fetch` event line and return it for testability."""
    return emit_json_event(
        "fetch",
        run_id=fetch_log.run_id,
        component="fetcher",
        level="warning" if fetch_log.error_code else "info",
        **fetch_log_to_dict(fetch_log),
    )
