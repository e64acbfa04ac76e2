"""
Error taxonomy for URL imports.

Three classes of failure, kept distinct all the way to the caller:

- client/input errors: unsafe URL, oversized payload, unparseable content.
  Reported immediately, never retried, never counted by the circuit breaker.
- upstream failures: timeouts, 5xx, unreachable hosts. Counted by the
  circuit breaker.
- resource/contention errors: quota exceeded, circuit open, recovery probe
  in flight, concurrency limit. Each has its own reason string.
"""

from __future__ import annotations

from enum import Enum


class ImportErrorCode(str, Enum):
    """Error surface exposed at the orchestrator boundary."""

    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    TIMEOUT = "TIMEOUT"
    INTERNAL = "INTERNAL"


class ImportFailure(Exception):
    """Base class for every failure an import operation can report."""

    code: ImportErrorCode = ImportErrorCode.INTERNAL
    reason: str = "internal_error"
    upstream_failure: bool = False

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason

    def to_dict(self) -> dict[str, str]:
        """Serialize for structured logs and CLI output."""
        return {
            "code": self.code.value,
            "reason": self.reason,
            "message": self.message,
        }


# ============================================================================
# Client / input errors
# ============================================================================

class UnsafeUrlError(ImportFailure):
    """URL rejected by SSRF validation (before or after DNS resolution)."""

    code = ImportErrorCode.BAD_REQUEST
    reason = "unsafe_url"


class PayloadTooLargeError(ImportFailure):
    """Response body or pasted content exceeds the byte cap."""

    code = ImportErrorCode.BAD_REQUEST
    reason = "payload_too_large"


class UnparseableContentError(ImportFailure):
    """Parser produced zero records and at least one error."""

    code = ImportErrorCode.BAD_REQUEST
    reason = "unparseable_content"


class MissingSourceUrlError(ImportFailure):
    """Refresh requested for a collection without a stored source URL."""

    code = ImportErrorCode.BAD_REQUEST
    reason = "missing_source_url"


class CollectionNotFoundError(ImportFailure):
    code = ImportErrorCode.NOT_FOUND
    reason = "collection_not_found"


# ============================================================================
# Resource / contention errors
# ============================================================================

class QuotaExceededError(ImportFailure):
    code = ImportErrorCode.FORBIDDEN
    reason = "quota_exceeded"


class CircuitOpenError(ImportFailure):
    """The external source class is failing; calls are short-circuited."""

    code = ImportErrorCode.FORBIDDEN
    reason = "circuit_open"


class CircuitHalfOpenBusyError(ImportFailure):
    """A recovery probe is already in flight."""

    code = ImportErrorCode.FORBIDDEN
    reason = "recovery_in_progress"


class TooManyConcurrentRequestsError(ImportFailure):
    code = ImportErrorCode.FORBIDDEN
    reason = "too_many_requests"


# ============================================================================
# Upstream failures
# ============================================================================

class UpstreamTimeoutError(ImportFailure):
    code = ImportErrorCode.TIMEOUT
    reason = "upstream_timeout"
    upstream_failure = True


class UpstreamUnreachableError(ImportFailure):
    code = ImportErrorCode.INTERNAL
    reason = "upstream_unreachable"
    upstream_failure = True


class UpstreamHttpError(ImportFailure):
    """
    Non-2xx response from the remote source.

    Only 5xx responses count as upstream failures; 404 maps to NOT_FOUND and
    every other status to BAD_REQUEST.
    """

    def __init__(self, status_code: int, url: str) -> None:
        self.status_code = status_code
        if status_code == 404:
            message = f"Source URL not found (404). The file at {url} is no longer available."
        else:
            message = f"Unable to retrieve file: HTTP {status_code}"
        super().__init__(message, reason=f"upstream_http_{status_code}")

    @property
    def code(self) -> ImportErrorCode:  # type: ignore[override]
        if self.status_code == 404:
            return ImportErrorCode.NOT_FOUND
        if self.status_code >= 500:
            return ImportErrorCode.INTERNAL
        return ImportErrorCode.BAD_REQUEST

    @property
    def upstream_failure(self) -> bool:  # type: ignore[override]
        return self.status_code >= 500
