"""Circuit breaker guarding calls to one class of external source."""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Callable, TypeVar

from core.config import ImportConfig
from core.errors import (
    CircuitHalfOpenBusyError,
    CircuitOpenError,
    TooManyConcurrentRequestsError,
)
from core.structured_logging import emit_json_event

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


def counts_as_failure(exc: BaseException) -> bool:
    """
    Default failure predicate.

    Import failures declare whether they are upstream failures; client/input
    errors (unsafe URL, oversized body) are not. Anything else counts.
    """
    return bool(getattr(exc, "upstream_failure", True))


class CircuitBreaker:
    """
    Three-state circuit breaker.

    - CLOSED: calls pass through, up to `max_concurrent` in flight. Counted
      failures accumulate; at `failure_threshold` the circuit opens.
    - OPEN: calls are rejected without running, until more than
      `reset_timeout_seconds` have passed since the last failure; the first
      call after that becomes the HALF_OPEN probe.
    - HALF_OPEN: only the probe may be in flight. Its outcome decides:
      success closes the circuit, a counted failure reopens it.

    Exceptions the predicate does not count are neutral: they propagate
    without touching the failure counter or the state.

    One instance is shared by every request to the same source class; the
    composition root builds it and passes it to call sites.
    """

    def __init__(
        self,
        name: str = "url-import",
        failure_threshold: int = ImportConfig.CIRCUIT_FAILURE_THRESHOLD,
        reset_timeout_seconds: float = ImportConfig.CIRCUIT_RESET_TIMEOUT_SECONDS,
        max_concurrent: int = ImportConfig.CIRCUIT_MAX_CONCURRENT,
        clock_fn: Callable[[], float] | None = None,
        is_failure: Callable[[BaseException], bool] | None = None,
    ) -> None:
        """Initialize thresholds with optional test-time clock hook."""
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if reset_timeout_seconds < 0:
            raise ValueError("reset_timeout_seconds must be >= 0")
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")

        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.max_concurrent = max_concurrent

        self._clock = clock_fn or time.monotonic
        self._is_failure = is_failure or counts_as_failure

        # Guards the scalar counters below; never held while `fn` runs or events print.
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time = 0.0
        self._active_requests = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def active_requests(self) -> int:
        return self._active_requests

    def _transition(self, event_type: str, level: str = "info", **payload: object) -> dict[str, object]:
        """Snapshot a state change; call with the lock held, publish after release."""
        return {
            "event_type": event_type,
            "level": level,
            "state": self._state.value,
            "failures": self._failures,
            **payload,
        }

    def _publish(self, transition: dict[str, object] | None) -> None:
        if transition is None:
            return
        payload = dict(transition)
        event_type = str(payload.pop("event_type"))
        level = str(payload.pop("level"))
        emit_json_event(
            event_type,
            run_id=None,
            component="circuit",
            level=level,
            breaker=self.name,
            **payload,
        )

    def _admit(self) -> None:
        """Apply state rules for a new call and take an in-flight slot."""
        transition = None
        try:
            with self._lock:
                if self._state == CircuitState.OPEN:
                    elapsed = self._clock() - self._last_failure_time
                    if elapsed > self.reset_timeout_seconds:
                        self._state = CircuitState.HALF_OPEN
                        transition = self._transition("circuit_half_open")
                    else:
                        raise CircuitOpenError(
                            "External service is temporarily unavailable. Please try again later."
                        )

                if self._state == CircuitState.HALF_OPEN and self._active_requests > 0:
                    raise CircuitHalfOpenBusyError(
                        "Service recovery in progress. Please try again in a moment."
                    )

                if self._active_requests >= self.max_concurrent:
                    raise TooManyConcurrentRequestsError(
                        "Too many concurrent requests to external service. Please try again."
                    )

                self._active_requests += 1
        finally:
            self._publish(transition)

    def _on_success(self) -> None:
        transition = None
        with self._lock:
            self._failures = 0
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.CLOSED
                transition = self._transition("circuit_closed")
        self._publish(transition)

    def _on_failure(self, exc: BaseException) -> None:
        transition = None
        with self._lock:
            self._failures += 1
            self._last_failure_time = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                transition = self._transition("circuit_reopened", level="warning", error_type=type(exc).__name__)
            elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._state = CircuitState.OPEN
                transition = self._transition("circuit_opened", level="warning", error_type=type(exc).__name__)
        self._publish(transition)

    def _release(self) -> None:
        with self._lock:
            self._active_requests -= 1

    def call(self, fn: Callable[..., T], *args: object, **kwargs: object) -> T:
        """Run `fn(*args, **kwargs)` under circuit-breaker protection."""
        self._admit()
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            if self._is_failure(exc):
                self._on_failure(exc)
            raise
        else:
            self._on_success()
            return result
        finally:
            self._release()

    def reset(self) -> None:
        """Force the circuit closed (admin/testing)."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._last_failure_time = 0.0
            transition = self._transition("circuit_reset")
        self._publish(transition)
