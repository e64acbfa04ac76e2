"""Bounded response-body readers."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

from core.config import ImportConfig
from core.errors import PayloadTooLargeError, UpstreamTimeoutError
from core.structured_logging import emit_json_event


def _too_large(max_bytes: int) -> PayloadTooLargeError:
    megabytes = max_bytes / 1024 / 1024
    return PayloadTooLargeError(f"File too large. Maximum allowed size: {megabytes:g}MB")


def _close_quietly(response: Any) -> None:
    close = getattr(response, "close", None)
    if callable(close):
        close()


def declared_length(response: Any) -> int | None:
    """Return Content-Length as int, or None when absent/malformed."""
    headers = getattr(response, "headers", None) or {}
    raw = headers.get("content-length")
    if raw is None:
        return None
    try:
        value = int(str(raw).strip())
    except ValueError:
        return None
    return value if value >= 0 else None


class BodyReader(ABC):
    """Read a response body without ever accepting more than `max_bytes`."""

    @abstractmethod
    def read(self, response: Any, max_bytes: int, deadline: float | None = None) -> bytes:
        """Return the full body or raise PayloadTooLargeError."""


class _DeadlineWatchdog:
    """
    Abort a streaming read once its deadline passes, even mid-chunk.

    Socket timeouts apply per read, so a server trickling bytes could hold a
    read open far past the deadline. The timer shuts down the read side of
    the socket (urllib3 `HTTPResponse.shutdown`), which wakes the blocked
    read with EOF.
    """

    def __init__(self, response: Any, seconds: float) -> None:
        self.response = response
        self.fired = threading.Event()
        self._timer = threading.Timer(max(seconds, 0.0), self._abort)
        self._timer.daemon = True

    def __enter__(self) -> _DeadlineWatchdog:
        self._timer.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._timer.cancel()
        if self.fired.is_set():
            self._timer.join()

    def _abort(self) -> None:
        self.fired.set()
        shutdown = getattr(getattr(self.response, "raw", None), "shutdown", None)
        if callable(shutdown):
            try:
                shutdown()
            except (ValueError, RuntimeError, OSError):
                # Connection already released or closed by the reader.
                pass
        _close_quietly(self.response)


def _read_timeout() -> UpstreamTimeoutError:
    return UpstreamTimeoutError(
        "Request timed out while reading the file. The server may be slow or unreachable."
    )


class StreamingBodyReader(BodyReader):
    """Consume the body chunk by chunk, aborting as soon as the cap is crossed."""

    def __init__(
        self,
        chunk_size: int = ImportConfig.STREAM_CHUNK_BYTES,
        clock_fn: Callable[[], float] | None = None,
    ) -> None:
        self.chunk_size = chunk_size
        self._clock = clock_fn or time.monotonic

    def read(self, response: Any, max_bytes: int, deadline: float | None = None) -> bytes:
        if deadline is None:
            return self._read_chunks(response, max_bytes, None)

        remaining = deadline - self._clock()
        if remaining <= 0:
            _close_quietly(response)
            raise _read_timeout()

        with _DeadlineWatchdog(response, remaining) as watchdog:
            try:
                body = self._read_chunks(response, max_bytes, deadline)
            except Exception as exc:
                if watchdog.fired.is_set():
                    raise _read_timeout() from exc
                raise
        if watchdog.fired.is_set():
            # The abort can surface as a clean EOF with a truncated body.
            raise _read_timeout()
        return body

    def _read_chunks(self, response: Any, max_bytes: int, deadline: float | None) -> bytes:
        chunks: list[bytes] = []
        total = 0
        for chunk in response.iter_content(chunk_size=self.chunk_size):
            if deadline is not None and self._clock() > deadline:
                _close_quietly(response)
                raise _read_timeout()
            if not chunk:
                continue
            total += len(chunk)
            if total > max_bytes:
                _close_quietly(response)
                raise _too_large(max_bytes)
            chunks.append(chunk)
        return b"".join(chunks)


class BufferedBodyReader(BodyReader):
    """
    Materialize the whole body, then check its size.

    Strictly weaker than streaming: the full payload is in memory before the
    check runs. Every use is logged so operators can spot it in production.
    """

    def read(self, response: Any, max_bytes: int, deadline: float | None = None) -> bytes:
        emit_json_event(
            "bounded_read_buffered_fallback",
            run_id=None,
            component="fetcher",
            level="warning",
            response_type=type(response).__name__,
            max_bytes=max_bytes,
        )
        body = response.content
        if isinstance(body, str):
            body = body.encode("utf-8")
        if len(body) > max_bytes:
            raise _too_large(max_bytes)
        return body


def select_body_reader(response: Any, clock_fn: Callable[[], float] | None = None) -> BodyReader:
    """Pick streaming when the response supports incremental reads."""
    if callable(getattr(response, "iter_content", None)):
        return StreamingBodyReader(clock_fn=clock_fn)
    return BufferedBodyReader()


def read_text_with_limit(
    response: Any,
    max_bytes: int = ImportConfig.MAX_RESPONSE_BYTES,
    deadline: float | None = None,
    clock_fn: Callable[[], float] | None = None,
) -> tuple[str, int]:
    """
    Decode a response body as UTF-8 under a hard byte cap.

    A declared Content-Length above the cap is rejected before any body byte
    is read; a missing or understated one is caught by the running total.

    Args:
        response: requests-style response
        max_bytes: cap on accepted body bytes
        deadline: optional clock value after which streaming aborts
        clock_fn: clock the deadline is measured on (default time.monotonic)

    Returns:
        (text, bytes_received)

    Raises:
        PayloadTooLargeError: declared or actual size exceeds `max_bytes`.
        UpstreamTimeoutError: streaming passed `deadline`.
    """
    length = declared_length(response)
    if length is not None and length > max_bytes:
        _close_quietly(response)
        raise _too_large(max_bytes)

    body = select_body_reader(response, clock_fn).read(response, max_bytes, deadline)
    return body.decode("utf-8", errors="replace"), len(body)
