"""Tests for bounded response-body reads."""

from __future__ import annotations

import threading
import time

import pytest

from core.errors import PayloadTooLargeError, UpstreamTimeoutError
from fetcher.body import (
    BufferedBodyReader,
    StreamingBodyReader,
    declared_length,
    read_text_with_limit,
    select_body_reader,
)


class StreamingResponse:
    """Response exposing iter_content; records how many chunks were pulled."""

    def __init__(self, body: bytes, headers: dict[str, str] | None = None, chunk: int = 4) -> None:
        self._body = body
        self.headers = headers or {}
        self._chunk = chunk
        self.pulled = 0
        self.closed = False

    def iter_content(self, chunk_size: int = 8192):
        for index in range(0, len(self._body), self._chunk):
            self.pulled += 1
            yield self._body[index : index + self._chunk]

    def close(self) -> None:
        self.closed = True


class BufferedResponse:
    """Response without incremental reads."""

    def __init__(self, body: bytes, headers: dict[str, str] | None = None) -> None:
        self.content = body
        self.headers = headers or {}


@pytest.mark.integration
def test_body_at_cap_is_accepted():
    response = StreamingResponse(b"x" * 16)
    text, received = read_text_with_limit(response, max_bytes=16)
    assert text == "x" * 16
    assert received == 16


@pytest.mark.integration
def test_body_one_byte_over_cap_is_rejected():
    response = StreamingResponse(b"x" * 17)
    with pytest.raises(PayloadTooLargeError):
        read_text_with_limit(response, max_bytes=16)
    assert response.closed is True


@pytest.mark.integration
def test_declared_length_over_cap_rejected_before_reading():
    response = StreamingResponse(b"small", headers={"content-length": "999"})
    with pytest.raises(PayloadTooLargeError):
        read_text_with_limit(response, max_bytes=16)
    assert response.pulled == 0
    assert response.closed is True


@pytest.mark.integration
def test_understated_length_caught_by_running_total():
    response = StreamingResponse(b"y" * 40, headers={"content-length": "4"})
    with pytest.raises(PayloadTooLargeError):
        read_text_with_limit(response, max_bytes=16)
    # Aborted once the fifth 4-byte chunk crossed the cap, not at the end.
    assert response.pulled == 5


@pytest.mark.integration
def test_invalid_utf8_is_replaced_not_raised():
    response = StreamingResponse(b"ok\xff\xfe")
    text, received = read_text_with_limit(response, max_bytes=100)
    assert text.startswith("ok")
    assert "\ufffd" in text
    assert received == 4


@pytest.mark.integration
@pytest.mark.parametrize(
    ("headers", "expected"),
    [({}, None), ({"content-length": "12"}, 12), ({"content-length": "abc"}, None), ({"content-length": "-1"}, None)],
)
def test_declared_length_parsing(headers, expected):
    assert declared_length(BufferedResponse(b"", headers)) == expected


@pytest.mark.integration
def test_buffered_fallback_is_selected_and_logged(capsys, parse_json_lines):
    response = BufferedResponse(b"hello")
    assert isinstance(select_body_reader(response), BufferedBodyReader)

    text, received = read_text_with_limit(response, max_bytes=10)

    assert (text, received) == ("hello", 5)
    events = parse_json_lines(capsys.readouterr().out)
    assert [event["event_type"] for event in events] == ["bounded_read_buffered_fallback"]
    assert events[0]["level"] == "warning"


@pytest.mark.integration
def test_buffered_fallback_still_enforces_cap():
    with pytest.raises(PayloadTooLargeError):
        read_text_with_limit(BufferedResponse(b"z" * 11), max_bytes=10)


@pytest.mark.integration
def test_streaming_reader_selected_when_available():
    assert isinstance(select_body_reader(StreamingResponse(b"")), StreamingBodyReader)


@pytest.mark.integration
def test_streaming_deadline_aborts_slow_body():
    ticks = iter([0.0, 5.0, 31.0, 40.0])
    reader = StreamingBodyReader(chunk_size=4, clock_fn=lambda: next(ticks))
    response = StreamingResponse(b"a" * 20)

    with pytest.raises(UpstreamTimeoutError):
        reader.read(response, max_bytes=100, deadline=30.0)
    assert response.closed is True


@pytest.mark.integration
def test_too_large_message_names_the_limit():
    response = StreamingResponse(b"", headers={"content-length": str(6 * 1024 * 1024)})
    with pytest.raises(PayloadTooLargeError) as excinfo:
        read_text_with_limit(response, max_bytes=5 * 1024 * 1024)
    assert str(excinfo.value) == "File too large. Maximum allowed size: 5MB"


class ShutdownableRaw:
    """Stands in for urllib3's HTTPResponse.shutdown()."""

    def __init__(self) -> None:
        self.shut_down = threading.Event()

    def shutdown(self) -> None:
        self.shut_down.set()


class StalledResponse:
    """Sends one byte, then blocks until its socket is shut down."""

    def __init__(self) -> None:
        self.headers: dict[str, str] = {}
        self.raw = ShutdownableRaw()
        self.closed = False

    def iter_content(self, chunk_size: int = 8192):
        yield b"x"
        self.raw.shut_down.wait(timeout=5)
        raise ConnectionError("connection shut down")

    def close(self) -> None:
        self.closed = True


@pytest.mark.integration
def test_deadline_interrupts_a_stalled_read():
    response = StalledResponse()
    start = time.monotonic()

    with pytest.raises(UpstreamTimeoutError):
        StreamingBodyReader().read(response, max_bytes=100, deadline=start + 0.2)

    assert response.raw.shut_down.is_set()
    assert response.closed is True
    assert time.monotonic() - start < 2.0


@pytest.mark.integration
def test_expired_deadline_rejects_before_reading():
    response = StreamingResponse(b"abc")
    reader = StreamingBodyReader(clock_fn=lambda: 50.0)
    with pytest.raises(UpstreamTimeoutError):
        reader.read(response, max_bytes=100, deadline=10.0)
    assert response.pulled == 0
