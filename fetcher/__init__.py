"""Fetcher subsystem: URL safety, DNS-pinned HTTP, bounded reads, circuit breaking."""

from fetcher.body import BufferedBodyReader, StreamingBodyReader, read_text_with_limit
from fetcher.circuit import CircuitBreaker, CircuitState
from fetcher.http import PinnedFetcher, ResolvedAddresses, resolve_addresses
from fetcher.logging import emit_fetch_log
from fetcher.urlsafety import (
    ValidationResult,
    assert_valid_external_url,
    validate_external_url,
    validate_ip_address,
)

__all__ = [
    "BufferedBodyReader",
    "StreamingBodyReader",
    "read_text_with_limit",
    "CircuitBreaker",
    "CircuitState",
    "PinnedFetcher",
    "ResolvedAddresses",
    "resolve_addresses",
    "emit_fetch_log",
    "ValidationResult",
    "assert_valid_external_url",
    "validate_external_url",
    "validate_ip_address",
]
