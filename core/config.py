"""
Default import configuration for collection-importer.

These settings are IMMUTABLE at runtime and intended to keep URL imports
from turning into an SSRF vector or a memory/connection sink.

Design: everything defaults to "safe + fail fast". Retries are a non-goal;
sustained upstream failures are absorbed by the circuit breaker instead.

Components take these values as constructor defaults, so tests can pass
tighter limits without touching this class.
"""

from typing import Set


class ImportConfig:
    """
    Immutable import settings.

    Grouped by the component that consumes them.
    """

    # ========================================================================
    # URL Safety
    # ========================================================================

    ALLOWED_PROTOCOLS: Set[str] = {"http", "https"}
    """Only HTTP(S) allowed."""

    # Exact hostnames (and their subdomains) that are never fetched.
    BLOCKED_HOSTNAMES: tuple[str, ...] = (
        "localhost",
        "127.0.0.1",
        "0.0.0.0",
        "::1",
        "::",
        "metadata.google.internal",
        "metadata.google",
        "169.254.169.254",      # AWS/GCP/Azure metadata
        "169.254.170.2",        # AWS ECS task metadata
        "fd00:ec2::254",        # AWS IPv6 metadata
    )
    """Loopback names and cloud metadata endpoints."""

    BLOCKED_HOST_SUFFIXES: tuple[str, ...] = (".localhost", ".local")
    """Hostname suffixes that always resolve to the local network."""

    BLOCKED_IPV4_RANGES: list[str] = [
        "10.0.0.0/8",           # Private
        "172.16.0.0/12",        # Private
        "192.168.0.0/16",       # Private
        "127.0.0.0/8",          # Loopback
        "0.0.0.0/8",            # This network
        "169.254.0.0/16",       # Link-local (metadata services)
    ]
    """IPv4 ranges that cannot be fetched (SSRF prevention)."""

    BLOCKED_IPV6_RANGES: list[str] = [
        "::1/128",              # Loopback
        "::/128",               # Unspecified
        "fe80::/10",            # Link-local
        "fc00::/7",             # Unique local addresses (ULA)
    ]
    """IPv6 ranges that cannot be fetched (SSRF prevention)."""

    # ========================================================================
    # Fetch Constraints
    # ========================================================================

    MAX_RESPONSE_BYTES: int = 5 * 1024 * 1024
    """Hard cap on response bodies and pasted file content (5 MiB)."""

    FIRST_IMPORT_TIMEOUT_SECONDS: float = 30.0
    """Deadline for the fetch behind a first-time import."""

    REFRESH_TIMEOUT_SECONDS: float = 60.0
    """Deadline for the fetch behind a refresh of a stored source URL."""

    STREAM_CHUNK_BYTES: int = 8192
    """Chunk size for incremental body reads."""

    ACCEPT_HEADER: str = "text/calendar, application/calendar+xml, */*"

    USER_AGENT: str = "collection-importer/0.1 (+calendar and task list import)"
    """Fixed service User-Agent."""

    # ========================================================================
    # Circuit Breaker
    # ========================================================================

    CIRCUIT_FAILURE_THRESHOLD: int = 5
    """Counted upstream failures before the circuit opens."""

    CIRCUIT_RESET_TIMEOUT_SECONDS: float = 60.0
    """Cooldown before an open circuit lets one probe through."""

    CIRCUIT_MAX_CONCURRENT: int = 10
    """Max in-flight fetches through one breaker."""

    # ========================================================================
    # Quotas
    # ========================================================================

    MAX_COLLECTIONS_PER_OWNER: int = 100
    """Max calendars/task lists one owner may hold."""

    MAX_RECORDS_PER_COLLECTION: int = 10000
    """Max events/tasks in one collection."""

    # ========================================================================
    # Duplicate Detection
    # ========================================================================

    DUPLICATE_DATE_TOLERANCE_MS: int = 60000
    """Dates closer than this are considered the same instant (1 minute)."""

    @classmethod
    def validate(cls) -> None:
        """
        Validate configuration at startup.

        Raises:
            AssertionError: If any constraint is violated.
        """
        assert cls.ALLOWED_PROTOCOLS <= {"http", "https"}, "only http(s) may be allowed"

        assert cls.MAX_RESPONSE_BYTES > 0, "MAX_RESPONSE_BYTES must be > 0"

        assert (
            cls.FIRST_IMPORT_TIMEOUT_SECONDS > 0 and cls.REFRESH_TIMEOUT_SECONDS > 0
        ), "fetch timeouts must be > 0"

        assert (
            cls.FIRST_IMPORT_TIMEOUT_SECONDS <= cls.REFRESH_TIMEOUT_SECONDS
        ), "first import must not wait longer than a refresh"

        assert cls.CIRCUIT_FAILURE_THRESHOLD >= 1, "CIRCUIT_FAILURE_THRESHOLD must be ≥1"

        assert cls.CIRCUIT_RESET_TIMEOUT_SECONDS >= 0, "CIRCUIT_RESET_TIMEOUT_SECONDS must be ≥0"

        assert cls.CIRCUIT_MAX_CONCURRENT >= 1, "CIRCUIT_MAX_CONCURRENT must be ≥1"

        assert (
            cls.MAX_COLLECTIONS_PER_OWNER >= 1 and cls.MAX_RECORDS_PER_COLLECTION >= 1
        ), "quotas must be ≥1"

        assert cls.DUPLICATE_DATE_TOLERANCE_MS > 0, "DUPLICATE_DATE_TOLERANCE_MS must be > 0"


# Validate at module import time
ImportConfig.validate()
