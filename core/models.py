"""
Core Pydantic models for collection-importer.

Design principles:
- Parser and persistence collaborators exchange these models, never raw dicts
- Network results carry enough context for an audit line (pinned IP, fallback)
- Matching uses a smaller frozen projection (dedup.matching.ComparableRecord)
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Optional, List
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from core.errors import ImportErrorCode


def _utc_now() -> datetime:
    return datetime.now(UTC)


# ============================================================================
# Enums
# ============================================================================

class RecordKind(str, Enum):
    """What kind of entry a parsed record came from."""
    EVENT = "event"  # VEVENT
    TASK = "task"  # VTODO


# ============================================================================
# Parser boundary
# ============================================================================

class ParsedRecord(BaseModel):
    """
    One event or task produced by the parser collaborator.

    Only the fields the importer needs for matching and storage are modelled;
    the parser is free to drop everything else.
    """
    kind: RecordKind = RecordKind.EVENT

    uid: Optional[str] = None
    title: str = ""

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None  # events
    due_date: Optional[datetime] = None  # tasks

    location: Optional[str] = None
    description: Optional[str] = None

    @field_validator("uid", "location")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        """Treat empty identifiers/locations as absent."""
        if v is not None and not v.strip():
            return None
        return v


class ParseResult(BaseModel):
    """
    Result of parsing raw calendar/task text.

    records + warnings is a soft success; no records + warnings is a failure.
    """
    records: List[ParsedRecord] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ============================================================================
# Persistence boundary
# ============================================================================

class Collection(BaseModel):
    """A calendar or task list owned by one user."""
    id: str = Field(default_factory=lambda: str(uuid4()))
    owner_id: str
    name: str

    # Stored for refresh; re-validated on every use.
    source_url: Optional[str] = None
    last_synced_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=_utc_now)


# ============================================================================
# Fetch
# ============================================================================

class FetchedContent(BaseModel):
    """Decoded body of a successful, size-capped fetch."""
    url: str  # URL as requested by the caller
    final_url: str  # URL actually sent on the wire (IP-pinned where possible)
    status_code: int
    text: str
    bytes_received: int

    pinned_ip: Optional[str] = None
    tls_fallback: bool = False  # True when the hostname retry was used

    latency_ms: int = 0


class FetchLog(BaseModel):
    """
    Log entry for a single fetch attempt (success or failure).
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    url: str

    pinned_ip: Optional[str] = None
    tls_fallback: bool = False

    status_code: Optional[int] = None  # HTTP status
    latency_ms: Optional[int] = None
    bytes_received: Optional[int] = None

    error_code: Optional[ImportErrorCode] = None
    error_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=_utc_now)
    run_id: Optional[str] = None


# ============================================================================
# Import
# ============================================================================

class ImportResult(BaseModel):
    """
    Outcome of one import/refresh invocation.

    Warnings come straight from the parser and are never dropped.
    """
    imported_count: int = 0
    skipped_duplicates: int = 0
    deleted_count: int = 0
    warnings: List[str] = Field(default_factory=list)

    # Set when the operation created or targeted a collection.
    collection_id: Optional[str] = None
