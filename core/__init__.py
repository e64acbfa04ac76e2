"""Core module for collection-importer."""

from core.models import (
    RecordKind,
    ParsedRecord,
    ParseResult,
    Collection,
    FetchedContent,
    FetchLog,
    ImportResult,
)
from core.config import ImportConfig
from core.errors import ImportErrorCode, ImportFailure

__all__ = [
    "RecordKind",
    "ParsedRecord",
    "ParseResult",
    "Collection",
    "FetchedContent",
    "FetchLog",
    "ImportResult",
    "ImportConfig",
    "ImportErrorCode",
    "ImportFailure",
]
