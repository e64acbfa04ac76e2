"""Tolerant duplicate detection for events and tasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Generic, Iterable, Sequence, TypeVar, Union

from core.config import ImportConfig


def normalize_text(value: str | None) -> str:
    """Trim, collapse internal whitespace, lowercase. None becomes ''."""
    if not value:
        return ""
    return " ".join(value.strip().lower().split())


def _epoch_ms(value: datetime) -> int:
    """Milliseconds since the epoch; naive datetimes are read as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp() * 1000)


def _within(left: datetime, right: datetime, config: "DuplicateConfig") -> bool:
    return abs(_epoch_ms(left) - _epoch_ms(right)) <= config.date_tolerance_ms


@dataclass(frozen=True)
class DuplicateConfig:
    """Matching options. Immutable per call."""

    date_tolerance_ms: int = ImportConfig.DUPLICATE_DATE_TOLERANCE_MS
    use_uid: bool = True
    use_title: bool = True
    use_location: bool = False

    def __post_init__(self) -> None:
        if self.date_tolerance_ms <= 0:
            raise ValueError("date_tolerance_ms must be > 0")


DEFAULT_CONFIG = DuplicateConfig()


@dataclass(frozen=True)
class ComparableRecord:
    """Minimal projection of an event or task used only for matching."""

    id: str
    title: str = ""
    uid: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    due_date: datetime | None = None
    location: str | None = None

    @classmethod
    def from_object(cls, record_id: str, source: Any) -> "ComparableRecord":
        """Project any object exposing the matching attributes."""
        return cls(
            id=record_id,
            title=str(getattr(source, "title", "") or ""),
            uid=getattr(source, "uid", None) or None,
            start_date=getattr(source, "start_date", None),
            end_date=getattr(source, "end_date", None),
            due_date=getattr(source, "due_date", None),
            location=getattr(source, "location", None),
        )

    @property
    def match_date(self) -> datetime | None:
        """Due/end date when present, else the start date."""
        return self.due_date or self.end_date or self.start_date


# ============================================================================
# Bucket keys
# ============================================================================

@dataclass(frozen=True)
class ByUid:
    uid: str


@dataclass(frozen=True)
class ByTitleAndDateBucket:
    title: str
    bucket: int | None  # None: record has no date
    location: str | None = None


@dataclass(frozen=True)
class ByDateBucketOnly:
    bucket: int | None
    location: str | None = None


BucketKey = Union[ByUid, ByTitleAndDateBucket, ByDateBucketOnly]


def bucket_key(record: ComparableRecord, config: DuplicateConfig = DEFAULT_CONFIG) -> BucketKey:
    """
    Group key used to narrow candidate comparisons.

    A uid alone is decisive. Otherwise the key combines the normalized title
    (when enabled), floor(timestamp / tolerance), and the normalized location
    (when enabled).
    """
    if config.use_uid and record.uid:
        return ByUid(record.uid)

    match_date = record.match_date
    bucket = None if match_date is None else _epoch_ms(match_date) // config.date_tolerance_ms
    location = normalize_text(record.location) if config.use_location else None

    if config.use_title:
        return ByTitleAndDateBucket(normalize_text(record.title), bucket, location)
    return ByDateBucketOnly(bucket, location)


def are_duplicates(
    left: ComparableRecord,
    right: ComparableRecord,
    config: DuplicateConfig = DEFAULT_CONFIG,
) -> bool:
    """
    Pairwise check applied within a bucket.

    - both have uids (and use_uid): equal iff uids are equal, nothing else checked
    - titles must match after normalization (use_title)
    - both dated: |d1 - d2| <= tolerance; neither dated: candidates; one dated: no
    - locations must match after normalization (use_location)
    """
    if config.use_uid and left.uid and right.uid:
        return left.uid == right.uid

    if config.use_title and normalize_text(left.title) != normalize_text(right.title):
        return False

    left_date = left.match_date
    right_date = right.match_date
    if left_date is not None and right_date is not None:
        if not _within(left_date, right_date, config):
            return False
    elif left_date is not None or right_date is not None:
        return False

    # Events with equal ends but shifted starts are different occurrences.
    if left.start_date is not None and right.start_date is not None:
        if not _within(left.start_date, right.start_date, config):
            return False

    if config.use_location and normalize_text(left.location) != normalize_text(right.location):
        return False

    return True


# ============================================================================
# Modes
# ============================================================================

R = TypeVar("R", bound=ComparableRecord)


@dataclass(frozen=True)
class DedupResult(Generic[R]):
    """Partition of the input, both lists in original relative order."""

    unique: list[R] = field(default_factory=list)
    duplicates: list[R] = field(default_factory=list)


def deduplicate(records: Sequence[R], config: DuplicateConfig = DEFAULT_CONFIG) -> DedupResult[R]:
    """
    Self-dedup: the first record with a given key is kept; later records with
    an equal key that also pass the pairwise check are duplicates of it.
    """
    first_by_key: dict[BucketKey, R] = {}
    unique: list[R] = []
    duplicates: list[R] = []

    for record in records:
        key = bucket_key(record, config)
        first = first_by_key.get(key)
        if first is not None and are_duplicates(record, first, config):
            duplicates.append(record)
            continue
        if first is None:
            first_by_key[key] = record
        unique.append(record)

    return DedupResult(unique=unique, duplicates=duplicates)


def find_duplicates_against_existing(
    new_records: Sequence[R],
    existing_records: Iterable[ComparableRecord],
    config: DuplicateConfig = DEFAULT_CONFIG,
) -> DedupResult[R]:
    """
    Split `new_records` into those with no match in `existing_records` and
    those matching at least one existing record. Existing records are only
    indexed, never deduplicated among themselves.
    """
    existing_by_key: dict[BucketKey, list[ComparableRecord]] = {}
    for record in existing_records:
        existing_by_key.setdefault(bucket_key(record, config), []).append(record)

    unique: list[R] = []
    duplicates: list[R] = []
    for record in new_records:
        candidates = existing_by_key.get(bucket_key(record, config), [])
        if any(are_duplicates(record, existing, config) for existing in candidates):
            duplicates.append(record)
        else:
            unique.append(record)

    return DedupResult(unique=unique, duplicates=duplicates)


def get_duplicate_ids(
    records: Sequence[ComparableRecord],
    config: DuplicateConfig = DEFAULT_CONFIG,
) -> list[str]:
    """Ids to remove so that only first occurrences remain."""
    return [record.id for record in deduplicate(records, config).duplicates]
