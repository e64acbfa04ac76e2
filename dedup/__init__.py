"""Duplicate detection for imported events and tasks."""

from dedup.matching import (
    ByDateBucketOnly,
    ByTitleAndDateBucket,
    ByUid,
    ComparableRecord,
    DedupResult,
    DuplicateConfig,
    are_duplicates,
    bucket_key,
    deduplicate,
    find_duplicates_against_existing,
    get_duplicate_ids,
)

__all__ = [
    "ByUid",
    "ByTitleAndDateBucket",
    "ByDateBucketOnly",
    "ComparableRecord",
    "DedupResult",
    "DuplicateConfig",
    "are_duplicates",
    "bucket_key",
    "deduplicate",
    "find_duplicates_against_existing",
    "get_duplicate_ids",
]
