"""
Import pipeline for collection-importer.

Defines the collaborator contracts and the orchestrator that composes:
circuit breaker → DNS-pinned fetcher → bounded reader → parser →
duplicate detection → persistence (quota check + writes in one transaction).

This is intentionally strict:
- No fetch bypasses the circuit breaker
- No retries (sustained failures are the breaker's concern)
- Stored URLs are re-validated on every refresh
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import UTC, datetime
from typing import Any, Callable, Optional
from uuid import uuid4

from core.config import ImportConfig
from core.errors import (
    CollectionNotFoundError,
    ImportFailure,
    MissingSourceUrlError,
    PayloadTooLargeError,
    QuotaExceededError,
    UnparseableContentError,
)
from core.models import Collection, FetchedContent, ImportResult, ParsedRecord, ParseResult
from core.structured_logging import emit_json_event, error_fields
from dedup.matching import (
    ComparableRecord,
    DuplicateConfig,
    deduplicate,
    find_duplicates_against_existing,
    get_duplicate_ids,
)
from fetcher.circuit import CircuitBreaker
from fetcher.http import PinnedFetcher
from fetcher.urlsafety import assert_valid_external_url


# ============================================================================
# Collaborator Interfaces
# ============================================================================

class RecordParser(ABC):
    """
    Parser collaborator: raw calendar/task text → records + warnings.

    Must not raise on malformed input; problems are reported as warnings.
    """

    @abstractmethod
    def parse(self, text: str) -> ParseResult:
        """
        Parse decoded file content.

        Returns:
            ParseResult with every record that could be read and one warning
            per problem encountered.
        """
        pass


class CollectionTransaction(ABC):
    """
    Operations available inside one atomic persistence transaction.

    Everything done through one instance commits together or not at all.
    """

    @abstractmethod
    def count_collections(self, owner_id: str) -> int:
        pass

    @abstractmethod
    def count_records(self, collection_id: str) -> int:
        pass

    @abstractmethod
    def list_records(self, collection_id: str) -> list[ComparableRecord]:
        """Current records of a collection, projected for matching."""
        pass

    @abstractmethod
    def create_collection(
        self,
        owner_id: str,
        name: str,
        source_url: Optional[str],
        last_synced_at: Optional[datetime],
    ) -> Collection:
        pass

    @abstractmethod
    def create_record(self, collection_id: str, record: ParsedRecord) -> str:
        """Insert one record and return its id."""
        pass

    @abstractmethod
    def delete_all_records(self, collection_id: str) -> int:
        pass

    @abstractmethod
    def delete_records(self, collection_id: str, record_ids: list[str]) -> int:
        pass

    @abstractmethod
    def update_last_synced(self, collection_id: str, synced_at: datetime) -> None:
        pass


class CollectionStore(ABC):
    """Persistence collaborator."""

    @abstractmethod
    def get_collection(self, collection_id: str) -> Optional[Collection]:
        pass

    @abstractmethod
    def transaction(self) -> AbstractContextManager[CollectionTransaction]:
        """
        Open one atomic transaction.

        Implementations must serialize concurrent writers so a count taken
        inside the transaction still holds when the transaction commits.
        """
        pass


# ============================================================================
# Orchestrator
# ============================================================================

def _comparable_new_records(records: list[ParsedRecord]) -> list[ComparableRecord]:
    """Project parsed records with positional ids ("new-<index>")."""
    return [
        ComparableRecord.from_object(f"new-{index}", record)
        for index, record in enumerate(records)
    ]


def _select_by_ids(records: list[ParsedRecord], kept: list[ComparableRecord]) -> list[ParsedRecord]:
    indices = {int(item.id.split("-", 1)[1]) for item in kept}
    return [record for index, record in enumerate(records) if index in indices]


class ImportPipeline:
    """
    Main orchestrator for URL/file imports into collections.

    Usage:
        breaker = CircuitBreaker(name="url-import")
        pipeline = ImportPipeline(parser, store, PinnedFetcher(), breaker)
        result = pipeline.refresh_from_url(collection_id)

    The breaker is shared by reference: build one per external-source class
    at the composition root and hand the same instance to every pipeline.
    """

    def __init__(
        self,
        parser: RecordParser,
        store: CollectionStore,
        fetcher: PinnedFetcher,
        breaker: CircuitBreaker,
        max_collections_per_owner: int = ImportConfig.MAX_COLLECTIONS_PER_OWNER,
        max_records_per_collection: int = ImportConfig.MAX_RECORDS_PER_COLLECTION,
        max_content_bytes: int = ImportConfig.MAX_RESPONSE_BYTES,
        first_import_timeout_seconds: float = ImportConfig.FIRST_IMPORT_TIMEOUT_SECONDS,
        refresh_timeout_seconds: float = ImportConfig.REFRESH_TIMEOUT_SECONDS,
        duplicate_config: DuplicateConfig | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize collaborators and limits."""
        self.parser = parser
        self.store = store
        self.fetcher = fetcher
        self.breaker = breaker
        self.max_collections_per_owner = max_collections_per_owner
        self.max_records_per_collection = max_records_per_collection
        self.max_content_bytes = max_content_bytes
        self.first_import_timeout_seconds = first_import_timeout_seconds
        self.refresh_timeout_seconds = refresh_timeout_seconds
        self.duplicate_config = duplicate_config or DuplicateConfig(
            date_tolerance_ms=ImportConfig.DUPLICATE_DATE_TOLERANCE_MS,
            use_uid=True,
            use_title=True,
        )
        self._now = now_fn or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _emit(event_type: str, *, run_id: str, operation: str, level: str = "info", **payload: Any) -> None:
        emit_json_event(
            event_type,
            run_id=run_id,
            component="pipeline",
            level=level,
            operation=operation,
            **payload,
        )

    def _run(self, operation: str, body: Callable[[str], ImportResult], **context: Any) -> ImportResult:
        """Run one operation with start/complete/failed events."""
        run_id = str(uuid4())
        self._emit("import_started", run_id=run_id, operation=operation, **context)
        try:
            result = body(run_id)
        except ImportFailure as exc:
            self._emit("import_failed", run_id=run_id, operation=operation, level="warning",
                       **context, **error_fields(exc))
            raise
        except Exception as exc:
            self._emit("import_failed", run_id=run_id, operation=operation, level="error",
                       **context, **error_fields(exc))
            raise ImportFailure(f"Unexpected import failure: {exc}") from exc

        summary = {
            **context,
            "collection_id": result.collection_id,
            "imported_count": result.imported_count,
            "skipped_duplicates": result.skipped_duplicates,
            "deleted_count": result.deleted_count,
            "warning_count": len(result.warnings),
        }
        self._emit("import_completed", run_id=run_id, operation=operation, **summary)
        return result

    def _check_content_size(self, size: int) -> None:
        """`size` is in bytes: UTF-8 length for pasted text, wire length for fetched bodies."""
        if size > self.max_content_bytes:
            limit_mb = self.max_content_bytes / 1024 / 1024
            raise PayloadTooLargeError(
                f"File too large. Maximum allowed size: {limit_mb:g}MB. "
                f"Current size: {size / 1024 / 1024:.2f}MB"
            )

    def _parse(self, content: str) -> ParseResult:
        """Parse content; zero records with errors is a hard failure."""
        result = self.parser.parse(content)
        if result.warnings and not result.records:
            raise UnparseableContentError(
                f"Unable to parse file: {', '.join(result.warnings)}"
            )
        return result

    def _fetch(self, url: str, timeout_seconds: float, run_id: str) -> FetchedContent:
        return self.breaker.call(self.fetcher.fetch, url, timeout_seconds, run_id=run_id)

    def _require_collection(self, collection_id: str) -> Collection:
        collection = self.store.get_collection(collection_id)
        if collection is None:
            raise CollectionNotFoundError(f"Collection not found: {collection_id}")
        return collection

    def _check_collection_quota(self, current: int) -> None:
        if current >= self.max_collections_per_owner:
            raise QuotaExceededError(
                f"Collection limit reached: {self.max_collections_per_owner} per owner"
            )

    def _check_record_quota(self, current: int, incoming: int) -> None:
        if current + incoming > self.max_records_per_collection:
            raise QuotaExceededError(
                f"Record limit reached: {current} existing + {incoming} new exceeds "
                f"{self.max_records_per_collection} per collection"
            )

    def _filter_existing(
        self,
        records: list[ParsedRecord],
        existing: list[ComparableRecord],
    ) -> tuple[list[ParsedRecord], int]:
        """Drop parsed records that duplicate existing ones (uid first)."""
        outcome = find_duplicates_against_existing(
            _comparable_new_records(records),
            existing,
            self.duplicate_config,
        )
        return _select_by_ids(records, outcome.unique), len(outcome.duplicates)

    def _write_records(
        self,
        records: list[ParsedRecord],
        collection_id: str,
        *,
        skip_existing: bool,
        replace_all: bool = False,
        synced_at: Optional[datetime] = None,
    ) -> ImportResult:
        """
        Quota check and writes for an existing collection, atomically.
        """
        with self.store.transaction() as tx:
            deleted = tx.delete_all_records(collection_id) if replace_all else 0

            skipped = 0
            if skip_existing and not replace_all:
                records, skipped = self._filter_existing(records, tx.list_records(collection_id))

            self._check_record_quota(tx.count_records(collection_id), len(records))
            for record in records:
                tx.create_record(collection_id, record)
            if synced_at is not None:
                tx.update_last_synced(collection_id, synced_at)

        return ImportResult(
            imported_count=len(records),
            skipped_duplicates=skipped,
            deleted_count=deleted,
            collection_id=collection_id,
        )

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    def create_collection(self, owner_id: str, name: str) -> ImportResult:
        """Create an empty collection, subject to the per-owner quota."""
        def body(run_id: str) -> ImportResult:
            with self.store.transaction() as tx:
                self._check_collection_quota(tx.count_collections(owner_id))
                collection = tx.create_collection(
                    owner_id=owner_id,
                    name=name,
                    source_url=None,
                    last_synced_at=None,
                )
            return ImportResult(collection_id=collection.id)

        return self._run("create_collection", body, owner_id=owner_id)

    def import_into_collection(
        self,
        collection_id: str,
        content: str,
        remove_duplicates: bool = False,
    ) -> ImportResult:
        """
        Import already-uploaded file content into an existing collection.

        Raises:
            CollectionNotFoundError, PayloadTooLargeError,
            UnparseableContentError, QuotaExceededError
        """
        def body(run_id: str) -> ImportResult:
            self._require_collection(collection_id)
            self._check_content_size(len(content.encode("utf-8")))
            parsed = self._parse(content)
            result = self._write_records(
                parsed.records,
                collection_id,
                skip_existing=remove_duplicates,
            )
            result.warnings = list(parsed.warnings)
            return result

        return self._run(
            "import_into_collection",
            body,
            collection_id=collection_id,
            remove_duplicates=remove_duplicates,
        )

    def import_from_url(
        self,
        url: str,
        owner_id: str,
        name: Optional[str] = None,
        remove_duplicates: bool = False,
    ) -> ImportResult:
        """
        Fetch a URL and create a new collection from it, storing the URL
        for later refresh.

        Raises:
            UnsafeUrlError (before any network call), QuotaExceededError,
            circuit/upstream failures, PayloadTooLargeError,
            UnparseableContentError
        """
        def body(run_id: str) -> ImportResult:
            assert_valid_external_url(url)

            # Cheap pre-check so a full account does not spend a fetch;
            # the authoritative check runs again inside the transaction.
            with self.store.transaction() as tx:
                self._check_collection_quota(tx.count_collections(owner_id))

            fetched = self._fetch(url, self.first_import_timeout_seconds, run_id)
            self._check_content_size(fetched.bytes_received)
            text = fetched.text
            parsed = self._parse(text)

            records = parsed.records
            skipped = 0
            if remove_duplicates:
                outcome = deduplicate(_comparable_new_records(records), self.duplicate_config)
                records = _select_by_ids(records, outcome.unique)
                skipped = len(outcome.duplicates)

            synced_at = self._now()
            with self.store.transaction() as tx:
                self._check_collection_quota(tx.count_collections(owner_id))
                self._check_record_quota(0, len(records))
                collection = tx.create_collection(
                    owner_id=owner_id,
                    name=name or f"Imported - {synced_at.strftime('%Y-%m-%d')}",
                    source_url=url,
                    last_synced_at=synced_at,
                )
                for record in records:
                    tx.create_record(collection.id, record)

            return ImportResult(
                imported_count=len(records),
                skipped_duplicates=skipped,
                warnings=list(parsed.warnings),
                collection_id=collection.id,
            )

        return self._run("import_from_url", body, url=url, owner_id=owner_id)

    def refresh_from_url(
        self,
        collection_id: str,
        replace_all: bool = False,
        skip_duplicates: bool = True,
    ) -> ImportResult:
        """
        Re-fetch a collection's stored source URL and merge the records.

        The stored URL is validated again on every call. With `replace_all`,
        existing records are deleted in the same transaction that inserts the
        new ones, and only after the fetch and parse succeeded.
        """
        def body(run_id: str) -> ImportResult:
            collection = self._require_collection(collection_id)
            if not collection.source_url:
                raise MissingSourceUrlError(
                    "This collection has no source URL. It cannot be refreshed."
                )
            assert_valid_external_url(collection.source_url)

            fetched = self._fetch(collection.source_url, self.refresh_timeout_seconds, run_id)
            self._check_content_size(fetched.bytes_received)
            text = fetched.text
            parsed = self._parse(text)

            result = self._write_records(
                parsed.records,
                collection_id,
                skip_existing=skip_duplicates,
                replace_all=replace_all,
                synced_at=self._now(),
            )
            result.warnings = list(parsed.warnings)
            return result

        return self._run(
            "refresh_from_url",
            body,
            collection_id=collection_id,
            replace_all=replace_all,
            skip_duplicates=skip_duplicates,
        )

    def clean_duplicates(self, collection_id: str) -> ImportResult:
        """Delete every duplicate in a collection except its first occurrence."""
        def body(run_id: str) -> ImportResult:
            self._require_collection(collection_id)
            with self.store.transaction() as tx:
                duplicate_ids = get_duplicate_ids(
                    tx.list_records(collection_id),
                    self.duplicate_config,
                )
                deleted = tx.delete_records(collection_id, duplicate_ids) if duplicate_ids else 0
            return ImportResult(deleted_count=deleted, collection_id=collection_id)

        return self._run("clean_duplicates", body, collection_id=collection_id)
