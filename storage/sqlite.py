"""SQLite persistence for collections and their records."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterator, Optional
from uuid import uuid4

from core.models import Collection, ParsedRecord
from core.pipeline import CollectionStore, CollectionTransaction
from core.structured_logging import emit_json_event
from dedup.matching import ComparableRecord


def _utc_now() -> datetime:
    """Return timezone-aware UTC timestamp."""
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse ISO datetime string into datetime, preserving None."""
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _row_to_collection(row: sqlite3.Row) -> Collection:
    return Collection(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        name=str(row["name"]),
        source_url=row["source_url"],
        last_synced_at=_parse_iso_datetime(row["last_synced_at"]),
        created_at=_parse_iso_datetime(row["created_at"]) or _utc_now(),
    )


class SQLiteTransaction(CollectionTransaction):
    """Operations bound to one open `BEGIN IMMEDIATE` transaction."""

    def __init__(self, connection: sqlite3.Connection) -> None:
        self.connection = connection

    def count_collections(self, owner_id: str) -> int:
        row = self.connection.execute(
            "SELECT COUNT(*) AS n FROM collections WHERE owner_id = ?",
            (owner_id,),
        ).fetchone()
        return int(row["n"])

    def count_records(self, collection_id: str) -> int:
        row = self.connection.execute(
            "SELECT COUNT(*) AS n FROM records WHERE collection_id = ?",
            (collection_id,),
        ).fetchone()
        return int(row["n"])

    def list_records(self, collection_id: str) -> list[ComparableRecord]:
        """Records in insertion order, so the oldest copy is the first occurrence."""
        rows = self.connection.execute(
            """
            SELECT id, uid, title, start_date, end_date, due_date, location
            FROM records
            WHERE collection_id = ?
            ORDER BY rowid
            """,
            (collection_id,),
        ).fetchall()
        return [
            ComparableRecord(
                id=str(row["id"]),
                uid=row["uid"],
                title=str(row["title"] or ""),
                start_date=_parse_iso_datetime(row["start_date"]),
                end_date=_parse_iso_datetime(row["end_date"]),
                due_date=_parse_iso_datetime(row["due_date"]),
                location=row["location"],
            )
            for row in rows
        ]

    def create_collection(
        self,
        owner_id: str,
        name: str,
        source_url: Optional[str],
        last_synced_at: Optional[datetime],
    ) -> Collection:
        collection = Collection(
            owner_id=owner_id,
            name=name,
            source_url=source_url,
            last_synced_at=last_synced_at,
        )
        self.connection.execute(
            """
            INSERT INTO collections (id, owner_id, name, source_url, last_synced_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                collection.id,
                collection.owner_id,
                collection.name,
                collection.source_url,
                _iso(collection.last_synced_at),
                collection.created_at.isoformat(),
            ),
        )
        return collection

    def create_record(self, collection_id: str, record: ParsedRecord) -> str:
        record_id = str(uuid4())
        self.connection.execute(
            """
            INSERT INTO records (
                id, collection_id, kind, uid, title, start_date, end_date,
                due_date, location, description, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record_id,
                collection_id,
                record.kind.value,
                record.uid,
                record.title,
                _iso(record.start_date),
                _iso(record.end_date),
                _iso(record.due_date),
                record.location,
                record.description,
                _utc_now().isoformat(),
            ),
        )
        return record_id

    def delete_all_records(self, collection_id: str) -> int:
        cursor = self.connection.execute(
            "DELETE FROM records WHERE collection_id = ?",
            (collection_id,),
        )
        return int(cursor.rowcount)

    def delete_records(self, collection_id: str, record_ids: list[str]) -> int:
        if not record_ids:
            return 0
        placeholders = ",".join(["?"] * len(record_ids))
        cursor = self.connection.execute(
            f"DELETE FROM records WHERE collection_id = ? AND id IN ({placeholders})",
            [collection_id, *record_ids],
        )
        return int(cursor.rowcount)

    def update_last_synced(self, collection_id: str, synced_at: datetime) -> None:
        self.connection.execute(
            "UPDATE collections SET last_synced_at = ? WHERE id = ?",
            (synced_at.isoformat(), collection_id),
        )


class SQLiteCollectionStore(CollectionStore):
    """
    Persist collections and records to SQLite.

    Writers take the database write lock up front (`BEGIN IMMEDIATE`), so a
    quota count read inside `transaction()` cannot be invalidated by another
    writer before commit.
    """

    def __init__(self, db_path: str | Path, initialize: bool = True, busy_timeout_seconds: float = 30.0) -> None:
        """Initialize store and optionally apply the schema."""
        self.db_path = Path(db_path)
        self.busy_timeout_seconds = busy_timeout_seconds
        if initialize:
            self.initialize_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        # Autocommit mode: transactions are opened explicitly below.
        connection = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_seconds,
            isolation_level=None,
        )
        connection.row_factory = sqlite3.Row
        try:
            connection.execute("PRAGMA foreign_keys = ON")
            yield connection
        finally:
            connection.close()

    def initialize_schema(self) -> None:
        """Apply initial migration schema (idempotent)."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        migration_path = Path(__file__).resolve().parent / "migrations" / "0001_init.sql"
        sql = migration_path.read_text(encoding="utf-8")
        with self._connect() as connection:
            connection.executescript(sql)

    def get_collection(self, collection_id: str) -> Optional[Collection]:
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT id, owner_id, name, source_url, last_synced_at, created_at
                FROM collections
                WHERE id = ?
                """,
                (collection_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_collection(row)

    def list_collections(self, owner_id: str) -> list[Collection]:
        """All collections of one owner, oldest first."""
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT id, owner_id, name, source_url, last_synced_at, created_at
                FROM collections
                WHERE owner_id = ?
                ORDER BY created_at, rowid
                """,
                (owner_id,),
            ).fetchall()
        return [_row_to_collection(row) for row in rows]

    @contextmanager
    def transaction(self) -> Iterator[SQLiteTransaction]:
        """Commit on normal exit, roll back on any exception."""
        with self._connect() as connection:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield SQLiteTransaction(connection)
            except BaseException as exc:
                connection.execute("ROLLBACK")
                emit_json_event(
                    "storage_transaction_rolled_back",
                    run_id=None,
                    component="storage",
                    level="warning",
                    db_path=str(self.db_path),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            connection.execute("COMMIT")
