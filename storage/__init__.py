"""Storage module."""

from storage.sqlite import SQLiteCollectionStore, SQLiteTransaction

__all__ = ["SQLiteCollectionStore", "SQLiteTransaction"]
