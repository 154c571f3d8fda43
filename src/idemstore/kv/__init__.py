"""Key-value storage backends for idempotency records.

Backends:
- SqliteKeyValueStore: durable local SQLite file (default)
- InMemoryKeyValueStore: process-local dict (tests, ephemeral use)
"""

from __future__ import annotations

from pathlib import Path

from idemstore.kv.base import CursorEntry, KeyValueStore, Record, Transaction
from idemstore.kv.memory_store import InMemoryKeyValueStore
from idemstore.kv.sqlite_store import SqliteKeyValueStore


def open_key_value_store(
    db_path: str | Path | None = None,
    *,
    in_memory: bool = False,
) -> KeyValueStore:
    """Create and open a key-value store.

    Args:
        db_path: Path to SQLite database. If None, uses environment
            variable IDEMSTORE_DB_PATH or the default path.
        in_memory: If True, return an InMemoryKeyValueStore instead.

    Returns:
        An opened KeyValueStore. The caller owns it and must close() it.

    Raises:
        StorageUnavailableError: If the store cannot be opened.
    """
    store: KeyValueStore = InMemoryKeyValueStore() if in_memory else SqliteKeyValueStore(db_path)
    store.open()
    return store


__all__ = [
    "CursorEntry",
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "Record",
    "SqliteKeyValueStore",
    "Transaction",
    "open_key_value_store",
]
