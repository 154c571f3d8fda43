"""Key-value store interface for idempotency records.

A KeyValueStore is a durable ordered map over a single logical table,
addressed by string keys and holding JSON-object records. Multi-record
operations run inside a Transaction whose writes commit atomically.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any

from idemstore.errors import FormatError, IdempotencyStoreError, StorageUnavailableError

Record = dict[str, Any]


def encode_record(value: Record) -> str:
    """Serialize a record for storage.

    Raises:
        TypeError: If the record is not JSON-serializable.
    """
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def decode_record(raw: str, key: str | None = None) -> Record:
    """Deserialize a stored record.

    Raises:
        FormatError: If the stored text is not a JSON object.
    """
    try:
        value = json.loads(raw)
    except ValueError as e:
        raise FormatError(f"Stored record is not valid JSON: {e}", key=key) from e
    if not isinstance(value, dict):
        raise FormatError(
            f"Stored record is not a JSON object: {type(value).__name__}", key=key
        )
    return value


@dataclass
class CursorEntry:
    """One (key, record) pair yielded by Transaction.entries().

    Calling delete() removes the record; the deletion commits with the
    enclosing transaction.
    """

    key: str
    value: Record
    _tx: Transaction = field(repr=False)

    def delete(self) -> None:
        self._tx.delete(self.key)


class Transaction(ABC):
    """A unit of work over the table.

    Read-write transactions commit when the enclosing ``with`` block exits
    cleanly or when commit() is called, and roll back if the block raises.
    """

    def __init__(self, readwrite: bool) -> None:
        self.readwrite = readwrite
        self.active = True

    def _check_active(self) -> None:
        if not self.active:
            raise IdempotencyStoreError("Transaction already finished")

    def _check_writable(self) -> None:
        self._check_active()
        if not self.readwrite:
            raise IdempotencyStoreError("Cannot write in a read-only transaction")

    @abstractmethod
    def get(self, key: str) -> Record | None:
        """Return the record at ``key`` or None if absent."""
        ...

    @abstractmethod
    def put(self, key: str, value: Record) -> None:
        """Overwrite the record at ``key``."""
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete the record at ``key``. No-op if absent."""
        ...

    @abstractmethod
    def entries(self) -> Iterator[CursorEntry]:
        """Iterate every record in key order.

        The sequence is finite. Entries may be deleted while iterating.
        Rows whose stored value cannot be decoded are logged and skipped.
        """
        ...

    @abstractmethod
    def commit(self) -> None:
        """Commit pending writes and finish the transaction."""
        ...


class KeyValueStore(ABC):
    """Abstract base class for idempotency record storage backends.

    Lifecycle is explicit: open() before use, close() when done. Both
    are idempotent and the store is usable as a context manager.

    Implementations:
    - SqliteKeyValueStore: durable local SQLite file (default)
    - InMemoryKeyValueStore: process-local dict (tests, ephemeral use)
    """

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the backend identifier for observability."""
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool: ...

    @abstractmethod
    def open(self) -> None:
        """Open the store, creating or migrating the schema if needed.

        Raises:
            StorageUnavailableError: If the storage cannot be opened.
        """
        ...

    @abstractmethod
    def close(self) -> None:
        """Release all resources held by the store."""
        ...

    @abstractmethod
    def transaction(self, readwrite: bool = False) -> AbstractContextManager[Transaction]:
        """Start a transaction.

        Args:
            readwrite: If False the transaction rejects writes.

        Raises:
            StorageUnavailableError: If the store is closed or inaccessible.
            ConcurrencyConflictError: If the engine cannot acquire a lock.
        """
        ...

    def _check_open(self) -> None:
        if not self.is_open:
            raise StorageUnavailableError(f"{self.backend_name} store is not open")

    def get(self, key: str) -> Record | None:
        with self.transaction() as tx:
            return tx.get(key)

    def put(self, key: str, value: Record) -> None:
        with self.transaction(readwrite=True) as tx:
            tx.put(key, value)

    def delete(self, key: str) -> None:
        with self.transaction(readwrite=True) as tx:
            tx.delete(key)

    def count(self) -> int:
        """Return the number of records in the table."""
        with self.transaction() as tx:
            return sum(1 for _ in tx.entries())

    def __enter__(self) -> KeyValueStore:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
