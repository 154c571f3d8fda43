"""Client-side idempotency key management.

Issue a key per logical request, cache the response, and replay it on
retry instead of repeating side effects. Records persist in a local
SQLite store with independent expiry for keys and cached responses.
"""

from idemstore.errors import (
    ConcurrencyConflictError,
    FormatError,
    IdempotencyStoreError,
    StorageUnavailableError,
)
from idemstore.kv import (
    InMemoryKeyValueStore,
    KeyValueStore,
    SqliteKeyValueStore,
    open_key_value_store,
)
from idemstore.models import KeyRecord, ResponseRecord
from idemstore.session import IdempotencySession
from idemstore.store import CleanupReport, IdempotencyStore, open_idempotency_store

__all__ = [
    "CleanupReport",
    "ConcurrencyConflictError",
    "FormatError",
    "IdempotencySession",
    "IdempotencyStore",
    "IdempotencyStoreError",
    "InMemoryKeyValueStore",
    "KeyRecord",
    "KeyValueStore",
    "ResponseRecord",
    "SqliteKeyValueStore",
    "StorageUnavailableError",
    "open_idempotency_store",
    "open_key_value_store",
]
