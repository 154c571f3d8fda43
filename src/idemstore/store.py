"""Idempotency store: key issuance, response caching, expiry and cleanup.

Records for a request identity live under two composite keys:
``<request_id>::meta`` (KeyRecord) and ``<request_id>::response``
(ResponseRecord). They are written, expired and evicted independently:

- get_key enforces key expiry lazily and clears both records on expiry
- get_response never checks age; stale responses are removed only by
  auto_cleanup (or clear, or an expired-key read)

The store holds no global state. It wraps an explicitly opened
KeyValueStore and runs blocking storage calls via ``asyncio.to_thread``.
Atomicity of multi-record operations comes from storage transactions;
there is no in-process locking here.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, ValidationError

from idemstore.config import DEFAULT_CLEANUP_THRESHOLD_MS, get_cleanup_threshold_ms
from idemstore.errors import FormatError
from idemstore.kv import KeyValueStore, Record, open_key_value_store
from idemstore.models import (
    RECORD_TYPES,
    KeyRecord,
    RecordKind,
    ResponseRecord,
    meta_key,
    response_key,
    split_key,
)
from idemstore.tracing import traced_store_operation
from idemstore.utils import new_idempotency_key, now_ms

if TYPE_CHECKING:
    from idemstore.kv import Transaction
    from idemstore.session import IdempotencySession

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class CleanupReport:
    """Outcome of one auto_cleanup sweep.

    Attributes:
        scanned: Records visited.
        expired_keys: KeyRecords deleted because their expiry passed.
        stale_responses: ResponseRecords deleted because they aged out.
    """

    scanned: int
    expired_keys: int
    stale_responses: int

    @property
    def deleted(self) -> int:
        return self.expired_keys + self.stale_responses

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def _load(model: type[M], raw: Record, key: str) -> M:
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        raise FormatError(f"Stored record is not a valid {model.__name__}: {e}", key=key) from e


class IdempotencyStore:
    """Async service over a KeyValueStore holding idempotency records.

    Args:
        kv: An opened KeyValueStore. The store does not open it, but
            close() and ``async with`` close it.
        id_factory: Produces a fresh unique key per create_key call.
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        id_factory: Callable[[], str] = new_idempotency_key,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._kv = kv
        self._id_factory = id_factory
        self._clock = clock

    @property
    def kv(self) -> KeyValueStore:
        return self._kv

    @property
    def backend_name(self) -> str:
        return self._kv.backend_name

    def session(self, request_id: str) -> IdempotencySession:
        """Return a session bound to ``request_id``."""
        from idemstore.session import IdempotencySession

        return IdempotencySession(request_id, self)

    # ---------- keys ----------

    @traced_store_operation("create_key")
    async def create_key(self, request_id: str, ttl_ms: int | None = None) -> str:
        """Issue a new idempotency key for ``request_id``.

        Any previous key for the request is replaced.

        Args:
            request_id: Request identity.
            ttl_ms: Lifetime in milliseconds. None or 0 means the key never expires.

        Returns:
            The new key.

        Raises:
            StorageUnavailableError: If the write fails.
        """
        return await asyncio.to_thread(self._create_key, request_id, ttl_ms)

    def _create_key(self, request_id: str, ttl_ms: int | None) -> str:
        key = self._id_factory()
        expires_at = self._clock() + ttl_ms if ttl_ms else None
        record = KeyRecord(key=key, expires_at=expires_at)
        self._kv.put(meta_key(request_id), record.to_wire())
        logger.debug("Issued idempotency key for %s (expires_at=%s)", request_id, expires_at)
        return key

    @traced_store_operation("get_key")
    async def get_key(self, request_id: str) -> str | None:
        """Return the live key for ``request_id``, or None.

        If the stored key has expired, both the key and the cached response
        are cleared before returning None.
        """
        return await asyncio.to_thread(self._get_key, request_id)

    def _get_key(self, request_id: str) -> str | None:
        key = meta_key(request_id)
        raw = self._kv.get(key)
        if raw is None:
            return None
        record = _load(KeyRecord, raw, key)
        if not record.is_expired(self._clock()):
            return record.key

        with self._kv.transaction(readwrite=True) as tx:
            # Re-read under the write lock; another writer may have replaced the key.
            raw = tx.get(key)
            if raw is None:
                return None
            current = _load(KeyRecord, raw, key)
            if not current.is_expired(self._clock()):
                return current.key
            self._clear_in(tx, request_id)
        logger.debug("Idempotency key for %s expired; cleared", request_id)
        return None

    # ---------- responses ----------

    @traced_store_operation("save_response")
    async def save_response(self, request_id: str, response_data: Any) -> None:
        """Cache ``response_data`` for ``request_id``, replacing any previous one.

        Raises:
            TypeError: If the payload is not JSON-serializable.
        """
        await asyncio.to_thread(self._save_response, request_id, response_data)

    def _save_response(self, request_id: str, response_data: Any) -> None:
        record = ResponseRecord(response_data=response_data, saved_at=self._clock())
        self._kv.put(response_key(request_id), record.to_wire())
        logger.debug("Saved response for %s", request_id)

    @traced_store_operation("get_response")
    async def get_response(self, request_id: str) -> Any | None:
        """Return the cached response for ``request_id``, or None.

        Response age is not checked here.
        """
        return await asyncio.to_thread(self._get_response, request_id)

    def _get_response(self, request_id: str) -> Any | None:
        key = response_key(request_id)
        raw = self._kv.get(key)
        if raw is None:
            return None
        return _load(ResponseRecord, raw, key).response_data

    # ---------- clearing ----------

    @traced_store_operation("clear")
    async def clear(self, request_id: str) -> None:
        """Delete the key and cached response for ``request_id`` atomically."""
        await asyncio.to_thread(self._clear, request_id)

    def _clear(self, request_id: str) -> None:
        with self._kv.transaction(readwrite=True) as tx:
            self._clear_in(tx, request_id)

    @staticmethod
    def _clear_in(tx: Transaction, request_id: str) -> None:
        tx.delete(meta_key(request_id))
        tx.delete(response_key(request_id))

    # ---------- export / import ----------

    @traced_store_operation("export_store", scoped=False)
    async def export_store(self) -> str:
        """Snapshot every record in the table as a JSON object.

        Returns:
            JSON text mapping composite key to record.
        """
        return await asyncio.to_thread(self._export_store)

    def _export_store(self) -> str:
        with self._kv.transaction() as tx:
            snapshot = {entry.key: entry.value for entry in tx.entries()}
        logger.debug("Exported %d idempotency records", len(snapshot))
        return json.dumps(snapshot)

    @traced_store_operation("import_store", scoped=False)
    async def import_store(self, blob: str) -> int:
        """Write every record in ``blob`` into the table in one transaction.

        Records already at those composite keys are overwritten; other
        records are left untouched.

        Returns:
            Number of records written.

        Raises:
            FormatError: If the blob is not a JSON object of composite keys
                to valid records. Nothing is written in that case.
        """
        return await asyncio.to_thread(self._import_store, blob)

    def _import_store(self, blob: str) -> int:
        records = parse_export(blob)
        with self._kv.transaction(readwrite=True) as tx:
            for key, value in records.items():
                tx.put(key, value)
        logger.debug("Imported %d idempotency records", len(records))
        return len(records)

    # ---------- cleanup ----------

    @traced_store_operation("auto_cleanup", scoped=False)
    async def auto_cleanup(self, threshold_ms: int | None = None) -> CleanupReport:
        """Sweep expired keys and aged responses in one transaction.

        Args:
            threshold_ms: Maximum response age in milliseconds. If None, uses
                IDEMSTORE_CLEANUP_THRESHOLD_MS or 7 days.

        Returns:
            CleanupReport with counts of deleted records.
        """
        if threshold_ms is None:
            threshold_ms = get_cleanup_threshold_ms()
        return await asyncio.to_thread(self._auto_cleanup, threshold_ms)

    def _auto_cleanup(self, threshold_ms: int) -> CleanupReport:
        now = self._clock()
        scanned = expired_keys = stale_responses = 0

        with self._kv.transaction(readwrite=True) as tx:
            for entry in tx.entries():
                scanned += 1
                try:
                    _, kind = split_key(entry.key)
                except FormatError:
                    continue

                try:
                    if kind is RecordKind.META:
                        if KeyRecord.model_validate(entry.value).is_expired(now):
                            entry.delete()
                            expired_keys += 1
                    elif ResponseRecord.model_validate(entry.value).is_stale(now, threshold_ms):
                        entry.delete()
                        stale_responses += 1
                except ValidationError:
                    logger.warning(
                        "Skipping malformed idempotency record %s during cleanup", entry.key
                    )

        report = CleanupReport(
            scanned=scanned, expired_keys=expired_keys, stale_responses=stale_responses
        )
        logger.info(
            "Idempotency cleanup: scanned=%d expired_keys=%d stale_responses=%d",
            report.scanned,
            report.expired_keys,
            report.stale_responses,
        )
        return report

    # ---------- lifecycle ----------

    def close(self) -> None:
        """Close the underlying KeyValueStore."""
        self._kv.close()

    async def __aenter__(self) -> IdempotencyStore:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await asyncio.to_thread(self.close)


def parse_export(blob: str) -> dict[str, Record]:
    """Parse and validate an export blob.

    Records at ``::meta`` and ``::response`` keys must match their kind.
    Rows under any other key are carried through unchanged as long as they
    are JSON objects, so an export of a table holding foreign rows can be
    restored.

    Returns:
        Mapping of composite key to record in wire form.

    Raises:
        FormatError: If the blob or any record in it is malformed.
    """
    try:
        data = json.loads(blob)
    except (TypeError, ValueError) as e:
        raise FormatError(f"Import payload is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise FormatError("Import payload must be a JSON object of composite keys to records")

    records: dict[str, Record] = {}
    for key, value in data.items():
        try:
            _, kind = split_key(key)
        except FormatError:
            if not isinstance(value, dict):
                raise FormatError("Record is not a JSON object", key=key) from None
            records[key] = value
            continue
        model = RECORD_TYPES[kind]
        try:
            records[key] = model.model_validate(value).to_wire()
        except ValidationError as e:
            raise FormatError(f"Invalid {kind.value} record: {e}", key=key) from e
    return records


def open_idempotency_store(
    db_path: str | Path | None = None,
    *,
    in_memory: bool = False,
    id_factory: Callable[[], str] = new_idempotency_key,
    clock: Callable[[], int] = now_ms,
) -> IdempotencyStore:
    """Open a KeyValueStore and wrap it in an IdempotencyStore.

    Args:
        db_path: Path to SQLite database. If None, uses environment
            variable IDEMSTORE_DB_PATH or the default path.
        in_memory: If True, use a process-local in-memory store.
        id_factory: Key generator.
        clock: Millisecond clock.

    Raises:
        StorageUnavailableError: If the store cannot be opened.
    """
    kv = open_key_value_store(db_path, in_memory=in_memory)
    return IdempotencyStore(kv, id_factory=id_factory, clock=clock)


__all__ = [
    "DEFAULT_CLEANUP_THRESHOLD_MS",
    "CleanupReport",
    "IdempotencyStore",
    "open_idempotency_store",
    "parse_export",
]
