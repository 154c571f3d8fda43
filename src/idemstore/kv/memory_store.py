"""In-memory key-value store for idempotency records.

Single-process only. Records are held as encoded JSON so reads never
alias caller objects and values behave exactly as they would on disk.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Callable, Iterator

from idemstore.kv.base import (
    CursorEntry,
    KeyValueStore,
    Record,
    Transaction,
    decode_record,
    encode_record,
)

logger = logging.getLogger(__name__)


class InMemoryTransaction(Transaction):
    """Transaction over a private copy of the table.

    Writes are staged on the copy and published by commit().
    """

    def __init__(
        self,
        snapshot: dict[str, str],
        readwrite: bool,
        publish: Callable[[dict[str, str]], None],
    ) -> None:
        super().__init__(readwrite)
        self._data = snapshot
        self._publish = publish

    def get(self, key: str) -> Record | None:
        self._check_active()
        raw = self._data.get(key)
        return None if raw is None else decode_record(raw, key)

    def put(self, key: str, value: Record) -> None:
        self._check_writable()
        self._data[key] = encode_record(value)

    def delete(self, key: str) -> None:
        self._check_writable()
        self._data.pop(key, None)

    def entries(self) -> Iterator[CursorEntry]:
        self._check_active()
        for key in sorted(self._data):
            raw = self._data.get(key)
            if raw is None:
                continue
            yield CursorEntry(key=key, value=decode_record(raw, key), _tx=self)

    def commit(self) -> None:
        self._check_active()
        self.active = False
        if self.readwrite:
            self._publish(self._data)


class InMemoryKeyValueStore(KeyValueStore):
    """Dict-backed key-value store.

    Transactions are serialized by a lock, so a read-write transaction
    is isolated from every other transaction until it commits.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.RLock()
        self._open = False

    @property
    def backend_name(self) -> str:
        return "memory"

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        if not self._open:
            self._open = True
            logger.debug("Opened in-memory idempotency store")

    def close(self) -> None:
        self._open = False

    def _publish(self, data: dict[str, str]) -> None:
        self._data = data

    @contextlib.contextmanager
    def transaction(self, readwrite: bool = False) -> Iterator[InMemoryTransaction]:
        self._check_open()
        with self._lock:
            tx = InMemoryTransaction(dict(self._data), readwrite, self._publish)
            try:
                yield tx
                if tx.active:
                    tx.commit()
            finally:
                tx.active = False

    def count(self) -> int:
        self._check_open()
        with self._lock:
            return len(self._data)
