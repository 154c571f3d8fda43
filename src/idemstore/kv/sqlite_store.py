"""SQLite-backed key-value store for idempotency records.

Records live in one table as JSON text keyed by composite key. The schema
is versioned through ``PRAGMA user_version`` and migrated on open.

Read-write transactions start with ``BEGIN IMMEDIATE`` so SQLite serializes
writers (including concurrent cleanup sweeps) across threads and processes.
Read-only transactions use a deferred ``BEGIN`` for a consistent snapshot.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
from collections.abc import Iterator
from pathlib import Path

from idemstore.config import TABLE_NAME, get_busy_timeout_s, get_db_path
from idemstore.errors import (
    ConcurrencyConflictError,
    FormatError,
    IdempotencyStoreError,
    StorageUnavailableError,
)
from idemstore.kv.base import (
    CursorEntry,
    KeyValueStore,
    Record,
    Transaction,
    decode_record,
    encode_record,
)

logger = logging.getLogger(__name__)

# Ordered schema migrations; index + 1 is the resulting user_version.
_MIGRATIONS: tuple[str, ...] = (
    f"""
    CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    ) WITHOUT ROWID
    """,
)

SCHEMA_VERSION = len(_MIGRATIONS)


def translate_sqlite_error(
    e: sqlite3.Error, action: str, *, key: str | None = None
) -> IdempotencyStoreError:
    """Map a sqlite3 error onto the store error taxonomy."""
    text = str(e).lower()
    if isinstance(e, sqlite3.OperationalError) and ("locked" in text or "busy" in text):
        return ConcurrencyConflictError(f"Failed to {action}: {e}", key=key, cause=e)
    return StorageUnavailableError(f"Failed to {action}: {e}", key=key, cause=e)


class SqliteTransaction(Transaction):
    """Transaction over a single thread-local SQLite connection."""

    _GET_SQL = f"SELECT value FROM {TABLE_NAME} WHERE key = ?"
    _PUT_SQL = f"INSERT OR REPLACE INTO {TABLE_NAME} (key, value) VALUES (?, ?)"
    _DELETE_SQL = f"DELETE FROM {TABLE_NAME} WHERE key = ?"
    _SCAN_SQL = f"SELECT key, value FROM {TABLE_NAME} ORDER BY key"
    _COUNT_SQL = f"SELECT COUNT(*) FROM {TABLE_NAME}"

    def __init__(self, conn: sqlite3.Connection, readwrite: bool) -> None:
        super().__init__(readwrite)
        self._conn = conn

    def get(self, key: str) -> Record | None:
        self._check_active()
        try:
            row = self._conn.execute(self._GET_SQL, (key,)).fetchone()
        except sqlite3.Error as e:
            raise translate_sqlite_error(e, "read idempotency record", key=key) from e
        if row is None:
            return None
        return decode_record(row[0], key)

    def put(self, key: str, value: Record) -> None:
        self._check_writable()
        encoded = encode_record(value)
        try:
            self._conn.execute(self._PUT_SQL, (key, encoded))
        except sqlite3.Error as e:
            raise translate_sqlite_error(e, "write idempotency record", key=key) from e

    def delete(self, key: str) -> None:
        self._check_writable()
        try:
            self._conn.execute(self._DELETE_SQL, (key,))
        except sqlite3.Error as e:
            raise translate_sqlite_error(e, "delete idempotency record", key=key) from e

    def entries(self) -> Iterator[CursorEntry]:
        self._check_active()
        try:
            # Materialize the scan so deletes during iteration cannot disturb it.
            rows = self._conn.execute(self._SCAN_SQL).fetchall()
        except sqlite3.Error as e:
            raise translate_sqlite_error(e, "scan idempotency records") from e
        for key, raw in rows:
            try:
                value = decode_record(raw, key)
            except FormatError:
                logger.warning("Skipping undecodable idempotency record %s", key)
                continue
            yield CursorEntry(key=key, value=value, _tx=self)

    def count(self) -> int:
        self._check_active()
        try:
            return int(self._conn.execute(self._COUNT_SQL).fetchone()[0])
        except sqlite3.Error as e:
            raise translate_sqlite_error(e, "count idempotency records") from e

    def commit(self) -> None:
        self._check_active()
        try:
            self._conn.commit()
        except sqlite3.Error as e:
            raise translate_sqlite_error(e, "commit idempotency transaction") from e
        finally:
            self.active = False

    def rollback(self) -> None:
        self.active = False
        if self._conn.in_transaction:
            with contextlib.suppress(sqlite3.Error):
                self._conn.rollback()


class SqliteKeyValueStore(KeyValueStore):
    """SQLite-backed key-value store with thread-safe access.

    Each thread gets its own connection, so blocking calls dispatched
    through ``asyncio.to_thread`` never share a connection. Creates the
    database and parent directories on open. Uses WAL mode for better
    concurrent read performance.

    Environment:
        IDEMSTORE_DB_PATH: Path to SQLite database file.
            Default: ./var/idempotency/idempotency.sqlite3
        IDEMSTORE_BUSY_TIMEOUT_S: Lock wait before a conflict is reported.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        *,
        busy_timeout_s: float | None = None,
    ) -> None:
        """Initialize the store without touching the filesystem.

        Args:
            db_path: Path to SQLite database file. If None, uses environment
                variable IDEMSTORE_DB_PATH or the default path.
            busy_timeout_s: Seconds to wait on a locked database. If None,
                uses IDEMSTORE_BUSY_TIMEOUT_S or 5 seconds.

        Raises:
            ValueError: If db_path is ":memory:" (use InMemoryKeyValueStore).
        """
        if db_path is None:
            db_path = get_db_path()
        if str(db_path) == ":memory:":
            raise ValueError(
                "SQLite :memory: databases are per-connection; use InMemoryKeyValueStore"
            )

        self._db_path = str(db_path)
        self._busy_timeout_s = get_busy_timeout_s() if busy_timeout_s is None else busy_timeout_s
        self._local = threading.local()
        self._lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._open = False

    @property
    def backend_name(self) -> str:
        return "sqlite"

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def db_path(self) -> str:
        return self._db_path

    def open(self) -> None:
        with self._lock:
            if self._open:
                return
            self._ensure_database()
            self._open = True

    def _ensure_database(self) -> None:
        """Create the database file and migrate the schema.

        Raises:
            StorageUnavailableError: If the database cannot be created.
        """
        try:
            db_path = Path(self._db_path)

            if db_path.is_dir():
                raise StorageUnavailableError(
                    f"Idempotency store path is a directory: {self._db_path}"
                )

            db_path.parent.mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(
                self._db_path, timeout=self._busy_timeout_s, isolation_level=None
            )
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                version = conn.execute("PRAGMA user_version").fetchone()[0]
                if version < SCHEMA_VERSION:
                    conn.execute("BEGIN IMMEDIATE")
                    for statement in _MIGRATIONS[version:]:
                        conn.execute(statement)
                    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
                    conn.commit()
                    logger.info(
                        "Migrated idempotency store schema from v%d to v%d", version, SCHEMA_VERSION
                    )
            finally:
                conn.close()

            logger.info("Opened idempotency store at %s", self._db_path)

        except sqlite3.Error as e:
            raise translate_sqlite_error(e, "initialize idempotency store") from e
        except OSError as e:
            raise StorageUnavailableError(
                f"Failed to create idempotency store directory: {e}", cause=e
            ) from e

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the calling thread's connection.

        Raises:
            StorageUnavailableError: If the store is closed or the
                connection cannot be established.
        """
        self._check_open()

        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    self._db_path,
                    timeout=self._busy_timeout_s,
                    isolation_level=None,
                    check_same_thread=False,
                )
            except sqlite3.Error as e:
                raise translate_sqlite_error(e, "connect to idempotency store") from e
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)

        return conn

    @contextlib.contextmanager
    def transaction(self, readwrite: bool = False) -> Iterator[SqliteTransaction]:
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE" if readwrite else "BEGIN")
        except sqlite3.Error as e:
            raise translate_sqlite_error(e, "begin idempotency transaction") from e

        tx = SqliteTransaction(conn, readwrite)
        try:
            yield tx
            if tx.active:
                tx.commit()
        finally:
            tx.rollback()

    def count(self) -> int:
        with self.transaction() as tx:
            return tx.count()

    def close(self) -> None:
        """Close every connection opened by this store."""
        with self._lock:
            connections, self._connections = self._connections, []
            self._open = False
        for conn in connections:
            with contextlib.suppress(sqlite3.Error):
                conn.close()
        self._local = threading.local()
