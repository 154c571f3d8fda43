"""Environment-driven configuration for the idempotency store.

Environment Variables:
    IDEMSTORE_DB_PATH: Path to the SQLite database file.
        Default: ./var/idempotency/idempotency.sqlite3
    IDEMSTORE_BUSY_TIMEOUT_S: Seconds SQLite waits on a locked database
        before reporting a conflict (default: 5.0)
    IDEMSTORE_CLEANUP_THRESHOLD_MS: Age after which cached responses are
        swept by auto_cleanup (default: 7 days)
    IDEMSTORE_OTEL_ENABLED: Set to "1" to emit OpenTelemetry spans
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)

IDEMSTORE_DB_PATH_ENV = "IDEMSTORE_DB_PATH"
IDEMSTORE_BUSY_TIMEOUT_ENV = "IDEMSTORE_BUSY_TIMEOUT_S"
IDEMSTORE_CLEANUP_THRESHOLD_ENV = "IDEMSTORE_CLEANUP_THRESHOLD_MS"
IDEMSTORE_OTEL_ENABLED_ENV = "IDEMSTORE_OTEL_ENABLED"

DEFAULT_DB_PATH = "./var/idempotency/idempotency.sqlite3"
DEFAULT_BUSY_TIMEOUT_S = 5.0
DEFAULT_CLEANUP_THRESHOLD_MS = 7 * 24 * 60 * 60 * 1000

TABLE_NAME = "idempotency_keys"


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean from environment variable."""
    val = os.environ.get(key, "").strip().lower()
    if val in ("1", "true", "yes"):
        return True
    if val in ("0", "false", "no", ""):
        return default
    return default


def _get_env_number(key: str, default: float) -> float:
    raw = os.environ.get(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", key, raw, default)
        return default
    if value < 0:
        logger.warning("Ignoring negative %s=%r, using %s", key, raw, default)
        return default
    return value


def get_db_path() -> str:
    """Return the configured SQLite database path."""
    return os.environ.get(IDEMSTORE_DB_PATH_ENV, DEFAULT_DB_PATH)


def get_busy_timeout_s() -> float:
    """Return how long SQLite waits on a locked database, in seconds."""
    return _get_env_number(IDEMSTORE_BUSY_TIMEOUT_ENV, DEFAULT_BUSY_TIMEOUT_S)


def get_cleanup_threshold_ms() -> int:
    """Return the default response age threshold for auto_cleanup."""
    return int(_get_env_number(IDEMSTORE_CLEANUP_THRESHOLD_ENV, DEFAULT_CLEANUP_THRESHOLD_MS))


def is_otel_enabled() -> bool:
    """Check if OpenTelemetry tracing is enabled."""
    return _get_env_bool(IDEMSTORE_OTEL_ENABLED_ENV, False)
