"""Identifier and clock utilities injected into the idempotency store."""

from __future__ import annotations

import time
import uuid


def new_idempotency_key() -> str:
    """Generate a fresh, collision-free idempotency key (UUID4 string)."""
    return str(uuid.uuid4())


def now_ms() -> int:
    """Return the current wall-clock time in milliseconds since the epoch."""
    return time.time_ns() // 1_000_000
