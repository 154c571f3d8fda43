"""Pytest configuration and fixtures for idemstore tests.

Provides a controllable clock, deterministic key factory, and key-value
stores for both backends.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine, Iterator
from pathlib import Path
from typing import Any, TypeVar

import pytest

from idemstore.config import (
    IDEMSTORE_BUSY_TIMEOUT_ENV,
    IDEMSTORE_CLEANUP_THRESHOLD_ENV,
    IDEMSTORE_DB_PATH_ENV,
    IDEMSTORE_OTEL_ENABLED_ENV,
)
from idemstore.kv import InMemoryKeyValueStore, KeyValueStore, SqliteKeyValueStore
from idemstore.store import IdempotencyStore

T = TypeVar("T")


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def set(self, now: int) -> None:
        self.now = now

    def advance(self, ms: int) -> None:
        self.now += ms


class SequentialIds:
    """Key factory returning key-1, key-2, ..."""

    def __init__(self) -> None:
        self.issued = 0

    def __call__(self) -> str:
        self.issued += 1
        return f"key-{self.issued}"


def run(coro: Coroutine[Any, Any, T]) -> T:
    """Drive a coroutine to completion from a sync test."""
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def clean_idemstore_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer environment variables out of tests."""
    for name in (
        IDEMSTORE_DB_PATH_ENV,
        IDEMSTORE_BUSY_TIMEOUT_ENV,
        IDEMSTORE_CLEANUP_THRESHOLD_ENV,
        IDEMSTORE_OTEL_ENABLED_ENV,
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ids() -> SequentialIds:
    return SequentialIds()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "idem" / "idempotency.sqlite3"


@pytest.fixture(params=["memory", "sqlite"])
def kv(request: pytest.FixtureRequest, db_path: Path) -> Iterator[KeyValueStore]:
    """An opened key-value store, once per backend."""
    store: KeyValueStore
    if request.param == "memory":
        store = InMemoryKeyValueStore()
    else:
        store = SqliteKeyValueStore(db_path)
    store.open()
    yield store
    store.close()


@pytest.fixture
def store(kv: KeyValueStore, clock: FakeClock, ids: SequentialIds) -> IdempotencyStore:
    """IdempotencyStore over each backend with a fake clock and sequential keys."""
    return IdempotencyStore(kv, id_factory=ids, clock=clock)
