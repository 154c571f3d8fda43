"""Tests for IdempotencyStore key and response lifecycle.

Tests cover:
A) create_key / get_key roundtrip and overwrite semantics
B) Lazy expiry on get_key clears both records
C) get_response returns payloads unchanged and ignores key expiry
D) clear removes both records and tolerates absence
"""

from __future__ import annotations

import pytest
from conftest import FakeClock, SequentialIds, run

from idemstore.errors import FormatError
from idemstore.kv import KeyValueStore
from idemstore.store import IdempotencyStore, open_idempotency_store
from idemstore.utils import new_idempotency_key


class TestKeys:
    """Tests for key issuance and lookup."""

    def test_create_then_get_returns_same_key(self, store: IdempotencyStore) -> None:
        key = run(store.create_key("req1"))

        assert key == "key-1"
        assert run(store.get_key("req1")) == key

    def test_get_key_absent_returns_none(self, store: IdempotencyStore) -> None:
        assert run(store.get_key("never-created")) is None

    def test_second_create_replaces_first(self, store: IdempotencyStore) -> None:
        """Two sequential create_key calls give distinct keys; only the second survives."""
        first = run(store.create_key("req1"))
        second = run(store.create_key("req1"))

        assert first != second
        assert run(store.get_key("req1")) == second

    def test_key_without_ttl_never_expires(
        self, store: IdempotencyStore, clock: FakeClock
    ) -> None:
        key = run(store.create_key("req1"))
        clock.advance(10 * 365 * 24 * 60 * 60 * 1000)

        assert run(store.get_key("req1")) == key

    def test_zero_ttl_means_no_expiry(self, store: IdempotencyStore, clock: FakeClock) -> None:
        key = run(store.create_key("req1", 0))
        clock.advance(1_000_000)

        assert run(store.get_key("req1")) == key

    def test_stored_record_shape(
        self, store: IdempotencyStore, kv: KeyValueStore, clock: FakeClock
    ) -> None:
        run(store.create_key("req1", 1000))

        assert kv.get("req1::meta") == {"key": "key-1", "expiresAt": clock.now + 1000}

    def test_request_ids_are_independent(self, store: IdempotencyStore) -> None:
        a = run(store.create_key("req-a"))
        b = run(store.create_key("req-b"))

        assert run(store.get_key("req-a")) == a
        assert run(store.get_key("req-b")) == b

    def test_request_id_containing_separator(self, store: IdempotencyStore) -> None:
        key = run(store.create_key("tenant::order::42"))

        assert run(store.get_key("tenant::order::42")) == key

    def test_default_key_factory_produces_unique_keys(self, kv: KeyValueStore) -> None:
        store = IdempotencyStore(kv)
        keys = {run(store.create_key(f"req-{i}")) for i in range(20)}

        assert len(keys) == 20
        assert new_idempotency_key() not in keys


class TestLazyExpiry:
    """Tests for expiry enforcement on get_key."""

    def test_expiry_scenario(self, kv: KeyValueStore, ids: SequentialIds) -> None:
        """create at t=0 with ttl 1000; live at t=500, gone at t=1500."""
        clock = FakeClock(now=0)
        store = IdempotencyStore(kv, id_factory=ids, clock=clock)

        k1 = run(store.create_key("req1", 1000))

        clock.set(500)
        assert run(store.get_key("req1")) == k1

        clock.set(1500)
        assert run(store.get_key("req1")) is None
        assert run(store.get_response("req1")) is None

    def test_key_live_at_exact_expiry(self, store: IdempotencyStore, clock: FakeClock) -> None:
        key = run(store.create_key("req1", 1000))
        clock.advance(1000)

        assert run(store.get_key("req1")) == key

    def test_expired_read_clears_response(
        self, store: IdempotencyStore, kv: KeyValueStore, clock: FakeClock
    ) -> None:
        run(store.create_key("req1", 1000))
        run(store.save_response("req1", {"status": 201}))
        clock.advance(1001)

        assert run(store.get_key("req1")) is None
        assert run(store.get_response("req1")) is None
        assert kv.get("req1::meta") is None
        assert kv.get("req1::response") is None

    def test_expired_read_leaves_other_requests(
        self, store: IdempotencyStore, clock: FakeClock
    ) -> None:
        run(store.create_key("short", 10))
        other = run(store.create_key("long"))
        run(store.save_response("long", "ok"))
        clock.advance(11)

        assert run(store.get_key("short")) is None
        assert run(store.get_key("long")) == other
        assert run(store.get_response("long")) == "ok"

    def test_new_key_after_expiry(self, store: IdempotencyStore, clock: FakeClock) -> None:
        run(store.create_key("req1", 10))
        clock.advance(11)
        assert run(store.get_key("req1")) is None

        renewed = run(store.create_key("req1", 10))
        assert run(store.get_key("req1")) == renewed

    def test_key_removed_before_clear_keeps_response(
        self, kv: KeyValueStore, ids: SequentialIds
    ) -> None:
        """If the expired key is gone by the locked re-read, nothing is cleared."""
        clock = FakeClock(now=0)
        store = IdempotencyStore(kv, id_factory=ids, clock=clock)
        run(store.create_key("req1", 10))
        run(store.save_response("req1", "fresh"))
        clock.set(100)

        def clock_with_concurrent_clear() -> int:
            kv.delete("req1::meta")
            return clock.now

        racing = IdempotencyStore(kv, id_factory=ids, clock=clock_with_concurrent_clear)

        assert run(racing.get_key("req1")) is None
        assert run(store.get_response("req1")) == "fresh"


class TestResponses:
    """Tests for response caching."""

    @pytest.mark.parametrize(
        "payload",
        [
            {"status": 200, "body": {"id": "ord_1", "items": [1, 2, 3]}},
            "plain text",
            42,
            0,
            "",
            False,
            [],
            None,
        ],
    )
    def test_roundtrip_is_exact(self, store: IdempotencyStore, payload: object) -> None:
        run(store.save_response("req1", payload))

        assert run(store.get_response("req1")) == payload

    def test_get_response_absent_returns_none(self, store: IdempotencyStore) -> None:
        assert run(store.get_response("req1")) is None

    def test_save_overwrites(self, store: IdempotencyStore) -> None:
        run(store.save_response("req1", {"v": 1}))
        run(store.save_response("req1", {"v": 2}))

        assert run(store.get_response("req1")) == {"v": 2}

    def test_saved_at_set_at_write(
        self, store: IdempotencyStore, kv: KeyValueStore, clock: FakeClock
    ) -> None:
        run(store.save_response("req1", "x"))

        assert kv.get("req1::response") == {"responseData": "x", "savedAt": clock.now}

    def test_reads_do_not_reset_saved_at(
        self, store: IdempotencyStore, kv: KeyValueStore, clock: FakeClock
    ) -> None:
        saved_at = clock.now
        run(store.save_response("req1", "x"))
        clock.advance(5000)
        run(store.get_response("req1"))

        assert kv.get("req1::response")["savedAt"] == saved_at

    def test_response_survives_key_expiry_until_key_read(
        self, store: IdempotencyStore, clock: FakeClock
    ) -> None:
        """get_response does not enforce key expiry."""
        run(store.create_key("req1", 100))
        run(store.save_response("req1", "cached"))
        clock.advance(1_000)

        assert run(store.get_response("req1")) == "cached"

    def test_response_without_key(self, store: IdempotencyStore) -> None:
        run(store.save_response("req1", "cached"))

        assert run(store.get_key("req1")) is None
        assert run(store.get_response("req1")) == "cached"

    def test_unserializable_payload_rejected(self, store: IdempotencyStore) -> None:
        with pytest.raises(TypeError):
            run(store.save_response("req1", object()))

        assert run(store.get_response("req1")) is None

    def test_corrupt_stored_record_raises_format_error(
        self, store: IdempotencyStore, kv: KeyValueStore
    ) -> None:
        kv.put("req1::response", {"unexpected": True})

        with pytest.raises(FormatError):
            run(store.get_response("req1"))


class TestClear:
    """Tests for clear."""

    def test_clear_removes_both(self, store: IdempotencyStore) -> None:
        run(store.create_key("req1"))
        run(store.save_response("req1", "x"))

        run(store.clear("req1"))

        assert run(store.get_key("req1")) is None
        assert run(store.get_response("req1")) is None

    def test_clear_absent_is_noop(self, store: IdempotencyStore) -> None:
        run(store.clear("missing"))

    def test_clear_only_key(self, store: IdempotencyStore) -> None:
        run(store.create_key("req1"))
        run(store.clear("req1"))

        assert run(store.get_key("req1")) is None

    def test_clear_leaves_other_requests(self, store: IdempotencyStore) -> None:
        run(store.create_key("req1"))
        other = run(store.create_key("req2"))

        run(store.clear("req1"))

        assert run(store.get_key("req2")) == other


class TestLifecycle:
    """Tests for opening and closing stores."""

    def test_open_idempotency_store_in_memory(self) -> None:
        store = open_idempotency_store(in_memory=True)
        try:
            key = run(store.create_key("req1"))
            assert run(store.get_key("req1")) == key
            assert store.backend_name == "memory"
        finally:
            store.close()

    def test_sqlite_store_persists_across_reopen(self, db_path, clock: FakeClock) -> None:
        store = open_idempotency_store(db_path, clock=clock)
        key = run(store.create_key("req1", 60_000))
        run(store.save_response("req1", {"ok": True}))
        store.close()

        reopened = open_idempotency_store(db_path, clock=clock)
        try:
            assert run(reopened.get_key("req1")) == key
            assert run(reopened.get_response("req1")) == {"ok": True}
        finally:
            reopened.close()

    def test_async_context_manager_closes_kv(self, kv: KeyValueStore) -> None:
        async def scenario() -> None:
            async with IdempotencyStore(kv) as store:
                await store.create_key("req1")

        run(scenario())

        assert not kv.is_open

    def test_session_factory_binds_request_id(self, store: IdempotencyStore) -> None:
        session = store.session("req1")

        assert session.request_id == "req1"
        key = run(session.create_key())
        assert run(store.get_key("req1")) == key
