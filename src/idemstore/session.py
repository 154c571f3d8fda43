"""Per-request facade over the idempotency store."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from idemstore.store import IdempotencyStore


class IdempotencySession:
    """Binds one request identity to IdempotencyStore operations.

    Holds nothing but the request id and the store handle. Every method
    delegates to the identically named store operation with the request
    id bound in.

    Note:
        export_session() and import_session() operate on the whole table,
        not just this session's request id. Callers use them for
        whole-store backup from any session handle.

    Example:
        session = store.session("checkout:order-42")
        key = await session.get_key() or await session.create_key(ttl_ms=60_000)
        cached = await session.get_response()
    """

    def __init__(self, request_id: str, store: IdempotencyStore) -> None:
        """Create a session.

        Args:
            request_id: Caller-chosen stable identity of the logical request
                (e.g. a correlation id).
            store: The store to delegate to.

        Raises:
            ValueError: If request_id is empty.
        """
        if not request_id:
            raise ValueError("request_id must be a non-empty string")
        self._request_id = request_id
        self._store = store

    @property
    def request_id(self) -> str:
        return self._request_id

    async def create_key(self, ttl_ms: int | None = None) -> str:
        """Issue a new key for this request. None or 0 ttl_ms never expires."""
        return await self._store.create_key(self._request_id, ttl_ms)

    async def get_key(self) -> str | None:
        """Return the live key, or None if absent or expired."""
        return await self._store.get_key(self._request_id)

    async def save_response(self, response_data: Any) -> None:
        await self._store.save_response(self._request_id, response_data)

    async def get_response(self) -> Any | None:
        return await self._store.get_response(self._request_id)

    async def clear(self) -> None:
        """Delete the key and cached response for this request."""
        await self._store.clear(self._request_id)

    async def export_session(self) -> str:
        """Export the entire store (not only this request) as JSON."""
        return await self._store.export_store()

    async def import_session(self, blob: str) -> int:
        """Import a store export into the entire table.

        Returns:
            Number of records written.
        """
        return await self._store.import_store(blob)

    def __repr__(self) -> str:
        return f"IdempotencySession(request_id={self._request_id!r})"
