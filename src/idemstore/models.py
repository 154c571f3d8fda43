"""Idempotency record models.

Two record kinds live in one table, each addressed by a composite key
``<request_id>::<kind>``:

- ``meta``: the KeyRecord issued by create_key
- ``response``: the ResponseRecord cached by save_response

Records are stored and exported in camelCase wire form
(``{"key", "expiresAt"}`` / ``{"responseData", "savedAt"}``).
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from idemstore.errors import FormatError

KEY_SEPARATOR = "::"


class RecordKind(StrEnum):
    """Suffix of a composite key."""

    META = "meta"
    RESPONSE = "response"


class KeyRecord(BaseModel):
    """Idempotency key issued for a request identity.

    Attributes:
        key: Globally unique key, immutable once created.
        expires_at: Absolute expiry in epoch milliseconds. None never expires.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    key: str
    expires_at: int | None = Field(default=None, alias="expiresAt")

    def is_expired(self, now: int) -> bool:
        """Return True if the key carries an expiry that lies before ``now``."""
        if not self.expires_at:
            return False
        return self.expires_at < now

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class ResponseRecord(BaseModel):
    """Cached response for a request identity.

    Attributes:
        response_data: Opaque JSON-serializable payload.
        saved_at: Epoch milliseconds at write time. Reads never reset it.
            None (or 0) means the response never ages out.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    response_data: Any = Field(alias="responseData")
    saved_at: int | None = Field(default=None, alias="savedAt")

    def is_stale(self, now: int, threshold_ms: int) -> bool:
        """Return True if the response is older than ``threshold_ms``."""
        if not self.saved_at:
            return False
        return now - self.saved_at > threshold_ms

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


RECORD_TYPES: dict[RecordKind, type[KeyRecord] | type[ResponseRecord]] = {
    RecordKind.META: KeyRecord,
    RecordKind.RESPONSE: ResponseRecord,
}


def make_key(request_id: str, kind: RecordKind) -> str:
    return f"{request_id}{KEY_SEPARATOR}{kind.value}"


def meta_key(request_id: str) -> str:
    """Composite key of the KeyRecord for ``request_id``."""
    return make_key(request_id, RecordKind.META)


def response_key(request_id: str) -> str:
    """Composite key of the ResponseRecord for ``request_id``."""
    return make_key(request_id, RecordKind.RESPONSE)


def split_key(full_key: str) -> tuple[str, RecordKind]:
    """Split a composite key into request id and record kind.

    Raises:
        FormatError: If the key has no known ``::<kind>`` suffix.
    """
    request_id, sep, suffix = full_key.rpartition(KEY_SEPARATOR)
    if not sep:
        raise FormatError("Composite key has no kind suffix", key=full_key)
    try:
        kind = RecordKind(suffix)
    except ValueError as e:
        raise FormatError(f"Unknown record kind {suffix!r}", key=full_key) from e
    return request_id, kind
