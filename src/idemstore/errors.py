"""Idempotency store error types.

All storage failures propagate to the caller. A missing record is never an
error: lookups return None instead.
"""

from __future__ import annotations


class IdempotencyStoreError(Exception):
    """Base exception for idempotency store operations.

    Attributes:
        message: Human-readable error message.
        request_id: Request identity associated with the operation (if applicable).
        key: Composite storage key associated with the operation (if applicable).
    """

    def __init__(
        self,
        message: str,
        *,
        request_id: str | None = None,
        key: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id
        self.key = key

    def __str__(self) -> str:
        parts = [self.message]
        if self.request_id:
            parts.append(f"request_id={self.request_id}")
        if self.key:
            parts.append(f"key={self.key}")
        return " ".join(parts)


class StorageUnavailableError(IdempotencyStoreError):
    """Raised when the storage engine cannot be opened or accessed.

    Fatal to the calling operation. The store never retries internally.
    """

    def __init__(
        self,
        message: str = "Idempotency storage unavailable",
        *,
        request_id: str | None = None,
        key: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, request_id=request_id, key=key)
        self.cause = cause


class FormatError(IdempotencyStoreError):
    """Raised when an import blob or composite key is malformed.

    Import validates the whole blob before writing, so this error
    guarantees nothing was committed.
    """

    def __init__(
        self,
        message: str = "Malformed idempotency data",
        *,
        request_id: str | None = None,
        key: str | None = None,
    ) -> None:
        super().__init__(message, request_id=request_id, key=key)


class ConcurrencyConflictError(IdempotencyStoreError):
    """Raised when the storage engine reports a lock or busy conflict.

    Surfaced as-is; the caller decides whether to retry.
    """

    def __init__(
        self,
        message: str = "Idempotency storage is locked by another transaction",
        *,
        request_id: str | None = None,
        key: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, request_id=request_id, key=key)
        self.cause = cause
