"""OpenTelemetry tracing for idempotency store operations.

Spans are emitted only when IDEMSTORE_OTEL_ENABLED is set. The caller
owns tracer provider configuration; without one the API tracer is a no-op.

Security:
    - Never export raw request ids or response payloads in span attributes
    - Request ids are exported as SHA-256 digests for correlation only
"""

from __future__ import annotations

import functools
import hashlib
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar, cast

from opentelemetry import trace

from idemstore.config import is_otel_enabled

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

TRACER_NAME = "idemstore"


def request_id_digest(request_id: str) -> str:
    return hashlib.sha256(request_id.encode("utf-8")).hexdigest()


def traced_store_operation(operation: str, *, scoped: bool = True) -> Callable[[F], F]:
    """Decorator to trace async store operations with OpenTelemetry.

    Args:
        operation: Operation name (e.g., "get_key", "auto_cleanup").
        scoped: True if the first positional argument is a request id.

    Returns:
        Decorated coroutine function that emits a span when tracing is enabled.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            if not is_otel_enabled():
                return await func(self, *args, **kwargs)

            tracer = trace.get_tracer(TRACER_NAME)
            with tracer.start_as_current_span(f"idemstore.{operation}") as span:
                span.set_attribute("storage.backend", getattr(self, "backend_name", "unknown"))
                if scoped and args and isinstance(args[0], str):
                    span.set_attribute("idemstore.request_id_sha256", request_id_digest(args[0]))
                try:
                    return await func(self, *args, **kwargs)
                except Exception as e:
                    span.set_attribute("error", True)
                    span.set_attribute("error.type", type(e).__name__)
                    raise

        return cast(F, wrapper)

    return decorator
