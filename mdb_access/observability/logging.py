"""
Logging utilities for MDB_ACCESS.

Every repository call and transaction runs inside an ``operation_scope``.
The scope stamps log records with the collection, the operation and (for
transactions) the transaction id, and ties all records of one unit of work
together with a correlation id. Callers that already have a request id can
adopt it with ``correlation_scope`` before calling into the store.
"""

import contextvars
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)

_operation_context: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar(
    "operation_context", default=None
)


def get_correlation_id() -> str | None:
    """Get the correlation ID of the current unit of work, if any."""
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """
    Bind a correlation ID for the duration of a block.

    Args:
        correlation_id: ID to adopt (a new one is generated if None)

    Example:
        with correlation_scope(request.headers["x-request-id"]):
            await store.orders.create(order)
    """
    correlation_id = correlation_id or uuid.uuid4().hex
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


@contextmanager
def operation_scope(collection: str | None = None, **kwargs: Any) -> Iterator[dict[str, Any]]:
    """
    Layer operation context over the current one for the duration of a block.

    The previous context is restored on exit, so nested scopes (a repository
    call inside a transaction) keep the outer transaction id. The outermost
    scope opens a correlation ID when none is bound.

    Example:
        with operation_scope("accounts", transaction_id=ctx.id):
            logger.info("debiting")
    """
    parent = _operation_context.get() or {}
    merged = {**parent, "collection": collection or parent.get("collection"), **kwargs}
    token = _operation_context.set(merged)
    try:
        if get_correlation_id() is None:
            with correlation_scope():
                yield merged
        else:
            yield merged
    finally:
        _operation_context.reset(token)


def get_logging_context() -> dict[str, Any]:
    """Correlation ID and operation context to attach to a log record."""
    context = dict(_operation_context.get() or {})
    correlation_id = get_correlation_id()
    if correlation_id:
        context["correlation_id"] = correlation_id
    return context


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that automatically adds context to log records.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**get_logging_context(), **(kwargs.get("extra") or {})}
        return msg, kwargs


def get_logger(name: str) -> ContextualLoggerAdapter:
    """Get a logger whose records carry the current correlation ID and operation context."""
    return ContextualLoggerAdapter(logging.getLogger(name), {})


def log_operation(
    logger: logging.Logger | logging.LoggerAdapter,
    operation: str,
    level: int = logging.INFO,
    success: bool = True,
    duration_ms: float | None = None,
    **context: Any,
) -> None:
    """
    Log the outcome of a store operation with structured context.

    Args:
        logger: Logger instance
        operation: Operation name, e.g. ``repository.create``
        level: Log level
        success: Whether operation succeeded
        duration_ms: Operation duration in milliseconds
        **context: Additional record attributes (collection, error, ...)
    """
    extra = {**get_logging_context(), "operation": operation, "success": success, **context}
    message = f"Operation: {operation}" if success else f"Operation failed: {operation}"
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)
        message += f" (duration: {duration_ms:.2f}ms)"

    logger.log(level, message, extra=extra)
