"""
Store error translation.

Maps pymongo / bson exceptions onto the access layer taxonomy so that no
driver-native error type reaches callers of the repository facade.
"""

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from bson.errors import BSONError, InvalidDocument, InvalidId
from pymongo.errors import AutoReconnect, ConnectionFailure
from pymongo.errors import DuplicateKeyError as PyMongoDuplicateKeyError
from pymongo.errors import (
    ExecutionTimeout,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    WTimeoutError,
)

from ..constants import (
    RETRYABLE_WRITE_LABEL,
    TIMEOUT_ERROR_CODES,
    TRANSIENT_TXN_LABEL,
    VALIDATION_ERROR_CODES,
    WRITE_CONFLICT_CODE,
)
from ..exceptions import (
    AccessLayerError,
    CastError,
    ConflictError,
    DuplicateKeyError,
    FatalError,
    OperationTimeoutError,
    TransientStoreError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STORE_ERRORS: tuple[type[BaseException], ...] = (PyMongoError, BSONError, asyncio.TimeoutError)
"""Exception types that originate in the driver or the event loop deadline."""


def has_label(error: BaseException, label: str) -> bool:
    """Check a pymongo error label without caring about the exception type."""
    has_error_label = getattr(error, "has_error_label", None)
    return bool(has_error_label and has_error_label(label))


def is_transient_conflict(error: BaseException) -> bool:
    """True for write conflicts a transaction may retry."""
    if has_label(error, TRANSIENT_TXN_LABEL):
        return True
    return isinstance(error, OperationFailure) and error.code == WRITE_CONFLICT_CODE


def translate_store_error(
    error: BaseException, operation: str | None = None, **context: Any
) -> AccessLayerError:
    """
    Translate a store-native exception into the access layer taxonomy.

    Args:
        error: Exception raised by the driver (or an asyncio deadline)
        operation: Name of the operation that failed
        **context: Extra context (collection, index, ...)

    Returns:
        The corresponding AccessLayerError (the input itself if already translated)
    """
    if isinstance(error, AccessLayerError):
        return error

    ctx = {k: v for k, v in context.items() if v is not None}
    if operation:
        ctx["operation"] = operation
    detail = str(error) or type(error).__name__

    if isinstance(error, InvalidId):
        return CastError(f"Invalid document identifier: {detail}", target_type="ObjectId", context=ctx)

    if isinstance(error, BSONError):
        return ValidationError(
            f"Document cannot be encoded for the store: {detail}"
            if isinstance(error, InvalidDocument)
            else f"Invalid BSON value: {detail}",
            context=ctx,
        )

    if isinstance(error, PyMongoDuplicateKeyError):
        details = error.details or {}
        return DuplicateKeyError(
            "Duplicate key",
            key_pattern=details.get("keyPattern"),
            key_value=details.get("keyValue"),
            context=ctx,
        )

    if isinstance(error, (ExecutionTimeout, WTimeoutError, NetworkTimeout, asyncio.TimeoutError)):
        return OperationTimeoutError(f"Store operation timed out: {detail}", context=ctx)

    if is_transient_conflict(error):
        return ConflictError(f"Write conflict: {detail}", context=ctx)

    if isinstance(error, OperationFailure):
        if error.code in TIMEOUT_ERROR_CODES:
            return OperationTimeoutError(f"Store operation timed out: {detail}", context=ctx)
        if error.code in VALIDATION_ERROR_CODES:
            ctx["code"] = error.code
            return ValidationError(f"Store rejected the request: {detail}", context=ctx)

    if isinstance(error, (AutoReconnect, ConnectionFailure)) or has_label(
        error, RETRYABLE_WRITE_LABEL
    ):
        return TransientStoreError(f"Store unavailable: {detail}", context=ctx)

    code = getattr(error, "code", None)
    if code is not None:
        ctx["code"] = code
    return FatalError(f"Store error ({type(error).__name__}): {detail}", context=ctx)


@contextmanager
def map_store_errors(operation: str, **context: Any) -> Iterator[None]:
    """
    Translate store errors raised inside the block.

    Example:
        with map_store_errors("repository.create", collection="orders"):
            await collection.insert_one(doc)
    """
    try:
        yield
    except AccessLayerError:
        raise
    except STORE_ERRORS as e:
        mapped = translate_store_error(e, operation, **context)
        logger.debug(f"{operation}: {type(e).__name__} mapped to {type(mapped).__name__}")
        raise mapped from e
