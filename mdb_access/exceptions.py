"""
Custom exceptions for MDB_ACCESS.

Every failure that reaches a caller of the access layer is one of these
types. Store-native errors (pymongo / bson) are translated at the
repository boundary by :mod:`mdb_access.database.errors`.
"""

from typing import Any, Dict, List, Optional, Sequence


class AccessLayerError(RuntimeError):
    """
    Base exception for access layer errors.

    Attributes:
        message: Error message
        context: Optional dictionary with additional context (collection,
                 index name, operation, etc.)
        retryable: Whether the caller may safely retry an idempotent operation
    """

    retryable: bool = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """
        Initialize the exception.

        Args:
            message: Error message
            context: Optional dictionary with additional context information
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        """Return formatted error message with context if available."""
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} (context: {context_str})"
        return self.message


class UnindexedQueryError(AccessLayerError):
    """
    Raised when no registered index covers a query.

    Raised before any store call is made.

    Attributes:
        collection: Collection the query targeted
        equality_fields: Equality fields of the rejected query
        sort_fields: Sort fields of the rejected query
        range_fields: Range fields of the rejected query
    """

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        equality_fields: Optional[Sequence[str]] = None,
        sort_fields: Optional[Sequence[str]] = None,
        range_fields: Optional[Sequence[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if collection:
            context["collection"] = collection
        if equality_fields:
            context["equality"] = list(equality_fields)
        if sort_fields:
            context["sort"] = list(sort_fields)
        if range_fields:
            context["range"] = list(range_fields)
        super().__init__(message, context=context)
        self.collection = collection
        self.equality_fields = list(equality_fields or [])
        self.sort_fields = list(sort_fields or [])
        self.range_fields = list(range_fields or [])


class DuplicateIndexError(AccessLayerError):
    """Raised when an index with the same key signature is registered twice."""

    def __init__(
        self,
        message: str,
        signature: Optional[Sequence[Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if signature:
            context["signature"] = list(signature)
        super().__init__(message, context=context)
        self.signature = signature


class InvalidCursorError(AccessLayerError):
    """Raised when a pagination cursor is malformed, truncated or tampered with."""


class DuplicateKeyError(AccessLayerError):
    """
    Raised when the store reports a uniqueness violation.

    Attributes:
        key_pattern: Index key pattern that was violated (if reported)
        key_value: Conflicting key value (if reported)
    """

    def __init__(
        self,
        message: str,
        key_pattern: Optional[Dict[str, Any]] = None,
        key_value: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if key_pattern:
            context["key_pattern"] = key_pattern
        if key_value:
            context["key_value"] = key_value
        super().__init__(message, context=context)
        self.key_pattern = key_pattern
        self.key_value = key_value


class ValidationError(AccessLayerError):
    """
    Raised when a document, query or operation has the wrong shape or type.

    Attributes:
        error_paths: JSON paths of the offending values (if known)
    """

    def __init__(
        self,
        message: str,
        error_paths: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if error_paths:
            context["error_paths"] = error_paths
        super().__init__(message, context=context)
        self.error_paths = error_paths or []


class CastError(AccessLayerError):
    """
    Raised when an identifier or value cannot be coerced to the stored type.

    Attributes:
        value: The value that failed to convert
        target_type: Name of the type it should have converted to
    """

    def __init__(
        self,
        message: str,
        value: Any = None,
        target_type: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if value is not None:
            context["value"] = repr(value)
        if target_type:
            context["target_type"] = target_type
        super().__init__(message, context=context)
        self.value = value
        self.target_type = target_type


class ConflictError(AccessLayerError):
    """
    Raised when a transactional write conflict outlives the retry budget.

    Attributes:
        attempts: Number of attempts made before giving up
    """

    def __init__(
        self,
        message: str,
        attempts: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if attempts is not None:
            context["attempts"] = attempts
        super().__init__(message, context=context)
        self.attempts = attempts


class OperationTimeoutError(AccessLayerError, TimeoutError):
    """
    Raised when an operation's deadline expires.

    Store-side effects already in flight are left as the store resolves them.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        timeout: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if timeout is not None:
            context["timeout"] = timeout
        super().__init__(message, context=context)
        self.timeout = timeout


class TransientStoreError(AccessLayerError):
    """Raised on connectivity failures; safe to retry idempotent operations."""

    retryable = True


class FatalError(AccessLayerError):
    """Raised on misconfiguration or resource exhaustion. Never retried."""


class ConfigurationError(FatalError):
    """
    Raised when configuration is invalid or missing.

    Attributes:
        config_key: Configuration key that caused the error (if available)
        config_value: Configuration value that caused the error (if available)
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        config_value: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if config_key:
            context["config_key"] = config_key
        if config_value is not None:
            context["config_value"] = config_value
        super().__init__(message, context=context)
        self.config_key = config_key
        self.config_value = config_value


class InvalidStateError(AccessLayerError):
    """
    Raised when a transaction is used in a state that does not allow the call.

    Attributes:
        state: The state the transaction was in
    """

    def __init__(
        self,
        message: str,
        state: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = context or {}
        if state:
            context["state"] = state
        super().__init__(message, context=context)
        self.state = state


class GuardFailedError(AccessLayerError):
    """
    Raised by callers when a guarded mutation did not match.

    A non-matching guard is a normal outcome of ``AtomicMutator.apply``;
    raising this inside a transaction aborts the whole unit of work.
    """
