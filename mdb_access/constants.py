"""
Constants for MDB_ACCESS.

This module contains all shared constants used across the codebase to avoid
magic numbers and improve maintainability.
"""

from typing import Final

# ============================================================================
# INDEX CONSTANTS
# ============================================================================

ASCENDING: Final[int] = 1
"""Ascending sort / index direction."""

DESCENDING: Final[int] = -1
"""Descending sort / index direction."""

ID_FIELD: Final[str] = "_id"
"""Unique document identifier field, also the pagination tiebreaker."""

ID_INDEX_NAME: Final[str] = "_id_"
"""Name MongoDB gives the implicit _id index."""

MAX_INDEX_FIELDS: Final[int] = 32
"""Maximum number of fields in a compound index (MongoDB hard limit)."""

RANGE_OPERATORS: Final[tuple[str, ...]] = ("$gt", "$gte", "$lt", "$lte", "$ne")
"""Operators accepted in the range part of a query."""

# ============================================================================
# PAGINATION CONSTANTS
# ============================================================================

DEFAULT_PAGE_SIZE: Final[int] = 50
"""Default page size when neither the query nor the caller sets one."""

MAX_PAGE_SIZE: Final[int] = 1000
"""Maximum number of documents returned per page."""

CURSOR_VERSION: Final[int] = 1
"""Cursor payload version, bumped on incompatible token changes."""

CURSOR_ALGORITHM: Final[str] = "HS256"
"""Signing algorithm for pagination cursors."""

# ============================================================================
# TIMEOUT CONSTANTS (seconds)
# ============================================================================

DEFAULT_OPERATION_TIMEOUT: Final[float] = 10.0
"""Default deadline for a single store round trip."""

DEFAULT_SERVER_SELECTION_TIMEOUT_MS: Final[int] = 5000
"""Default server selection timeout in milliseconds."""

# ============================================================================
# CONNECTION POOL CONSTANTS
# ============================================================================

DEFAULT_MAX_POOL_SIZE: Final[int] = 50
"""Default maximum MongoDB connection pool size."""

DEFAULT_MIN_POOL_SIZE: Final[int] = 10
"""Default minimum MongoDB connection pool size."""

DEFAULT_MAX_IDLE_TIME_MS: Final[int] = 45000
"""Default maximum idle time before closing connections (milliseconds)."""

# ============================================================================
# TRANSACTION CONSTANTS
# ============================================================================

DEFAULT_TXN_MAX_RETRIES: Final[int] = 3
"""Retries allowed after a transient write conflict before giving up."""

DEFAULT_TXN_BASE_DELAY: Final[float] = 0.05
"""First backoff delay after a transient conflict (seconds)."""

DEFAULT_TXN_MAX_DELAY: Final[float] = 1.0
"""Upper bound on a single backoff delay (seconds)."""

DEFAULT_TXN_JITTER: Final[float] = 0.5
"""Relative jitter applied to every backoff delay."""

DEFAULT_TXN_MAX_DURATION: Final[float] = 5.0
"""Time budget for a whole transaction (seconds)."""

# ============================================================================
# STORE ERROR CODES / LABELS
# ============================================================================

TRANSIENT_TXN_LABEL: Final[str] = "TransientTransactionError"
UNKNOWN_COMMIT_LABEL: Final[str] = "UnknownTransactionCommitResult"
RETRYABLE_WRITE_LABEL: Final[str] = "RetryableWriteError"

WRITE_CONFLICT_CODE: Final[int] = 112
DOCUMENT_VALIDATION_FAILURE_CODE: Final[int] = 121

VALIDATION_ERROR_CODES: Final[frozenset[int]] = frozenset(
    {
        2,  # BadValue
        9,  # FailedToParse
        14,  # TypeMismatch
        DOCUMENT_VALIDATION_FAILURE_CODE,
    }
)
"""Server error codes that mean the request itself was malformed."""

TIMEOUT_ERROR_CODES: Final[frozenset[int]] = frozenset(
    {
        50,  # MaxTimeMSExpired
        262,  # ExceededTimeLimit
    }
)
