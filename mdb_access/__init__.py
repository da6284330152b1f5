"""
MDB_ACCESS - Document Store Access Layer

Index-checked queries, keyset pagination, single-round-trip atomic
mutations and retried multi-document transactions over MongoDB.
"""

from .config import AccessLayerConfig
from .database import (
    AtomicMutator,
    AtomicOperation,
    Deadline,
    MutationResult,
    OperationKind,
    RetryPolicy,
    TransactionContext,
    TransactionScope,
    TransactionState,
)
from .exceptions import (
    AccessLayerError,
    CastError,
    ConfigurationError,
    ConflictError,
    DuplicateIndexError,
    DuplicateKeyError,
    FatalError,
    GuardFailedError,
    InvalidCursorError,
    InvalidStateError,
    OperationTimeoutError,
    TransientStoreError,
    UnindexedQueryError,
    ValidationError,
)
from .indexes import IndexAdvisor, IndexDefinition, IndexMatch, QuerySpec
from .pagination import CursorCodec, CursorPaginator, Page
from .repositories import DocumentStore, RepositoryFacade

__version__ = "0.1.0"

__all__ = [
    # Entry points
    "DocumentStore",
    "RepositoryFacade",
    "AccessLayerConfig",
    # Indexes
    "IndexAdvisor",
    "IndexDefinition",
    "IndexMatch",
    "QuerySpec",
    # Pagination
    "CursorCodec",
    "CursorPaginator",
    "Page",
    # Mutations and transactions
    "AtomicMutator",
    "AtomicOperation",
    "OperationKind",
    "MutationResult",
    "Deadline",
    "RetryPolicy",
    "TransactionContext",
    "TransactionScope",
    "TransactionState",
    # Errors
    "AccessLayerError",
    "UnindexedQueryError",
    "DuplicateIndexError",
    "InvalidCursorError",
    "DuplicateKeyError",
    "ValidationError",
    "CastError",
    "ConflictError",
    "OperationTimeoutError",
    "TransientStoreError",
    "FatalError",
    "ConfigurationError",
    "InvalidStateError",
    "GuardFailedError",
]
