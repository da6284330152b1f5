"""
Store access primitives.

Atomic mutations, transactions, deadlines, error translation and client
lifecycle.
"""

from .atomic import AtomicMutator, AtomicOperation, MutationResult, OperationKind, get_field
from .connection import connect, create_mongo_client, ping
from .deadline import Deadline, run_with_deadline
from .errors import map_store_errors, translate_store_error
from .transactions import RetryPolicy, TransactionContext, TransactionScope, TransactionState

__all__ = [
    "AtomicMutator",
    "AtomicOperation",
    "MutationResult",
    "OperationKind",
    "get_field",
    "RetryPolicy",
    "TransactionContext",
    "TransactionScope",
    "TransactionState",
    "Deadline",
    "run_with_deadline",
    "map_store_errors",
    "translate_store_error",
    "connect",
    "create_mongo_client",
    "ping",
]
