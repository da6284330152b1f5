"""
Repository layer

Per-collection facades and the store that owns them.
"""

from .facade import RepositoryFacade
from .store import DocumentStore
from .validation import SchemaValidator, to_object_id

__all__ = [
    "RepositoryFacade",
    "DocumentStore",
    "SchemaValidator",
    "to_object_id",
]
