"""
Index declarations and query coverage checks.
"""

from .advisor import IndexAdvisor, IndexMatch
from .definitions import ID_INDEX, IndexDefinition, QuerySpec
from .manager import ensure_indexes

__all__ = [
    "IndexAdvisor",
    "IndexMatch",
    "IndexDefinition",
    "QuerySpec",
    "ID_INDEX",
    "ensure_indexes",
]
