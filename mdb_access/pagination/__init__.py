"""
Keyset pagination with signed cursors.
"""

from .cursor import CursorCodec, CursorData
from .paginator import CursorPaginator, Page, ordering_for, seek_filter

__all__ = [
    "CursorCodec",
    "CursorData",
    "CursorPaginator",
    "Page",
    "ordering_for",
    "seek_filter",
]
