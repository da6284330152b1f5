"""
Keyset (cursor) pagination.

Pages are ordered by the query's sort fields with ``_id`` as the final
tiebreaker, so the order is total. Each call reads at most ``page_size + 1``
documents: the extra one only tells us whether another page exists. No
counts are computed.

Pagination is stateless: any cursor issued earlier can be resumed later.
Documents inserted or removed exactly at a page boundary between calls may
show up once, never, or on either side of the boundary. Sort fields may mix
null, missing and scalar BSON values; arrays are not supported as sort keys.
"""

import logging
import uuid
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from bson import Decimal128, ObjectId

from ..constants import ASCENDING, ID_FIELD, MAX_PAGE_SIZE
from ..database.deadline import Deadline, run_with_deadline
from ..database.errors import map_store_errors
from ..exceptions import InvalidCursorError, ValidationError
from ..indexes.advisor import IndexAdvisor
from ..indexes.definitions import QuerySpec
from .cursor import CursorCodec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Page:
    """
    One page of results.

    Attributes:
        items: Documents on this page, in index order
        next_cursor: Token for the following page, or None on the last page
        warnings: Advisory messages from index validation
    """

    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None
    warnings: tuple[str, ...] = ()

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.items)


def _get_path(document: dict[str, Any], path: str) -> Any:
    value: Any = document
    for part in path.split("."):
        if isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    return value


# BSON comparison order of the value groups a sort key may hold, named by the
# ``$type`` alias matching each group. Null and missing sort before all of them.
_TYPE_ORDER = ("number", "string", "object", "binData", "objectId", "bool", "date")


def _type_rank(value: Any) -> int | None:
    if isinstance(value, bool):
        return _TYPE_ORDER.index("bool")
    if isinstance(value, (int, float, Decimal128)):
        return _TYPE_ORDER.index("number")
    if isinstance(value, str):
        return _TYPE_ORDER.index("string")
    if isinstance(value, dict):
        return _TYPE_ORDER.index("object")
    if isinstance(value, (bytes, uuid.UUID)):
        return _TYPE_ORDER.index("binData")
    if isinstance(value, ObjectId):
        return _TYPE_ORDER.index("objectId")
    if isinstance(value, datetime):
        return _TYPE_ORDER.index("date")
    return None


def _after(field_name: str, value: Any, direction: int) -> list[dict[str, Any]]:
    """
    Conditions matching values of ``field_name`` strictly after ``value``.

    ``$gt``/``$lt`` only compare values of the same BSON type, so later type
    groups are matched by ``$type`` and null/missing by equality with None.
    """
    rank = _type_rank(value)
    if direction == ASCENDING:
        if value is None:
            return [{field_name: {"$ne": None}}]
        later = _TYPE_ORDER[rank + 1 :] if rank is not None else ()
        return [{field_name: {"$gt": value}}] + [
            {field_name: {"$type": alias}} for alias in later
        ]
    if value is None:
        return []
    earlier = _TYPE_ORDER[:rank] if rank is not None else ()
    return (
        [{field_name: {"$lt": value}}]
        + [{field_name: {"$type": alias}} for alias in earlier]
        + [{field_name: None}]
    )


def ordering_for(query: QuerySpec) -> tuple[tuple[str, int], ...]:
    """
    Total order used to paginate a query: its sort keys then ``_id``.

    ``_id`` follows the direction of the last sort key so a single index walk
    (forwards or backwards) can serve the whole order. An explicit ``_id``
    sort key is unique, so the order ends there and any later keys are dropped.
    """
    sort: list[tuple[str, int]] = []
    for field_name, direction in query.sort:
        sort.append((field_name, direction))
        if field_name == ID_FIELD:
            return tuple(sort)
    id_direction = sort[-1][1] if sort else ASCENDING
    return tuple(sort) + ((ID_FIELD, id_direction),)


def seek_filter(order: tuple[tuple[str, int], ...], key: tuple[Any, ...]) -> dict[str, Any]:
    """
    Filter selecting documents strictly after ``key`` in ``order``.

    For order (a, b, _id) this is::

        a > ka  OR  (a == ka AND b > kb)  OR  (a == ka AND b == kb AND _id > kid)

    with ``>`` flipped to ``<`` for descending keys. ``>`` follows the BSON
    comparison order across types, with null and missing values first.
    """
    branches = []
    for position, (field_name, direction) in enumerate(order):
        conditions = _after(field_name, key[position], direction)
        if not conditions:
            continue
        branch: dict[str, Any] = {order[i][0]: key[i] for i in range(position)}
        if len(conditions) == 1:
            branch.update(conditions[0])
        else:
            branch["$or"] = conditions
        branches.append(branch)
    if not branches:
        return {ID_FIELD: {"$in": []}}
    return branches[0] if len(branches) == 1 else {"$or": branches}


class CursorPaginator:
    """
    Drives forward-only pagination over one collection.

    Example:
        paginator = CursorPaginator(db.orders, advisor, CursorCodec(secret))
        page = await paginator.paginate(query, page_size=20)
        while page.next_cursor:
            page = await paginator.paginate(query, cursor=page.next_cursor, page_size=20)
    """

    def __init__(
        self,
        collection: Any,
        advisor: IndexAdvisor,
        codec: CursorCodec,
        max_page_size: int = MAX_PAGE_SIZE,
    ):
        """
        Initialize the paginator.

        Args:
            collection: AsyncIOMotorCollection to read from
            advisor: Index advisor for the collection
            codec: Cursor codec used to issue and verify tokens
            max_page_size: Upper bound on documents per page
        """
        self._collection = collection
        self._advisor = advisor
        self._codec = codec
        self.max_page_size = max_page_size

    @property
    def codec(self) -> CursorCodec:
        return self._codec

    def resolve_page_size(self, page_size: int | None, query: QuerySpec) -> int:
        """
        Pick the page size: explicit value, else the query limit, capped at the maximum.

        Raises:
            ValidationError: If the requested size is not a positive integer
        """
        size = query.limit if page_size is None else page_size
        if isinstance(size, bool) or not isinstance(size, int) or size < 1:
            raise ValidationError(f"page_size must be a positive integer, got {size!r}")
        if size > self.max_page_size:
            logger.warning(
                f"Page size {size} exceeds maximum {self.max_page_size}. "
                f"Capping to {self.max_page_size}"
            )
            return self.max_page_size
        return size

    async def paginate(
        self,
        query: QuerySpec,
        cursor: str | None = None,
        page_size: int | None = None,
        *,
        deadline: Deadline | float | None = None,
    ) -> Page:
        """
        Fetch one page.

        Args:
            query: Query to paginate (validated against the indexes first)
            cursor: Token from a previous page, or None for the first page
            page_size: Documents per page (defaults to ``query.limit``)
            deadline: Deadline or seconds for the store round trip

        Returns:
            Page with items and the next cursor

        Raises:
            UnindexedQueryError: If no index covers the query
            InvalidCursorError: If the cursor is invalid or belongs to another ordering
        """
        match = self._advisor.validate(query)
        size = self.resolve_page_size(page_size, query)
        order = ordering_for(query)
        deadline = Deadline.coerce(deadline)

        store_filter = query.to_filter()
        if cursor is not None:
            data = self._codec.decode_data(cursor)
            if data.sort != order:
                raise InvalidCursorError(
                    "Cursor was issued for a different sort order",
                    context={"expected": [f for f, _ in order], "got": list(data.sort_fields)},
                )
            seek = seek_filter(order, data.key)
            store_filter = {"$and": [store_filter, seek]} if store_filter else seek

        collection_name = getattr(self._collection, "name", None)
        with map_store_errors("paginate", collection=collection_name, index=match.index.name):
            find_cursor = self._collection.find(store_filter).sort(list(order)).limit(size + 1)
            max_time_ms = deadline.max_time_ms() if deadline is not None else None
            if max_time_ms is not None:
                find_cursor = find_cursor.max_time_ms(max_time_ms)
            documents = await run_with_deadline(
                find_cursor.to_list(length=size + 1), deadline, "paginate"
            )

        items = documents[:size]
        next_cursor = None
        if len(documents) > size and items:
            last = items[-1]
            next_cursor = self._codec.encode(
                tuple(_get_path(last, f) for f, _ in order), sort=order
            )

        logger.debug(
            f"Paginated '{collection_name}' via index '{match.index.name}': "
            f"{len(items)} items, more={next_cursor is not None}"
        )
        return Page(items=items, next_cursor=next_cursor, warnings=match.warnings)

    async def iterate(
        self,
        query: QuerySpec,
        page_size: int | None = None,
        *,
        cursor: str | None = None,
        deadline_per_page: float | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """
        Yield every matching document, page by page.

        Each page gets its own deadline; the walk as a whole is unbounded.
        """
        while True:
            page = await self.paginate(query, cursor, page_size, deadline=deadline_per_page)
            for item in page.items:
                yield item
            if page.next_cursor is None:
                return
            cursor = page.next_cursor
