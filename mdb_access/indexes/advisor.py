"""
Index-driven query validation.

The advisor holds the declared indexes of one collection and rejects any
query that no index can serve. Coverage follows the compound index prefix
rule: equality fields first, then sort fields, then range fields.

A query whose filter is covered but whose sort is not is still accepted;
the match carries a warning because the store will have to sort in memory.
"""

import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from ..exceptions import DuplicateIndexError, UnindexedQueryError
from .definitions import ID_INDEX, IndexDefinition, QuerySpec
from .helpers import partial_filter_implied

logger = logging.getLogger(__name__)

IN_MEMORY_SORT_WARNING = (
    "Index '{index}' covers the filter but not the sort order {sort}; "
    "results will be sorted in memory"
)


@dataclass(frozen=True)
class IndexMatch:
    """
    Result of validating a query against the registered indexes.

    Attributes:
        index: The selected index
        warnings: Advisory messages (e.g. in-memory sort)
        sort_covered: Whether the index also delivers the requested order
        reverse: Whether the index is walked backwards to deliver the order
        matched_fields: Length of the index prefix the query uses
    """

    index: IndexDefinition
    warnings: tuple[str, ...] = ()
    sort_covered: bool = True
    reverse: bool = False
    matched_fields: int = 0


class IndexAdvisor:
    """
    Registry of declared indexes for one collection.

    Indexes are registered once at startup; afterwards the advisor is only
    read, so lookups need no locking.

    Example:
        advisor = IndexAdvisor("orders")
        advisor.register_index(IndexDefinition(keys=[("tenant", 1), ("created_at", -1)]))

        match = advisor.validate(
            QuerySpec(equality={"tenant": "acme"}, sort=[("created_at", -1)])
        )
        match.index.name  # "tenant_1_created_at_-1"
    """

    def __init__(
        self,
        collection_name: str = "",
        definitions: Iterable[IndexDefinition | Mapping[str, Any]] = (),
        include_id_index: bool = True,
    ):
        """
        Initialize the advisor.

        Args:
            collection_name: Collection the indexes belong to (used in errors and logs)
            definitions: Indexes to register immediately
            include_id_index: Register the implicit ``_id`` index
        """
        self.collection_name = collection_name
        self._indexes: list[IndexDefinition] = []
        if include_id_index:
            self._indexes.append(ID_INDEX)
        for definition in definitions:
            self.register_index(definition)

    @property
    def indexes(self) -> tuple[IndexDefinition, ...]:
        return tuple(self._indexes)

    def __len__(self) -> int:
        return len(self._indexes)

    def __iter__(self) -> Iterator[IndexDefinition]:
        return iter(self._indexes)

    def get(self, name: str) -> IndexDefinition | None:
        for index in self._indexes:
            if index.name == name:
                return index
        return None

    def register_index(self, definition: IndexDefinition | Mapping[str, Any]) -> IndexDefinition:
        """
        Add an index definition.

        Args:
            definition: IndexDefinition or configuration dictionary

        Returns:
            The registered definition

        Raises:
            DuplicateIndexError: If an index with the same key order (or name) exists
        """
        if not isinstance(definition, IndexDefinition):
            definition = IndexDefinition.from_dict(definition)

        for existing in self._indexes:
            if existing.signature == definition.signature:
                raise DuplicateIndexError(
                    f"Index with keys {list(definition.signature)} is already registered "
                    f"as '{existing.name}'",
                    signature=definition.signature,
                    context={"collection": self.collection_name},
                )
            if existing.name == definition.name:
                raise DuplicateIndexError(
                    f"Index name '{definition.name}' is already registered with keys "
                    f"{list(existing.signature)}",
                    signature=definition.signature,
                    context={"collection": self.collection_name},
                )

        self._indexes.append(definition)
        logger.debug(
            f"Registered index '{definition.name}' on '{self.collection_name}' "
            f"(unique={definition.unique}, partial={definition.is_partial})"
        )
        return definition

    def validate(self, query: QuerySpec) -> IndexMatch:
        """
        Select the index that best serves a query.

        Full matches (filter and sort) beat filter-only matches; among those,
        the longest matched prefix wins, then the shorter index, then the one
        registered first.

        Args:
            query: The query to validate

        Returns:
            IndexMatch describing the chosen index

        Raises:
            UnindexedQueryError: If no index covers the query
        """
        best: IndexMatch | None = None
        best_rank: tuple[Any, ...] | None = None

        for position, index in enumerate(self._indexes):
            match = self._match(index, query)
            if match is None:
                continue
            rank = (match.sort_covered, match.matched_fields, -len(index.keys), -position)
            if best_rank is None or rank > best_rank:
                best, best_rank = match, rank

        if best is None:
            raise UnindexedQueryError(
                f"No index on '{self.collection_name}' covers the query "
                f"(equality={list(query.equality_fields)}, sort={list(query.sort_fields)}, "
                f"range={list(query.range_fields)})",
                collection=self.collection_name,
                equality_fields=query.equality_fields,
                sort_fields=query.sort_fields,
                range_fields=query.range_fields,
            )

        for warning in best.warnings:
            logger.warning(f"{self.collection_name}: {warning}")
        return best

    def _match(self, index: IndexDefinition, query: QuerySpec) -> IndexMatch | None:
        """Apply the equality-sort-range prefix rule to one index."""
        if not partial_filter_implied(index.partial_filter, query.equality, query.ranges):
            return None

        keys = index.keys
        equality = set(query.equality_fields)
        sort = query.effective_sort
        sort_fields = {f for f, _ in sort}
        # A range on a sort field is served by the sort segment itself
        ranges = set(query.range_fields) - sort_fields

        position = len(equality)
        if position > len(keys) or {f for f, _ in keys[:position]} != equality:
            return None

        sort_segment = keys[position : position + len(sort)]
        if len(sort_segment) == len(sort) and all(
            key_field == sort_field for (key_field, _), (sort_field, _) in zip(sort_segment, sort)
        ):
            same = all(kd == sd for (_, kd), (_, sd) in zip(sort_segment, sort))
            inverted = all(kd == -sd for (_, kd), (_, sd) in zip(sort_segment, sort))
            range_start = position + len(sort)
            if (same or inverted) and self._covers(keys, range_start, ranges):
                return IndexMatch(
                    index=index,
                    sort_covered=True,
                    reverse=bool(sort) and not same,
                    matched_fields=range_start + len(ranges),
                )

        if not sort:
            return None

        # Filter-only: equality then every range field (including ranges on sort fields).
        # Without any filter the index contributes nothing, so the query is unindexed.
        all_ranges = set(query.range_fields)
        if position + len(all_ranges) == 0:
            return None
        if self._covers(keys, position, all_ranges):
            return IndexMatch(
                index=index,
                warnings=(
                    IN_MEMORY_SORT_WARNING.format(index=index.name, sort=list(query.sort)),
                ),
                sort_covered=False,
                matched_fields=position + len(all_ranges),
            )
        return None

    @staticmethod
    def _covers(keys: tuple[tuple[str, int], ...], start: int, fields: set[str]) -> bool:
        segment = keys[start : start + len(fields)]
        return len(segment) == len(fields) and {f for f, _ in segment} == fields
