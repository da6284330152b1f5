"""
Index and query value types.

``IndexDefinition`` describes a declared index; ``QuerySpec`` describes a
query already validated for shape by the calling layer. Both are immutable
so they can be shared freely between tasks.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pymongo import IndexModel

from ..constants import (
    ASCENDING,
    DEFAULT_PAGE_SIZE,
    DESCENDING,
    ID_FIELD,
    ID_INDEX_NAME,
    MAX_INDEX_FIELDS,
    RANGE_OPERATORS,
)
from ..exceptions import ValidationError
from .helpers import default_index_name, is_operator_document, normalize_keys

KeySpec = Mapping[str, int] | list[tuple[str, int]] | tuple[tuple[str, int], ...]


def _coerce_keys(keys: KeySpec, what: str) -> tuple[tuple[str, int], ...]:
    try:
        normalized = normalize_keys(keys)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{what} must be (field, direction) pairs: {e}") from e

    seen: set[str] = set()
    result: list[tuple[str, int]] = []
    for field_name, direction in normalized:
        if not isinstance(field_name, str) or not field_name:
            raise ValidationError(f"{what} field names must be non-empty strings")
        if field_name.startswith("$"):
            raise ValidationError(
                f"{what} field '{field_name}' must not start with '$'",
                error_paths=[field_name],
            )
        if direction not in (ASCENDING, DESCENDING) or isinstance(direction, bool):
            raise ValidationError(
                f"{what} direction for '{field_name}' must be 1 or -1, got {direction!r}",
                error_paths=[field_name],
            )
        if field_name in seen:
            raise ValidationError(
                f"{what} field '{field_name}' appears more than once",
                error_paths=[field_name],
            )
        seen.add(field_name)
        result.append((field_name, int(direction)))
    return tuple(result)


@dataclass(frozen=True)
class IndexDefinition:
    """
    A declared compound index.

    Example:
        IndexDefinition(
            keys=[("status", 1), ("created_at", -1)],
            partial_filter={"archived": False},
        )
    """

    keys: tuple[tuple[str, int], ...]
    unique: bool = False
    partial_filter: Mapping[str, Any] | None = None
    name: str = ""

    def __post_init__(self) -> None:
        keys = _coerce_keys(self.keys, "Index key")
        if not keys:
            raise ValidationError("Index definition needs at least one key")
        if len(keys) > MAX_INDEX_FIELDS:
            raise ValidationError(
                f"Index has {len(keys)} keys, maximum is {MAX_INDEX_FIELDS}"
            )
        object.__setattr__(self, "keys", keys)
        if self.partial_filter is not None:
            object.__setattr__(self, "partial_filter", dict(self.partial_filter))
        if not self.name:
            object.__setattr__(self, "name", default_index_name(keys))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IndexDefinition":
        """
        Build a definition from a configuration dictionary.

        Accepts ``{"keys": ..., "unique": ..., "partial_filter": ..., "name": ...}``;
        ``partialFilterExpression`` is accepted as an alias.
        """
        if "keys" not in data or not data["keys"]:
            raise ValidationError("Index definition is missing 'keys'")
        partial = data.get("partial_filter", data.get("partialFilterExpression"))
        return cls(
            keys=data["keys"],
            unique=bool(data.get("unique", False)),
            partial_filter=partial,
            name=data.get("name", ""),
        )

    @property
    def signature(self) -> tuple[tuple[str, int], ...]:
        """Ordered key signature; two definitions with the same one are duplicates."""
        return self.keys

    @property
    def fields(self) -> tuple[str, ...]:
        return tuple(f for f, _ in self.keys)

    @property
    def is_partial(self) -> bool:
        return bool(self.partial_filter)

    def to_index_model(self) -> IndexModel:
        """Render as a pymongo ``IndexModel`` for index creation."""
        options: dict[str, Any] = {"name": self.name}
        if self.unique:
            options["unique"] = True
        if self.partial_filter:
            options["partialFilterExpression"] = dict(self.partial_filter)
        return IndexModel(list(self.keys), **options)


ID_INDEX = IndexDefinition(keys=((ID_FIELD, ASCENDING),), unique=True, name=ID_INDEX_NAME)
"""The index every MongoDB collection carries on ``_id``."""


@dataclass(frozen=True)
class QuerySpec:
    """
    A list query: equality filters, range filters, sort clause and limit.

    Example:
        QuerySpec(
            equality={"tenant": "acme", "status": "open"},
            ranges={"total": {"$gte": 100}},
            sort=[("created_at", -1)],
            limit=20,
        )
    """

    equality: Mapping[str, Any] = field(default_factory=dict)
    ranges: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    sort: tuple[tuple[str, int], ...] = ()
    limit: int = DEFAULT_PAGE_SIZE

    def __post_init__(self) -> None:
        equality = dict(self.equality or {})
        ranges = {k: dict(v) for k, v in (self.ranges or {}).items()}

        for field_name, value in equality.items():
            if not isinstance(field_name, str) or not field_name or field_name.startswith("$"):
                raise ValidationError(
                    f"Invalid equality field {field_name!r}", error_paths=[str(field_name)]
                )
            if is_operator_document(value):
                raise ValidationError(
                    f"Equality filter on '{field_name}' must be a plain value, "
                    f"use ranges for operators",
                    error_paths=[field_name],
                )

        for field_name, ops in ranges.items():
            if not isinstance(field_name, str) or not field_name or field_name.startswith("$"):
                raise ValidationError(
                    f"Invalid range field {field_name!r}", error_paths=[str(field_name)]
                )
            if field_name in equality:
                raise ValidationError(
                    f"Field '{field_name}' cannot be both an equality and a range filter",
                    error_paths=[field_name],
                )
            if not ops:
                raise ValidationError(
                    f"Range filter on '{field_name}' is empty", error_paths=[field_name]
                )
            unknown = [op for op in ops if op not in RANGE_OPERATORS]
            if unknown:
                raise ValidationError(
                    f"Unsupported range operator(s) {unknown} on '{field_name}'. "
                    f"Allowed: {', '.join(RANGE_OPERATORS)}",
                    error_paths=[f"{field_name}.{op}" for op in unknown],
                )

        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or self.limit < 1:
            raise ValidationError(f"limit must be a positive integer, got {self.limit!r}")

        object.__setattr__(self, "equality", equality)
        object.__setattr__(self, "ranges", ranges)
        object.__setattr__(self, "sort", _coerce_keys(self.sort or (), "Sort"))

    @property
    def equality_fields(self) -> tuple[str, ...]:
        return tuple(self.equality)

    @property
    def range_fields(self) -> tuple[str, ...]:
        return tuple(self.ranges)

    @property
    def sort_fields(self) -> tuple[str, ...]:
        return tuple(f for f, _ in self.sort)

    @property
    def effective_sort(self) -> tuple[tuple[str, int], ...]:
        """Sort keys that still order results once equality fields are pinned."""
        return tuple((f, d) for f, d in self.sort if f not in self.equality)

    def to_filter(self) -> dict[str, Any]:
        """Render the MongoDB filter document."""
        query: dict[str, Any] = dict(self.equality)
        for field_name, ops in self.ranges.items():
            query[field_name] = dict(ops)
        return query
