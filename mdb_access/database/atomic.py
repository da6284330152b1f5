"""
Single-round-trip atomic mutations.

Every operation is one ``find_one_and_update`` request: the guard (if any)
is part of the filter, so the store evaluates it against the current value
and applies the update in the same step. Nothing reads before it writes,
and concurrent guarded decrements can never push a value past its bound.

Operations are not idempotent: applying the same operation twice mutates
twice. Callers that retry must deduplicate on their own key.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from bson.decimal128 import Decimal128
from pymongo import ReturnDocument

from ..constants import ID_FIELD
from ..exceptions import ValidationError
from .deadline import Deadline, run_with_deadline
from .errors import map_store_errors

logger = logging.getLogger(__name__)

_NUMERIC_TYPES = (int, float, Decimal, Decimal128)


class OperationKind(str, Enum):
    """Kinds of atomic mutation."""

    SET = "set"
    INCREMENT = "increment"
    CAPPED_PUSH = "capped_push"
    GUARDED_ADJUST = "guarded_adjust"


def _is_number(value: Any) -> bool:
    return isinstance(value, _NUMERIC_TYPES) and not isinstance(value, bool)


@dataclass(frozen=True)
class AtomicOperation:
    """
    A conditional mutation of one field of one document.

    Use the constructors rather than building instances directly:

        AtomicOperation.increment({"_id": oid}, "views")
        AtomicOperation.capped_push({"_id": oid}, "recent", [event], cap=10)
        AtomicOperation.guarded_adjust(
            {"_id": oid}, "balance", -30, guard={"balance": {"$gte": 30}}
        )

    Attributes:
        kind: Which mutation to perform
        selector: Filter identifying the target document
        field: Target field (dotted paths allowed)
        value: New value (set), delta (increment / guarded_adjust) or items (capped_push)
        guard: Extra filter the current document must satisfy for the update to apply
        cap: Maximum array length kept by capped_push
        collection: Target collection name, when not the owning repository's
    """

    kind: OperationKind
    selector: Mapping[str, Any]
    field: str
    value: Any = None
    guard: Mapping[str, Any] | None = None
    cap: int | None = None
    collection: str | None = None

    def __post_init__(self) -> None:
        try:
            kind = OperationKind(self.kind)
        except ValueError as e:
            raise ValidationError(f"Unknown operation kind {self.kind!r}") from e
        object.__setattr__(self, "kind", kind)

        if not isinstance(self.selector, Mapping) or not self.selector:
            raise ValidationError("Operation selector must be a non-empty document")
        object.__setattr__(self, "selector", dict(self.selector))

        if not isinstance(self.field, str) or not self.field:
            raise ValidationError("Operation field must be a non-empty string")
        if self.field.startswith("$") or ".$" in self.field:
            raise ValidationError(
                f"Operation field '{self.field}' must not contain operators",
                error_paths=[self.field],
            )
        if self.field == ID_FIELD or self.field.startswith(f"{ID_FIELD}."):
            raise ValidationError("Document identifiers are immutable", error_paths=[self.field])

        if self.guard is not None:
            if not isinstance(self.guard, Mapping):
                raise ValidationError("Operation guard must be a document")
            object.__setattr__(self, "guard", dict(self.guard))

        if kind in (OperationKind.INCREMENT, OperationKind.GUARDED_ADJUST):
            if not _is_number(self.value):
                raise ValidationError(
                    f"{kind.value} needs a numeric delta, got {type(self.value).__name__}",
                    error_paths=[self.field],
                )
        if kind is OperationKind.GUARDED_ADJUST and not self.guard:
            raise ValidationError("guarded_adjust needs a guard predicate")

        if kind is OperationKind.CAPPED_PUSH:
            if isinstance(self.cap, bool) or not isinstance(self.cap, int) or self.cap < 1:
                raise ValidationError(f"capped_push needs a positive cap, got {self.cap!r}")
            items = (
                list(self.value)
                if isinstance(self.value, Sequence) and not isinstance(self.value, (str, bytes))
                else [self.value]
            )
            if not items:
                raise ValidationError("capped_push needs at least one item")
            object.__setattr__(self, "value", items)
        elif self.cap is not None:
            raise ValidationError(f"cap only applies to capped_push, not {kind.value}")

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def set_field(
        cls,
        selector: Mapping[str, Any],
        field: str,
        value: Any,
        *,
        guard: Mapping[str, Any] | None = None,
        collection: str | None = None,
    ) -> "AtomicOperation":
        return cls(OperationKind.SET, selector, field, value, guard=guard, collection=collection)

    @classmethod
    def increment(
        cls,
        selector: Mapping[str, Any],
        field: str,
        delta: int | float = 1,
        *,
        guard: Mapping[str, Any] | None = None,
        collection: str | None = None,
    ) -> "AtomicOperation":
        return cls(
            OperationKind.INCREMENT, selector, field, delta, guard=guard, collection=collection
        )

    @classmethod
    def capped_push(
        cls,
        selector: Mapping[str, Any],
        field: str,
        items: Any,
        cap: int,
        *,
        guard: Mapping[str, Any] | None = None,
        collection: str | None = None,
    ) -> "AtomicOperation":
        return cls(
            OperationKind.CAPPED_PUSH,
            selector,
            field,
            items,
            guard=guard,
            cap=cap,
            collection=collection,
        )

    @classmethod
    def guarded_adjust(
        cls,
        selector: Mapping[str, Any],
        field: str,
        delta: int | float,
        guard: Mapping[str, Any],
        *,
        collection: str | None = None,
    ) -> "AtomicOperation":
        return cls(
            OperationKind.GUARDED_ADJUST, selector, field, delta, guard=guard, collection=collection
        )

    @classmethod
    def guarded_decrement(
        cls,
        selector: Mapping[str, Any],
        field: str,
        amount: int | float,
        *,
        floor: int | float = 0,
        collection: str | None = None,
    ) -> "AtomicOperation":
        """Subtract ``amount`` only while the result stays at or above ``floor``."""
        if not _is_number(amount) or amount < 0:
            raise ValidationError(f"amount must be a non-negative number, got {amount!r}")
        return cls.guarded_adjust(
            selector,
            field,
            -amount,
            guard={field: {"$gte": floor + amount}},
            collection=collection,
        )

    # ------------------------------------------------------------------
    # Store rendering
    # ------------------------------------------------------------------

    def to_filter(self) -> dict[str, Any]:
        """Selector combined with the guard."""
        if not self.guard:
            return dict(self.selector)
        if set(self.selector) & set(self.guard):
            return {"$and": [dict(self.selector), dict(self.guard)]}
        return {**self.selector, **self.guard}

    def to_update(self) -> dict[str, Any]:
        """Update document for ``find_one_and_update``."""
        if self.kind is OperationKind.SET:
            return {"$set": {self.field: self.value}}
        if self.kind is OperationKind.CAPPED_PUSH:
            return {"$push": {self.field: {"$each": list(self.value), "$slice": -self.cap}}}
        return {"$inc": {self.field: self.value}}


@dataclass(frozen=True)
class MutationResult:
    """
    Outcome of an atomic operation.

    ``matched=False`` means the selector found nothing or the guard did not
    hold; no mutation happened. That is a normal outcome, not an error.
    """

    matched: bool
    new_value: Any = None
    document: dict[str, Any] | None = None


def get_field(document: Mapping[str, Any] | None, path: str) -> Any:
    """Read a dotted path from a document (None if absent)."""
    value: Any = document
    for part in path.split("."):
        if isinstance(value, Mapping):
            value = value.get(part)
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return None
    return value


class AtomicMutator:
    """
    Applies AtomicOperations to one collection.

    Example:
        mutator = AtomicMutator(db.accounts)
        result = await mutator.apply(
            AtomicOperation.guarded_decrement({"_id": oid}, "balance", 30)
        )
        if not result.matched:
            ...  # insufficient funds
    """

    def __init__(self, collection: Any):
        """
        Initialize the mutator.

        Args:
            collection: AsyncIOMotorCollection to mutate
        """
        self._collection = collection

    @property
    def collection_name(self) -> str | None:
        return getattr(self._collection, "name", None)

    async def apply(
        self,
        operation: AtomicOperation,
        *,
        session: Any = None,
        deadline: Deadline | float | None = None,
    ) -> MutationResult:
        """
        Apply an operation in a single store request.

        Args:
            operation: The mutation
            session: Client session when running inside a transaction
            deadline: Deadline or seconds for the round trip

        Returns:
            MutationResult with the post-mutation value when matched
        """
        kwargs: dict[str, Any] = {"return_document": ReturnDocument.AFTER}
        if session is not None:
            kwargs["session"] = session

        with map_store_errors(
            f"atomic.{operation.kind.value}",
            collection=self.collection_name,
            field=operation.field,
        ):
            document = await run_with_deadline(
                self._collection.find_one_and_update(
                    operation.to_filter(), operation.to_update(), **kwargs
                ),
                deadline,
                f"atomic.{operation.kind.value}",
            )

        if document is None:
            logger.debug(
                f"{operation.kind.value} on '{self.collection_name}.{operation.field}' "
                f"did not match (selector={operation.selector}, guard={operation.guard})"
            )
            return MutationResult(matched=False)

        return MutationResult(
            matched=True,
            new_value=get_field(document, operation.field),
            document=document,
        )
