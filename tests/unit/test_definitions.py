"""
Unit tests for index definitions, query specs and index helpers.
"""

import pytest
from pymongo import IndexModel

from mdb_access.exceptions import ValidationError
from mdb_access.indexes import IndexDefinition, QuerySpec
from mdb_access.indexes.helpers import (
    default_index_name,
    is_id_index,
    normalize_keys,
    partial_filter_implied,
    value_satisfies,
)


@pytest.mark.unit
class TestIndexDefinition:
    """Test IndexDefinition construction."""

    def test_default_name(self):
        """Test that the name follows MongoDB's convention."""
        definition = IndexDefinition(keys=[("status", 1), ("created_at", -1)])
        assert definition.name == "status_1_created_at_-1"
        assert definition.fields == ("status", "created_at")

    def test_keys_from_mapping(self):
        """Test that dict keys keep their order."""
        definition = IndexDefinition(keys={"a": 1, "b": -1})
        assert definition.keys == (("a", 1), ("b", -1))

    def test_empty_keys_rejected(self):
        with pytest.raises(ValidationError, match="at least one key"):
            IndexDefinition(keys=[])

    def test_repeated_field_rejected(self):
        with pytest.raises(ValidationError, match="more than once"):
            IndexDefinition(keys=[("a", 1), ("a", -1)])

    def test_operator_field_rejected(self):
        with pytest.raises(ValidationError):
            IndexDefinition(keys=[("$where", 1)])

    def test_to_index_model(self):
        """Test rendering as a pymongo IndexModel."""
        definition = IndexDefinition(
            keys=[("sku", 1)], unique=True, partial_filter={"active": True}
        )
        model = definition.to_index_model()
        assert isinstance(model, IndexModel)
        assert model.document["name"] == "sku_1"
        assert model.document["unique"] is True
        assert model.document["partialFilterExpression"] == {"active": True}

    def test_from_dict_missing_keys(self):
        with pytest.raises(ValidationError, match="missing 'keys'"):
            IndexDefinition.from_dict({"unique": True})


@pytest.mark.unit
class TestQuerySpec:
    """Test QuerySpec shape validation."""

    def test_to_filter(self):
        query = QuerySpec(
            equality={"tenant": "acme"},
            ranges={"total": {"$gte": 10, "$lt": 100}},
            sort=[("created_at", -1)],
        )
        assert query.to_filter() == {"tenant": "acme", "total": {"$gte": 10, "$lt": 100}}
        assert query.sort == (("created_at", -1),)

    def test_operator_in_equality_rejected(self):
        """Test that equality values must be plain values."""
        with pytest.raises(ValidationError, match="plain value"):
            QuerySpec(equality={"total": {"$gt": 5}})

    def test_unsupported_range_operator(self):
        with pytest.raises(ValidationError, match="Unsupported range operator"):
            QuerySpec(ranges={"tags": {"$regex": "^a"}})

    def test_field_in_equality_and_range(self):
        with pytest.raises(ValidationError, match="both an equality and a range"):
            QuerySpec(equality={"a": 1}, ranges={"a": {"$gt": 0}})

    @pytest.mark.parametrize("limit", [0, -1, True, "10"])
    def test_invalid_limit(self, limit):
        with pytest.raises(ValidationError, match="limit"):
            QuerySpec(limit=limit)

    def test_effective_sort_drops_pinned_fields(self):
        query = QuerySpec(equality={"tenant": "acme"}, sort=[("tenant", 1), ("created_at", -1)])
        assert query.effective_sort == (("created_at", -1),)

    def test_embedded_document_equality_allowed(self):
        """Test that a document without operator keys is a plain value."""
        query = QuerySpec(equality={"address": {"city": "Paris"}})
        assert query.to_filter() == {"address": {"city": "Paris"}}


@pytest.mark.unit
class TestHelpers:
    """Test index helper functions."""

    def test_normalize_keys(self):
        assert normalize_keys({"a": 1}) == [("a", 1)]
        assert normalize_keys([("a", 1), ("b", -1)]) == [("a", 1), ("b", -1)]

    def test_is_id_index(self):
        assert is_id_index([("_id", 1)]) is True
        assert is_id_index({"_id": 1, "a": 1}) is False

    def test_default_index_name(self):
        assert default_index_name([("a", 1), ("b", -1)]) == "a_1_b_-1"

    def test_value_satisfies(self):
        assert value_satisfies("open", "open") is True
        assert value_satisfies(5, {"$gte": 5, "$lt": 10}) is True
        assert value_satisfies(10, {"$gte": 5, "$lt": 10}) is False
        assert value_satisfies("x", {"$in": ["x", "y"]}) is True
        assert value_satisfies("x", {"$exists": True}) is True
        assert value_satisfies("x", {"$type": "string"}) is False

    def test_partial_filter_with_and(self):
        partial = {"$and": [{"status": "open"}, {"total": {"$gt": 0}}]}
        assert partial_filter_implied(partial, {"status": "open"}, {"total": {"$gte": 5}})
        assert not partial_filter_implied(partial, {"status": "open"}, {})

    def test_no_partial_filter(self):
        assert partial_filter_implied(None, {}, {}) is True
