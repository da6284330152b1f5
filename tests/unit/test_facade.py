"""
Unit tests for RepositoryFacade and DocumentStore.

Tests the per-collection entry point end to end against in-memory MongoDB:
writes with validation, index-checked reads, atomic mutations,
transactions, metrics and repository caching.
"""

from datetime import datetime

import pytest
from bson import ObjectId

from mdb_access.config import AccessLayerConfig
from mdb_access.database import AtomicOperation
from mdb_access.exceptions import (
    CastError,
    ConfigurationError,
    DuplicateKeyError,
    FatalError,
    GuardFailedError,
    UnindexedQueryError,
    ValidationError,
)
from mdb_access.indexes import IndexDefinition, QuerySpec
from mdb_access.repositories import DocumentStore, RepositoryFacade

PRODUCT_SCHEMA = {
    "type": "object",
    "required": ["sku", "qty"],
    "properties": {
        "sku": {"type": "string"},
        "qty": {"type": "integer", "minimum": 0},
    },
}


@pytest.fixture
def products(mongo_client, database, access_config, codec, metrics):
    return RepositoryFacade(
        mongo_client,
        database,
        "products",
        indexes=[
            IndexDefinition(keys=[("sku", 1)], unique=True),
            IndexDefinition(keys=[("category", 1), ("qty", -1)]),
        ],
        schema=PRODUCT_SCHEMA,
        config=access_config,
        codec=codec,
        metrics=metrics,
    )


@pytest.fixture
def store(mongo_client, database, access_config, codec, metrics):
    return DocumentStore(mongo_client, database, config=access_config, codec=codec, metrics=metrics)


@pytest.mark.unit
class TestWrites:
    """Test create / delete."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, products):
        product_id = await products.create({"sku": "A1", "qty": 3})

        assert ObjectId.is_valid(product_id)
        document = await products.get(product_id)
        assert document["sku"] == "A1"
        assert isinstance(document["created_at"], datetime)

    @pytest.mark.asyncio
    async def test_created_at_kept_when_given(self, products):
        stamp = datetime(2024, 1, 1)
        product_id = await products.create({"sku": "A1", "qty": 3, "created_at": stamp})
        assert (await products.get(product_id))["created_at"] == stamp

    @pytest.mark.asyncio
    async def test_caller_id_rejected(self, products):
        with pytest.raises(ValidationError) as exc_info:
            await products.create({"_id": ObjectId(), "sku": "A1", "qty": 1})
        assert exc_info.value.error_paths == ["_id"]

    @pytest.mark.asyncio
    async def test_schema_violation(self, products):
        """Test that every failing path is reported."""
        with pytest.raises(ValidationError) as exc_info:
            await products.create({"sku": 7, "qty": -1})
        assert exc_info.value.error_paths == ["qty", "sku"]

    @pytest.mark.asyncio
    async def test_not_a_mapping(self, products):
        with pytest.raises(ValidationError, match="mapping"):
            await products.create(["sku", "A1"])

    @pytest.mark.asyncio
    async def test_duplicate_key(self, products):
        await products.ensure_indexes()
        await products.create({"sku": "A1", "qty": 1})

        with pytest.raises(DuplicateKeyError) as exc_info:
            await products.create({"sku": "A1", "qty": 2})
        assert exc_info.value.key_value == {"sku": "A1"}

    @pytest.mark.asyncio
    async def test_create_many(self, products):
        ids = await products.create_many(
            [{"sku": "A1", "qty": 1}, {"sku": "A2", "qty": 2}]
        )
        assert len(ids) == 2
        assert await products.create_many([]) == []

    @pytest.mark.asyncio
    async def test_create_many_validates_before_writing(self, products):
        with pytest.raises(ValidationError):
            await products.create_many([{"sku": "A1", "qty": 1}, {"sku": "A2"}])
        assert await products.collection.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_delete(self, products):
        product_id = await products.create({"sku": "A1", "qty": 1})
        assert await products.delete(product_id) is True
        assert await products.delete(product_id) is False
        assert await products.get(product_id) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_id", ["not-an-id", 42, "0" * 23])
    async def test_invalid_id(self, products, bad_id):
        with pytest.raises(CastError):
            await products.get(bad_id)


@pytest.mark.unit
class TestReads:
    """Test index-checked queries."""

    @pytest.mark.asyncio
    async def test_find_pages(self, products):
        await products.create_many(
            [{"sku": f"S{i}", "qty": i, "category": "tools"} for i in range(5)]
        )
        query = products.query(equality={"category": "tools"}, sort=[("qty", -1)])

        first = await products.find(query, page_size=3)
        second = await products.find(query, first.next_cursor, page_size=3)

        assert [p["qty"] for p in first] == [4, 3, 2]
        assert [p["qty"] for p in second] == [1, 0]
        assert second.next_cursor is None

    @pytest.mark.asyncio
    async def test_unindexed_query(self, products):
        with pytest.raises(UnindexedQueryError):
            await products.find(products.query(equality={"colour": "red"}))

    def test_explain(self, products):
        match = products.explain(QuerySpec(equality={"sku": "A1"}))
        assert match.index.name == "sku_1"

    def test_query_uses_configured_page_size(self, products, access_config):
        assert products.query().limit == access_config.default_page_size

    @pytest.mark.asyncio
    async def test_iterate(self, products):
        await products.create_many([{"sku": f"S{i}", "qty": i} for i in range(5)])
        skus = [p["sku"] async for p in products.iterate(products.query(sort=[("sku", 1)]), 2)]
        assert skus == ["S0", "S1", "S2", "S3", "S4"]


@pytest.mark.unit
class TestMutationsAndTransactions:
    """Test atomic operations and transactions through the facade."""

    @pytest.mark.asyncio
    async def test_mutate(self, products):
        product_id = await products.create({"sku": "A1", "qty": 5})
        result = await products.mutate(
            AtomicOperation.guarded_decrement({"_id": ObjectId(product_id)}, "qty", 2)
        )
        assert result.matched is True
        assert result.new_value == 3

    @pytest.mark.asyncio
    async def test_mutate_other_collection_rejected(self, products):
        with pytest.raises(ValidationError, match="not 'products'"):
            await products.mutate(
                AtomicOperation.increment({"sku": "A1"}, "qty", collection="orders")
            )

    @pytest.mark.asyncio
    async def test_with_transaction(self, products):
        first = ObjectId(await products.create({"sku": "A1", "qty": 5}))
        second = ObjectId(await products.create({"sku": "A2", "qty": 0}))

        async def move_stock(tx):
            taken = await tx.enlist(AtomicOperation.guarded_decrement({"_id": first}, "qty", 5))
            if not taken.matched:
                raise GuardFailedError("out of stock")
            await tx.enlist(AtomicOperation.increment({"_id": second}, "qty", 5))

        await products.with_transaction(move_stock)
        with pytest.raises(GuardFailedError):
            await products.with_transaction(move_stock)

        assert (await products.get(first))["qty"] == 0
        assert (await products.get(second))["qty"] == 5

    @pytest.mark.asyncio
    async def test_transaction_without_client(self, database):
        class NoClientDatabase:
            def __getitem__(self, name):
                return database[name]

        repo = RepositoryFacade(None, NoClientDatabase(), "products")
        with pytest.raises(FatalError, match="no client"):
            await repo.with_transaction(lambda tx: None)


@pytest.mark.unit
class TestObservability:
    """Test metrics recorded by facade calls."""

    @pytest.mark.asyncio
    async def test_success_and_failure_recorded(self, products, metrics):
        await products.create({"sku": "A1", "qty": 1})
        with pytest.raises(ValidationError):
            await products.create({"sku": "A2"})

        assert metrics.get_operation_count("repository.create") == 2
        assert metrics.get_error_count("repository.create") == 1

    @pytest.mark.asyncio
    async def test_failure_logged(self, products, caplog):
        with pytest.raises(CastError):
            await products.delete("nope")
        with pytest.raises(ValidationError):
            await products.create({"sku": "A2"})
        assert "repository.create" in caplog.text


@pytest.mark.unit
class TestDocumentStore:
    """Test repository caching and store-wide operations."""

    def test_repository_cached(self, store):
        repo = store.repository("orders", indexes=[IndexDefinition(keys=[("status", 1)])])
        assert store.repository("orders") is repo
        assert store.orders is repo
        assert "orders" in store.repositories

    def test_reconfigure_rejected(self, store):
        store.repository("orders")
        with pytest.raises(ValidationError, match="already configured"):
            store.repository("orders", indexes=[IndexDefinition(keys=[("status", 1)])])

    def test_private_attribute(self, store):
        with pytest.raises(AttributeError):
            store._missing

    def test_invalid_schema(self, store):
        with pytest.raises(ConfigurationError, match="Invalid document schema"):
            store.repository("orders", schema={"type": "nonsense"})

    @pytest.mark.asyncio
    async def test_ensure_indexes(self, store):
        store.repository("orders", indexes=[IndexDefinition(keys=[("status", 1)])])
        store.repository("ledgers")

        created = await store.ensure_indexes()

        assert created == {"orders": ["status_1"], "ledgers": []}
        assert await store.ensure_indexes() == {"orders": [], "ledgers": []}

    @pytest.mark.asyncio
    async def test_cross_collection_transaction(self, store):
        account = ObjectId(await store.repository("accounts").create({"balance": 100}))
        ledger = ObjectId(await store.repository("ledgers").create({"entries": []}))

        async def record(tx):
            await tx.enlist(
                AtomicOperation.guarded_decrement(
                    {"_id": account}, "balance", 40, collection="accounts"
                )
            )
            await tx.enlist(
                AtomicOperation.capped_push(
                    {"_id": ledger}, "entries", {"amount": -40}, cap=10, collection="ledgers"
                )
            )

        await store.with_transaction(record)

        assert (await store.accounts.get(account))["balance"] == 60
        assert (await store.ledgers.get(ledger))["entries"] == [{"amount": -40}]

    @pytest.mark.asyncio
    async def test_close_keeps_borrowed_client(self, store, mongo_client):
        store.repository("orders")
        async with store:
            pass
        assert store.repositories == {}

    def test_from_config_requires_uri(self):
        with pytest.raises(ConfigurationError, match="mongo_uri"):
            DocumentStore.from_config(AccessLayerConfig(db_name="x"))
