"""
Document store

Owns the client and database, hands out one RepositoryFacade per
collection and runs transactions that span collections.
"""

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from contextlib import AbstractAsyncContextManager
from typing import Any, TypeVar

from ..config import AccessLayerConfig
from ..database.connection import connect, create_mongo_client, ping
from ..database.transactions import RetryPolicy, TransactionContext, TransactionScope
from ..exceptions import ValidationError
from ..indexes.definitions import IndexDefinition
from ..observability import MetricsCollector, get_metrics_collector
from ..pagination.cursor import CursorCodec
from .facade import RepositoryFacade

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DocumentStore:
    """
    Factory and cache for repositories over one database.

    Repositories are accessed by name or attribute and created lazily:

        store = DocumentStore.from_config(AccessLayerConfig.from_env())
        store.repository("accounts", indexes=[IndexDefinition(keys=[("owner", 1)])])
        await store.ensure_indexes()

        account = await store.accounts.get(account_id)

    Transactions through the store span collections, so every enlisted
    operation names its collection:

        async def transfer(tx):
            await tx.enlist(AtomicOperation.guarded_decrement(
                {"_id": a}, "balance", 30, collection="accounts"))
            await tx.enlist(AtomicOperation.capped_push(
                {"_id": a}, "history", [entry], cap=50, collection="ledgers"))

        await store.with_transaction(transfer)
    """

    def __init__(
        self,
        client: Any,
        database: Any,
        config: AccessLayerConfig | None = None,
        codec: CursorCodec | None = None,
        metrics: MetricsCollector | None = None,
        owns_client: bool = False,
    ):
        """
        Initialize the store.

        Args:
            client: AsyncIOMotorClient
            database: AsyncIOMotorDatabase
            config: Access layer configuration shared by every repository
            codec: Cursor codec (built from config.cursor_secret when omitted)
            metrics: Metrics collector (defaults to the global collector)
            owns_client: Close the client in ``close()``
        """
        self._client = client
        self._database = database
        self.config = config
        self._codec = codec or CursorCodec(config.cursor_secret if config else None)
        self._metrics = metrics or get_metrics_collector()
        self._owns_client = owns_client
        self._repositories: dict[str, RepositoryFacade] = {}
        self._transactions = TransactionScope(
            client,
            database,
            retry_policy=RetryPolicy.from_config(config) if config else None,
            **({"max_duration": config.txn_max_duration} if config else {}),
        )

    @classmethod
    def from_config(cls, config: AccessLayerConfig) -> "DocumentStore":
        """
        Create a store with its own client.

        Raises:
            ConfigurationError: If mongo_uri or db_name is missing
        """
        client = create_mongo_client(config)
        return cls(client, client[config.db_name], config=config, owns_client=True)

    @classmethod
    async def connect(cls, config: AccessLayerConfig) -> "DocumentStore":
        """
        Create a store with its own client after checking the server answers.

        Raises:
            ConfigurationError: If mongo_uri or db_name is missing
            TransientStoreError: If the server cannot be reached
        """
        client = await connect(config)
        return cls(client, client[config.db_name], config=config, owns_client=True)

    def repository(
        self,
        name: str,
        indexes: Iterable[IndexDefinition | Mapping[str, Any]] | None = None,
        schema: Mapping[str, Any] | None = None,
    ) -> RepositoryFacade:
        """
        Get or create the repository for a collection.

        Indexes and schema can only be given the first time a repository is
        requested; they are fixed afterwards.

        Args:
            name: Collection name
            indexes: Declared indexes for the collection
            schema: Optional JSON Schema applied on create

        Returns:
            RepositoryFacade for the collection
        """
        if name in self._repositories:
            if indexes is not None or schema is not None:
                raise ValidationError(
                    f"Repository '{name}' is already configured; indexes and schema "
                    f"are fixed after first use",
                    context={"collection": name},
                )
            return self._repositories[name]

        repo = RepositoryFacade(
            self._client,
            self._database,
            name,
            indexes=indexes or (),
            schema=schema,
            config=self.config,
            codec=self._codec,
            metrics=self._metrics,
        )
        self._repositories[name] = repo
        logger.debug(f"Created repository for '{name}' with {len(repo.advisor)} indexes")
        return repo

    def __getattr__(self, name: str) -> RepositoryFacade:
        """
        Access repositories via attribute syntax.

        Example:
            store.orders  # RepositoryFacade for the 'orders' collection
        """
        if name.startswith("_"):
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")
        return self.repository(name)

    @property
    def repositories(self) -> dict[str, RepositoryFacade]:
        return dict(self._repositories)

    @property
    def database(self) -> Any:
        """Underlying AsyncIOMotorDatabase, for operations outside the facade."""
        return self._database

    @property
    def transactions(self) -> TransactionScope:
        return self._transactions

    async def with_transaction(
        self,
        fn: Callable[[TransactionContext], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run ``fn`` in a transaction spanning any collections of this database."""
        return await self._transactions.with_transaction(fn, timeout)

    def transaction(
        self, timeout: float | None = None
    ) -> AbstractAsyncContextManager[TransactionContext]:
        return self._transactions.transaction(timeout)

    async def ensure_indexes(self) -> dict[str, list[str]]:
        """Create the declared indexes of every repository. Returns created names per collection."""
        created: dict[str, list[str]] = {}
        for name, repo in self._repositories.items():
            created[name] = await repo.ensure_indexes()
        return created

    async def ping(self) -> None:
        await ping(self._client)

    async def close(self) -> None:
        """Drop cached repositories and close the client if this store created it."""
        self._repositories.clear()
        if self._owns_client and self._client is not None:
            self._client.close()
            logger.info("MongoDB connection closed.")

    async def __aenter__(self) -> "DocumentStore":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()
