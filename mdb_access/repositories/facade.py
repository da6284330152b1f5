"""
Repository facade.

One entry point per collection that composes the index advisor, the cursor
paginator, the atomic mutator and the transaction scope. Every call runs
under a deadline, is logged with ``log_operation`` and timed into the
metrics collector, and surfaces only access layer errors.
"""

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timezone
from typing import Any, TypeVar

from ..config import AccessLayerConfig
from ..constants import DEFAULT_OPERATION_TIMEOUT, DEFAULT_PAGE_SIZE, ID_FIELD, MAX_PAGE_SIZE
from ..database.atomic import AtomicMutator, AtomicOperation, MutationResult
from ..database.deadline import Deadline, run_with_deadline
from ..database.errors import map_store_errors
from ..database.transactions import RetryPolicy, TransactionContext, TransactionScope
from ..exceptions import AccessLayerError, FatalError, ValidationError
from ..indexes.advisor import IndexAdvisor, IndexMatch
from ..indexes.definitions import IndexDefinition, QuerySpec
from ..indexes.manager import ensure_indexes
from ..observability import MetricsCollector, get_metrics_collector, log_operation, operation_scope
from ..pagination.cursor import CursorCodec
from ..pagination.paginator import CursorPaginator, Page
from .validation import SchemaValidator, check_document, to_object_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

CREATED_AT_FIELD = "created_at"


class RepositoryFacade:
    """
    Index-checked reads, atomic writes and transactions for one collection.

    Example:
        orders = RepositoryFacade(
            client,
            client["shop"],
            "orders",
            indexes=[IndexDefinition(keys=[("status", 1), ("created_at", -1)])],
        )
        order_id = await orders.create({"status": "open", "total": 40})
        page = await orders.find(
            QuerySpec(equality={"status": "open"}, sort=[("created_at", -1)])
        )
    """

    def __init__(
        self,
        client: Any,
        database: Any,
        collection_name: str,
        indexes: Iterable[IndexDefinition | Mapping[str, Any]] = (),
        schema: Mapping[str, Any] | None = None,
        config: AccessLayerConfig | None = None,
        codec: CursorCodec | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the facade.

        Args:
            client: AsyncIOMotorClient (needed for transactions)
            database: AsyncIOMotorDatabase holding the collection
            collection_name: Collection name
            indexes: Declared indexes; queries outside them are rejected
            schema: Optional JSON Schema applied on create
            config: Access layer configuration (defaults apply when omitted)
            codec: Cursor codec, shared between repositories of one store
            metrics: Metrics collector (defaults to the global collector)
        """
        if not collection_name or not isinstance(collection_name, str):
            raise ValidationError("collection_name must be a non-empty string")

        self.name = collection_name
        self.config = config
        self._client = client if client is not None else getattr(database, "client", None)
        self._database = database
        self._collection = database[collection_name]
        self._metrics = metrics or get_metrics_collector()
        self._schema = SchemaValidator(schema) if schema is not None else None

        self._default_timeout = config.default_timeout if config else DEFAULT_OPERATION_TIMEOUT
        max_page_size = config.max_page_size if config else MAX_PAGE_SIZE
        self._default_page_size = config.default_page_size if config else DEFAULT_PAGE_SIZE

        self._advisor = IndexAdvisor(collection_name, indexes)
        self._codec = codec or CursorCodec(config.cursor_secret if config else None)
        self._paginator = CursorPaginator(
            self._collection, self._advisor, self._codec, max_page_size=max_page_size
        )
        self._mutator = AtomicMutator(self._collection)
        self._transactions = TransactionScope(
            self._client,
            database,
            default_collection=collection_name,
            retry_policy=RetryPolicy.from_config(config) if config else None,
            **({"max_duration": config.txn_max_duration} if config else {}),
        )

    @property
    def advisor(self) -> IndexAdvisor:
        return self._advisor

    @property
    def collection(self) -> Any:
        return self._collection

    @property
    def transactions(self) -> TransactionScope:
        return self._transactions

    def _deadline(self, timeout: float | None) -> Deadline:
        return Deadline(self._default_timeout if timeout is None else timeout)

    @asynccontextmanager
    async def _track(self, operation: str, **context: Any) -> AsyncIterator[None]:
        name = f"repository.{operation}"
        start_time = time.time()
        with operation_scope(self.name, operation=operation):
            try:
                with map_store_errors(name, collection=self.name):
                    yield
            except AccessLayerError as e:
                duration_ms = (time.time() - start_time) * 1000
                self._metrics.record_operation(name, duration_ms, success=False, collection=self.name)
                log_operation(
                    logger,
                    name,
                    level=logging.WARNING,
                    success=False,
                    duration_ms=duration_ms,
                    collection=self.name,
                    error_type=type(e).__name__,
                    error=e.message,
                    **context,
                )
                raise
            duration_ms = (time.time() - start_time) * 1000
            self._metrics.record_operation(name, duration_ms, success=True, collection=self.name)
            log_operation(
                logger,
                name,
                level=logging.DEBUG,
                duration_ms=duration_ms,
                collection=self.name,
                **context,
            )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _prepare(self, document: Any, now: datetime) -> dict[str, Any]:
        doc = check_document(document)
        if self._schema is not None:
            self._schema.validate(doc)
        doc.setdefault(CREATED_AT_FIELD, now)
        return doc

    async def create(self, document: Mapping[str, Any], *, timeout: float | None = None) -> str:
        """
        Insert a document and return its identifier.

        ``created_at`` is stamped (UTC) unless the document already has one.

        Raises:
            ValidationError: If the document carries ``_id`` or fails the schema
            DuplicateKeyError: If a unique index rejects it
        """
        async with self._track("create"):
            doc = self._prepare(document, datetime.now(timezone.utc))
            result = await run_with_deadline(
                self._collection.insert_one(doc), self._deadline(timeout), "create"
            )
            inserted_id = str(result.inserted_id)
        logger.debug(f"Created document in '{self.name}' with id={inserted_id}")
        return inserted_id

    async def create_many(
        self, documents: Iterable[Mapping[str, Any]], *, timeout: float | None = None
    ) -> list[str]:
        """Insert several documents (ordered) and return their identifiers."""
        async with self._track("create_many"):
            now = datetime.now(timezone.utc)
            docs = [self._prepare(document, now) for document in documents]
            if not docs:
                return []
            result = await run_with_deadline(
                self._collection.insert_many(docs), self._deadline(timeout), "create_many"
            )
            ids = [str(i) for i in result.inserted_ids]
        logger.debug(f"Created {len(ids)} documents in '{self.name}'")
        return ids

    async def mutate(
        self, operation: AtomicOperation, *, timeout: float | None = None
    ) -> MutationResult:
        """
        Apply an atomic operation in a single round trip.

        A non-matching selector or guard returns ``matched=False``.
        """
        if operation.collection and operation.collection != self.name:
            raise ValidationError(
                f"Operation targets '{operation.collection}', not '{self.name}'",
                context={"collection": self.name},
            )
        async with self._track("mutate", kind=operation.kind.value, field=operation.field):
            result = await self._mutator.apply(operation, deadline=self._deadline(timeout))
        return result

    async def delete(self, id: Any, *, timeout: float | None = None) -> bool:
        """Delete by identifier. Returns False when nothing was deleted."""
        object_id = to_object_id(id)
        async with self._track("delete"):
            result = await run_with_deadline(
                self._collection.delete_one({ID_FIELD: object_id}),
                self._deadline(timeout),
                "delete",
            )
        return result.deleted_count > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, id: Any, *, timeout: float | None = None) -> dict[str, Any] | None:
        """
        Fetch a document by identifier.

        Raises:
            CastError: If ``id`` is not a valid ObjectId
        """
        object_id = to_object_id(id)
        async with self._track("get"):
            document = await run_with_deadline(
                self._collection.find_one({ID_FIELD: object_id}),
                self._deadline(timeout),
                "get",
            )
        return document

    def query(
        self,
        equality: Mapping[str, Any] | None = None,
        ranges: Mapping[str, Mapping[str, Any]] | None = None,
        sort: Iterable[tuple[str, int]] = (),
        limit: int | None = None,
    ) -> QuerySpec:
        """Build a QuerySpec whose limit defaults to the configured page size."""
        return QuerySpec(
            equality=equality or {},
            ranges=ranges or {},
            sort=tuple(sort),
            limit=self._default_page_size if limit is None else limit,
        )

    def explain(self, query: QuerySpec) -> IndexMatch:
        """Which index would serve ``query`` (no store access)."""
        return self._advisor.validate(query)

    async def find(
        self,
        query: QuerySpec,
        cursor: str | None = None,
        page_size: int | None = None,
        *,
        timeout: float | None = None,
    ) -> Page:
        """
        Fetch one page of an index-covered query.

        Raises:
            UnindexedQueryError: If no declared index covers the query
            InvalidCursorError: If the cursor is malformed or from another ordering
        """
        async with self._track("find", has_cursor=cursor is not None):
            page = await self._paginator.paginate(
                query, cursor, page_size, deadline=self._deadline(timeout)
            )
        return page

    async def iterate(
        self, query: QuerySpec, page_size: int | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield every document matching ``query``, fetching page by page."""
        cursor: str | None = None
        while True:
            page = await self.find(query, cursor, page_size)
            for item in page.items:
                yield item
            if page.next_cursor is None:
                return
            cursor = page.next_cursor

    # ------------------------------------------------------------------
    # Transactions and indexes
    # ------------------------------------------------------------------

    def _require_client(self) -> None:
        if self._client is None:
            raise FatalError(
                f"Repository '{self.name}' has no client; transactions are unavailable"
            )

    async def with_transaction(
        self,
        fn: Callable[[TransactionContext], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run ``fn`` in a transaction; operations default to this collection."""
        self._require_client()
        async with self._track("with_transaction"):
            result = await self._transactions.with_transaction(fn, timeout)
        return result

    def transaction(
        self, timeout: float | None = None
    ) -> AbstractAsyncContextManager[TransactionContext]:
        """Async context manager around a transaction on this collection."""
        self._require_client()
        return self._transactions.transaction(timeout)

    async def ensure_indexes(self) -> list[str]:
        """Create the declared indexes on the server."""
        async with self._track("ensure_indexes"):
            created = await ensure_indexes(self._collection, self._advisor.indexes)
        return created

    def __repr__(self) -> str:
        return f"RepositoryFacade(collection={self.name!r}, indexes={len(self._advisor)})"
