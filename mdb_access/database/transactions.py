"""
Multi-document transactions.

A ``TransactionScope`` runs a group of atomic operations inside one motor
client session so they commit or roll back together. Each enlisted
operation is applied immediately (callers see guard outcomes as they go)
and recorded; when the store reports a transient write conflict the store
transaction is aborted, a new one is started after a jittered backoff and
the recorded operations are replayed in order.

Operations enlisted in a transaction must only touch the store. Anything
with effects outside it (HTTP calls, queues, emails) would run again on
every retry and would not be undone by an abort.

State machine::

    CREATED -> ACTIVE -> COMMITTING -> COMMITTED
                 |  ^         |
                 v  |         v
               RETRYING    ABORTING -> ABORTED
"""

import asyncio
import inspect
import logging
import random
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

from ..constants import (
    DEFAULT_TXN_BASE_DELAY,
    DEFAULT_TXN_JITTER,
    DEFAULT_TXN_MAX_DELAY,
    DEFAULT_TXN_MAX_DURATION,
    DEFAULT_TXN_MAX_RETRIES,
    UNKNOWN_COMMIT_LABEL,
)
from ..exceptions import (
    AccessLayerError,
    ConflictError,
    InvalidStateError,
    OperationTimeoutError,
    ValidationError,
)
from ..observability import get_logger, operation_scope
from .atomic import AtomicMutator, AtomicOperation, MutationResult
from .deadline import Deadline, run_with_deadline
from .errors import STORE_ERRORS, has_label, map_store_errors, translate_store_error

if TYPE_CHECKING:
    from ..config import AccessLayerConfig

logger = get_logger(__name__)

T = TypeVar("T")


class TransactionState(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    RETRYING = "retrying"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ABORTING = "aborting"
    ABORTED = "aborted"


_TRANSITIONS: dict[TransactionState, frozenset[TransactionState]] = {
    TransactionState.CREATED: frozenset({TransactionState.ACTIVE, TransactionState.ABORTING}),
    TransactionState.ACTIVE: frozenset(
        {TransactionState.COMMITTING, TransactionState.RETRYING, TransactionState.ABORTING}
    ),
    TransactionState.RETRYING: frozenset({TransactionState.ACTIVE, TransactionState.ABORTING}),
    TransactionState.COMMITTING: frozenset(
        {TransactionState.COMMITTED, TransactionState.RETRYING, TransactionState.ABORTING}
    ),
    TransactionState.ABORTING: frozenset({TransactionState.ABORTED}),
    TransactionState.COMMITTED: frozenset(),
    TransactionState.ABORTED: frozenset(),
}

TERMINAL_STATES = frozenset({TransactionState.COMMITTED, TransactionState.ABORTED})


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configurable retry with exponential backoff and jitter.

    Attempts are 1-based: attempt 1 is the first try, so a transaction runs
    at most ``max_retries + 1`` times.

    Attributes:
        max_retries: Retries allowed after the first attempt
        base_delay: Delay before the first retry (seconds)
        max_delay: Upper bound for any single delay (seconds)
        jitter: Relative spread; 0.5 scales each delay by uniform(0.5, 1.5)
    """

    max_retries: int = DEFAULT_TXN_MAX_RETRIES
    base_delay: float = DEFAULT_TXN_BASE_DELAY
    max_delay: float = DEFAULT_TXN_MAX_DELAY
    jitter: float = DEFAULT_TXN_JITTER

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValidationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValidationError("Retry delays must be >= 0")
        if self.base_delay > self.max_delay:
            raise ValidationError("base_delay must be <= max_delay")
        if not 0 <= self.jitter <= 1:
            raise ValidationError(f"jitter must be between 0 and 1, got {self.jitter}")

    def should_retry(self, attempt: int) -> bool:
        """Return True if another attempt is allowed after ``attempt`` failed."""
        return 1 <= attempt <= self.max_retries

    def delay_for_attempt(
        self, attempt: int, rand: Callable[[float, float], float] = random.uniform
    ) -> float:
        """
        Delay in seconds before retrying after ``attempt`` failed.

        Uses exponential backoff: base_delay * 2^(attempt-1), capped by
        max_delay, then scaled by a random factor in [1 - jitter, 1 + jitter].
        """
        if attempt < 1:
            return 0.0
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= rand(1 - self.jitter, 1 + self.jitter)
        return float(min(self.max_delay, max(0.0, delay)))

    @classmethod
    def from_config(cls, config: "AccessLayerConfig") -> "RetryPolicy":
        return cls(
            max_retries=config.txn_max_retries,
            base_delay=config.txn_base_delay,
            max_delay=config.txn_max_delay,
            jitter=config.txn_jitter,
        )


class TransactionContext:
    """
    One running transaction.

    Holds the client session, the ordered log of enlisted operations with
    their results, and the deadline bounding the whole unit of work. A
    context belongs to the task that created it and must not be shared.
    """

    def __init__(self, scope: "TransactionScope", session: Any, deadline: Deadline):
        self.id = uuid.uuid4().hex[:12]
        self.session = session
        self.deadline = deadline
        self.state = TransactionState.CREATED
        self.operations: list[AtomicOperation] = []
        self.results: list[MutationResult] = []
        self.retries = 0
        self.error: AccessLayerError | None = None
        self._scope = scope
        self._released = False

    @property
    def is_active(self) -> bool:
        return self.state is TransactionState.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _transition(self, target: TransactionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidStateError(
                f"Cannot move transaction from {self.state.value} to {target.value}",
                state=self.state.value,
                context={"transaction": self.id},
            )
        logger.debug(f"Transaction {self.id}: {self.state.value} -> {target.value}")
        self.state = target

    async def enlist(self, operation: AtomicOperation) -> MutationResult:
        """Shorthand for ``scope.enlist(context, operation)``."""
        return await self._scope.enlist(self, operation)

    async def abort(self) -> None:
        await self._scope.abort(self)

    def __repr__(self) -> str:
        return (
            f"TransactionContext(id={self.id!r}, state={self.state.value}, "
            f"operations={len(self.operations)}, retries={self.retries})"
        )


class TransactionScope:
    """
    Starts, retries, commits and aborts transactions.

    Example:
        scope = TransactionScope(client, db, default_collection="accounts")

        async def transfer(tx):
            debit = await tx.enlist(
                AtomicOperation.guarded_decrement({"_id": a}, "balance", 30)
            )
            if not debit.matched:
                raise GuardFailedError("insufficient funds")
            await tx.enlist(AtomicOperation.increment({"_id": b}, "balance", 30))

        await scope.with_transaction(transfer)
    """

    def __init__(
        self,
        client: Any,
        database: Any,
        default_collection: str | None = None,
        retry_policy: RetryPolicy | None = None,
        max_duration: float = DEFAULT_TXN_MAX_DURATION,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize the scope.

        Args:
            client: AsyncIOMotorClient used to start sessions
            database: AsyncIOMotorDatabase holding the target collections
            default_collection: Collection for operations that do not name one
            retry_policy: Backoff policy for transient conflicts
            max_duration: Default time budget for a whole transaction (seconds)
            sleep: Awaitable sleep, injectable for tests
        """
        if max_duration <= 0:
            raise ValidationError(f"max_duration must be > 0, got {max_duration}")
        self._client = client
        self._database = database
        self.default_collection = default_collection
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_duration = max_duration
        self._sleep = sleep

    def _mutator_for(self, operation: AtomicOperation) -> AtomicMutator:
        name = operation.collection or self.default_collection
        if not name:
            raise ValidationError(
                "Operation does not name a collection and the scope has no default",
                context={"field": operation.field},
            )
        return AtomicMutator(self._database[name])

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def begin(self, timeout: float | None = None) -> TransactionContext:
        """
        Start a session and a transaction on it.

        Args:
            timeout: Time budget for the whole transaction (defaults to max_duration)

        Returns:
            An ACTIVE TransactionContext
        """
        deadline = Deadline(self.max_duration if timeout is None else timeout)
        with map_store_errors("transaction.begin"):
            session = await run_with_deadline(
                self._client.start_session(), deadline, "transaction.begin"
            )

        context = TransactionContext(self, session, deadline)
        try:
            with map_store_errors("transaction.begin", transaction=context.id):
                session.start_transaction()
        except AccessLayerError as e:
            context.error = e
            await self.abort(context)
            raise

        context._transition(TransactionState.ACTIVE)
        logger.debug(f"Transaction {context.id} started (budget={deadline.timeout}s)")
        return context

    async def enlist(
        self, context: TransactionContext, operation: AtomicOperation
    ) -> MutationResult:
        """
        Apply an operation inside the transaction and record it.

        Any failure aborts the transaction before it propagates.

        Raises:
            InvalidStateError: If the transaction is not ACTIVE
            ConflictError: If conflicts outlast the retry budget or a replay diverges
            OperationTimeoutError: If the transaction's deadline has passed
        """
        self._require_active(context, "enlist")
        try:
            mutator = self._mutator_for(operation)
            context.deadline.check("transaction.enlist", transaction=context.id)
            with operation_scope(mutator.collection_name, transaction_id=context.id):
                try:
                    result = await mutator.apply(
                        operation, session=context.session, deadline=context.deadline
                    )
                except ConflictError as e:
                    context.operations.append(operation)
                    await self._recover(context, e)
                    return context.results[-1]
        except AccessLayerError as e:
            await self._fail(context, e)
            raise

        context.operations.append(operation)
        context.results.append(result)
        return result

    async def commit(self, context: TransactionContext) -> None:
        """
        Commit the transaction.

        Commits with an unknown outcome are retried; transient conflicts
        restart the transaction and replay the log before committing again.
        The session is released on every path.
        """
        self._require_active(context, "commit")
        try:
            context._transition(TransactionState.COMMITTING)
            while True:
                try:
                    context.deadline.check("transaction.commit", transaction=context.id)
                    await self._commit_once(context)
                    break
                except ConflictError as e:
                    await self._recover(context, e)
                    context._transition(TransactionState.COMMITTING)
            context._transition(TransactionState.COMMITTED)
            logger.debug(
                f"Transaction {context.id} committed "
                f"({len(context.operations)} operations, {context.retries} retries)"
            )
        except AccessLayerError as e:
            await self._fail(context, e)
            raise
        finally:
            await self._release(context)

    async def abort(self, context: TransactionContext) -> None:
        """Abort the transaction. Calling it on a finished transaction is a no-op."""
        if context.is_terminal or context.state is TransactionState.ABORTING:
            await self._release(context)
            return
        context._transition(TransactionState.ABORTING)
        try:
            await self._abort_store_transaction(context)
        finally:
            context._transition(TransactionState.ABORTED)
            await self._release(context)
        logger.debug(f"Transaction {context.id} aborted")

    @asynccontextmanager
    async def transaction(self, timeout: float | None = None) -> AsyncIterator[TransactionContext]:
        """
        Async context manager: commit on success, abort on any exception.

        Example:
            async with scope.transaction() as tx:
                await tx.enlist(op)
        """
        context = await self.begin(timeout)
        try:
            yield context
        except BaseException:
            await self.abort(context)
            raise
        else:
            if context.is_active:
                await self.commit(context)
            elif context.error is not None:
                raise context.error
        finally:
            await self._release(context)

    async def with_transaction(
        self,
        fn: Callable[[TransactionContext], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """
        Run ``fn`` inside a transaction and return its result.

        ``fn`` receives the TransactionContext. If it raises, the transaction
        is aborted and the exception propagates. If it aborts the context
        itself, nothing is committed and its result is still returned.
        """
        async with self.transaction(timeout) as context:
            result = await fn(context)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_active(self, context: TransactionContext, action: str) -> None:
        if not context.is_active:
            raise InvalidStateError(
                f"Cannot {action}: transaction is {context.state.value}",
                state=context.state.value,
                context={"transaction": context.id},
            )

    async def _fail(self, context: TransactionContext, error: AccessLayerError) -> None:
        context.error = error
        logger.warning(f"Transaction {context.id} failed: {error}")
        await self.abort(context)

    async def _commit_once(self, context: TransactionContext) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                await run_with_deadline(
                    context.session.commit_transaction(),
                    context.deadline,
                    "transaction.commit",
                    transaction=context.id,
                )
                return
            except STORE_ERRORS as e:
                if has_label(e, UNKNOWN_COMMIT_LABEL) and self.retry_policy.should_retry(attempt):
                    logger.warning(
                        f"Transaction {context.id}: commit result unknown, retrying "
                        f"({attempt}/{self.retry_policy.max_retries})"
                    )
                    await self._sleep(self.retry_policy.delay_for_attempt(attempt))
                    continue
                raise translate_store_error(e, "transaction.commit", transaction=context.id) from e

    async def _recover(self, context: TransactionContext, error: ConflictError) -> None:
        """Restart the store transaction and replay the log until it applies cleanly."""
        while True:
            if not self.retry_policy.should_retry(context.retries + 1):
                raise ConflictError(
                    f"Write conflict persisted after {context.retries} retries",
                    attempts=context.retries + 1,
                    context={"transaction": context.id},
                ) from error

            context._transition(TransactionState.RETRYING)
            context.retries += 1
            delay = self.retry_policy.delay_for_attempt(context.retries)
            logger.warning(
                f"Transaction {context.id}: write conflict, retry {context.retries}/"
                f"{self.retry_policy.max_retries} in {delay:.3f}s"
            )

            await self._abort_store_transaction(context)
            remaining = context.deadline.remaining()
            if remaining is not None and delay >= remaining:
                raise OperationTimeoutError(
                    f"Transaction {context.id} ran out of time while backing off",
                    timeout=context.deadline.timeout,
                    context={"transaction": context.id},
                ) from error
            await self._sleep(delay)

            with map_store_errors("transaction.restart", transaction=context.id):
                context.session.start_transaction()
            context._transition(TransactionState.ACTIVE)

            try:
                diverged_at = await self._replay(context)
            except ConflictError as e:
                error = e
                continue

            if diverged_at is not None:
                raise ConflictError(
                    "Replayed operation no longer matches; concurrent writes changed its outcome",
                    attempts=context.retries + 1,
                    context={
                        "transaction": context.id,
                        "operation_index": diverged_at,
                        "field": context.operations[diverged_at].field,
                    },
                )
            return

    async def _replay(self, context: TransactionContext) -> int | None:
        """
        Re-apply every logged operation in the new store transaction.

        Returns:
            Index of the first operation whose ``matched`` outcome changed, or None
        """
        original = context.results
        replayed: list[MutationResult] = []
        for index, operation in enumerate(context.operations):
            context.deadline.check("transaction.replay", transaction=context.id)
            result = await self._mutator_for(operation).apply(
                operation, session=context.session, deadline=context.deadline
            )
            if index < len(original) and result.matched != original[index].matched:
                return index
            replayed.append(result)
        context.results = replayed
        return None

    async def _abort_store_transaction(self, context: TransactionContext) -> None:
        session = context.session
        if session is None or not getattr(session, "in_transaction", True):
            return
        try:
            await session.abort_transaction()
        except STORE_ERRORS as e:
            logger.warning(f"Transaction {context.id}: abort failed: {e}")

    async def _release(self, context: TransactionContext) -> None:
        if context._released:
            return
        context._released = True
        end_session = getattr(context.session, "end_session", None)
        if end_session is None:
            return
        try:
            result = end_session()
            if inspect.isawaitable(result):
                await result
        except STORE_ERRORS as e:
            logger.warning(f"Transaction {context.id}: failed to end session: {e}")
