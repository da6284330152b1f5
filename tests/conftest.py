"""
Pytest configuration and shared fixtures for MDB_ACCESS tests.

This module provides:
- An in-memory MongoDB (mongomock-motor) with motor-style sessions
- Rollback on abort, so transactional tests observe all-or-nothing outcomes
- Fault injection for transient write conflicts
- Test data helpers
"""

from typing import Any

import pytest
import pytest_asyncio
from mongomock_motor import AsyncMongoMockClient
from pymongo.errors import OperationFailure

from mdb_access.config import AccessLayerConfig
from mdb_access.constants import TRANSIENT_TXN_LABEL, UNKNOWN_COMMIT_LABEL, WRITE_CONFLICT_CODE
from mdb_access.observability import MetricsCollector
from mdb_access.pagination.cursor import CursorCodec

TEST_SECRET = "test_cursor_secret_for_testing_only_" + "x" * 32


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests against in-memory MongoDB or mocks")


# ============================================================================
# SESSIONS
# ============================================================================


class MockSession:
    """Mock MongoDB session for mongomock.

    Motor's ClientSession uses sync start_transaction() and async
    commit_transaction/abort_transaction/end_session. Writes made under the
    session record a pre-image so abort_transaction() can roll them back.
    """

    def __init__(self):
        self._in_transaction = False
        self._undo: list[tuple[Any, dict[str, Any]]] = []
        self.started = 0
        self.commits = 0
        self.aborts = 0
        self.ended = False
        self.commit_faults: list[Exception] = []

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    def start_transaction(self):
        self._in_transaction = True
        self.started += 1

    def record(self, collection, before: dict[str, Any]) -> None:
        self._undo.append((collection, before))

    async def commit_transaction(self):
        if self.commit_faults:
            raise self.commit_faults.pop(0)
        self._in_transaction = False
        self._undo.clear()
        self.commits += 1

    async def abort_transaction(self):
        for collection, before in reversed(self._undo):
            await collection.replace_one({"_id": before["_id"]}, before)
        self._undo.clear()
        self._in_transaction = False
        self.aborts += 1

    async def end_session(self):
        self._in_transaction = False
        self.ended = True


class SessionAwareCollection:
    """Mongomock collection that accepts ``session=`` like motor does.

    Mongomock rejects sessions, so the argument is stripped; updates made
    under a session record a pre-image on it for rollback.
    """

    def __init__(self, collection, faults: list[Exception]):
        self._collection = collection
        self._faults = faults
        self.name = collection.name
        self.update_calls = 0

    def __getattr__(self, name: str) -> Any:
        return getattr(self._collection, name)

    async def find_one_and_update(self, filter, update, session=None, **kwargs):
        self.update_calls += 1
        if self._faults:
            raise self._faults.pop(0)
        if session is None:
            return await self._collection.find_one_and_update(filter, update, **kwargs)
        before = await self._collection.find_one(filter)
        result = await self._collection.find_one_and_update(filter, update, **kwargs)
        if result is not None and before is not None:
            session.record(self._collection, before)
        return result


class SessionAwareDatabase:
    """Database wrapper handing out SessionAwareCollections.

    ``faults`` is shared by every collection: each queued exception is raised
    by the next ``find_one_and_update`` call instead of performing it.
    """

    def __init__(self, database, client):
        self._database = database
        self._collections: dict[str, SessionAwareCollection] = {}
        self.client = client
        self.faults: list[Exception] = []
        self.name = database.name

    def __getitem__(self, name: str) -> SessionAwareCollection:
        if name not in self._collections:
            self._collections[name] = SessionAwareCollection(self._database[name], self.faults)
        return self._collections[name]

    def __getattr__(self, name: str) -> SessionAwareCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


def conflict_error(message: str = "WriteConflict") -> OperationFailure:
    """A transient transaction conflict as the server reports it."""
    return OperationFailure(
        message,
        code=WRITE_CONFLICT_CODE,
        details={"errorLabels": [TRANSIENT_TXN_LABEL], "code": WRITE_CONFLICT_CODE},
    )


def unknown_commit_error(message: str = "commit outcome unknown") -> OperationFailure:
    return OperationFailure(
        message,
        code=91,
        details={"errorLabels": [UNKNOWN_COMMIT_LABEL], "code": 91},
    )


async def no_sleep(delay: float) -> None:
    """Backoff replacement that returns immediately."""


# ============================================================================
# FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def mongo_client():
    """In-memory motor client whose start_session() returns MockSessions."""
    client = AsyncMongoMockClient()
    client.sessions = []

    async def _start_session():
        session = MockSession()
        client.sessions.append(session)
        return session

    client.start_session = _start_session
    yield client


@pytest.fixture
def database(mongo_client) -> SessionAwareDatabase:
    return SessionAwareDatabase(mongo_client["test_db"], mongo_client)


@pytest.fixture
def codec() -> CursorCodec:
    return CursorCodec(secret=TEST_SECRET)


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def access_config() -> AccessLayerConfig:
    return AccessLayerConfig(
        mongo_uri="mongodb://localhost:27017",
        db_name="test_db",
        cursor_secret=TEST_SECRET,
        txn_base_delay=0.0,
        txn_max_delay=0.0,
    )


@pytest.fixture
def sample_accounts() -> list[dict[str, Any]]:
    return [
        {"owner": "alice", "balance": 100, "history": []},
        {"owner": "bob", "balance": 50, "history": []},
    ]
