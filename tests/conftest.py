"""
Pytest configuration and shared fixtures for MDB_CASBIN_ADAPTER tests.

This module provides:
- An in-memory stand-in for the pymongo client/database/collection calls the
  adapters make (equality and $in selectors, unique indexes, sessions and
  transactions that can be switched off to mimic a standalone server)
- motor-style async wrappers around the same in-memory store
- Policy set factories
"""

import copy
import itertools
from contextlib import contextmanager
from types import SimpleNamespace
from typing import Any, Dict, List
from unittest.mock import MagicMock

import casbin
import pytest
from bson import ObjectId
from pymongo import DeleteOne, ReplaceOne
from pymongo.errors import BulkWriteError, DuplicateKeyError, OperationFailure

from mdb_casbin_adapter.observability import get_metrics_collector


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: tests that need a real MongoDB deployment"
    )


# ============================================================================
# IN-MEMORY MONGODB STAND-IN
# ============================================================================


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, condition in query.items():
        value = doc.get(key)
        if isinstance(condition, dict) and "$in" in condition:
            if value not in condition["$in"]:
                return False
        elif value != condition:
            return False
    return True


class FakeCursor:
    """Iterable cursor that records whether it was closed."""

    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = iter(docs)
        self.closed = False

    def __iter__(self):
        return self

    def __next__(self):
        return next(self._docs)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class FakeCollection:
    """Collection holding documents in a list, in insertion order."""

    def __init__(self, database: "FakeDatabase", name: str):
        self.database = database
        self.name = name
        self.documents: List[Dict[str, Any]] = []
        self.indexes: Dict[str, Dict[str, Any]] = {}
        self.cursors: List[FakeCursor] = []
        self.calls: List[str] = []
        self._failures: Dict[str, List[Exception]] = {}

    # -- test helpers ------------------------------------------------------

    def fail_next(self, method: str, error: Exception) -> None:
        """Make the next call to method raise error."""
        self._failures.setdefault(method, []).append(error)

    def rules(self) -> List[tuple]:
        """Stored rules as (ptype, v0..v5) tuples."""
        fields = ("ptype", "v0", "v1", "v2", "v3", "v4", "v5")
        return [tuple(doc.get(f) for f in fields) for doc in self.documents]

    def _enter(self, method: str, session: Any = None) -> None:
        self.calls.append(method)
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)
        if session is not None and session.in_transaction:
            if not self.database.client.supports_transactions:
                raise OperationFailure(
                    "Transaction numbers are only allowed on a replica set member or mongos",
                    code=20,
                )

    def _unique_keys(self) -> List[List[str]]:
        return [
            [key for key, _ in spec["key"]] for spec in self.indexes.values() if spec["unique"]
        ]

    def _check_unique(self, doc: Dict[str, Any], ignore: Any = None) -> None:
        for keys in self._unique_keys():
            candidate = tuple(doc.get(k) for k in keys)
            for existing in self.documents:
                if existing is ignore:
                    continue
                if tuple(existing.get(k) for k in keys) == candidate:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name}", code=11000
                    )

    def _store(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        self._check_unique(doc)
        stored = dict(doc)
        stored.setdefault("_id", ObjectId())
        self.documents.append(stored)
        return stored

    # -- driver surface ----------------------------------------------------

    def create_index(self, keys, unique=False, name=None, **kwargs):
        self._enter("create_index")
        keys = list(keys)
        name = name or "_".join(f"{k}_{d}" for k, d in keys)
        for existing_name, spec in self.indexes.items():
            if spec["key"] == keys and existing_name != name:
                raise OperationFailure(
                    f"Index already exists with a different name: {existing_name}",
                    code=85,
                )
        self.indexes[name] = {"key": keys, "unique": unique}
        return name

    def index_information(self, session=None, **kwargs):
        self._enter("index_information", session)
        return copy.deepcopy(self.indexes)

    def drop(self, session=None, **kwargs):
        self._enter("drop", session)
        self.documents.clear()
        self.indexes.clear()

    def find(self, filter=None, session=None, **kwargs):
        self._enter("find", session)
        query = filter or {}
        cursor = FakeCursor([dict(d) for d in self.documents if _matches(d, query)])
        self.cursors.append(cursor)
        return cursor

    def insert_one(self, document, session=None, **kwargs):
        self._enter("insert_one", session)
        stored = self._store(document)
        return SimpleNamespace(inserted_id=stored["_id"], acknowledged=True)

    def insert_many(self, documents, ordered=True, session=None, **kwargs):
        self._enter("insert_many", session)
        inserted = []
        for index, document in enumerate(documents):
            try:
                inserted.append(self._store(document)["_id"])
            except DuplicateKeyError as e:
                raise BulkWriteError(
                    {
                        "writeErrors": [{"index": index, "code": 11000, "errmsg": str(e)}],
                        "nInserted": len(inserted),
                    }
                ) from e
        return SimpleNamespace(inserted_ids=inserted, acknowledged=True)

    def delete_one(self, filter, session=None, **kwargs):
        self._enter("delete_one", session)
        return SimpleNamespace(deleted_count=self._delete(filter, limit=1))

    def delete_many(self, filter, session=None, **kwargs):
        self._enter("delete_many", session)
        return SimpleNamespace(deleted_count=self._delete(filter))

    def replace_one(self, filter, replacement, session=None, **kwargs):
        self._enter("replace_one", session)
        return SimpleNamespace(matched_count=self._replace(filter, replacement))

    def bulk_write(self, requests, ordered=True, session=None, **kwargs):
        self._enter("bulk_write", session)
        deleted = matched = 0
        for index, request in enumerate(requests):
            try:
                if isinstance(request, DeleteOne):
                    deleted += self._delete(request._filter, limit=1)
                elif isinstance(request, ReplaceOne):
                    matched += self._replace(request._filter, request._doc)
                else:
                    raise TypeError(f"Unsupported request {request!r}")
            except DuplicateKeyError as e:
                raise BulkWriteError(
                    {"writeErrors": [{"index": index, "code": 11000, "errmsg": str(e)}]}
                ) from e
        return SimpleNamespace(deleted_count=deleted, matched_count=matched)

    def _delete(self, query, limit=None) -> int:
        victims = [d for d in self.documents if _matches(d, query)]
        if limit is not None:
            victims = victims[:limit]
        for doc in victims:
            self.documents.remove(doc)
        return len(victims)

    def _replace(self, query, replacement) -> int:
        for position, doc in enumerate(self.documents):
            if _matches(doc, query):
                self._check_unique(replacement, ignore=doc)
                self.documents[position] = {"_id": doc["_id"], **replacement}
                return 1
        return 0


class FakeDatabase:
    def __init__(self, client: "FakeClient", name: str):
        self.client = client
        self.name = name
        self._collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(self, name)
        return self._collections[name]


class FakeSession:
    """Client session; a transaction rolls the store back when its block raises."""

    _ids = itertools.count(1)

    def __init__(self, client: "FakeClient"):
        self.client = client
        self.session_id = next(self._ids)
        self.in_transaction = False
        self.committed = False
        self.aborted = False
        self.ended = False

    @contextmanager
    def start_transaction(self):
        snapshot = self.client.snapshot()
        self.in_transaction = True
        try:
            yield self
        except BaseException:
            self.client.restore(snapshot)
            self.aborted = True
            raise
        else:
            self.committed = True
        finally:
            self.in_transaction = False

    def end_session(self):
        self.ended = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.end_session()


class FakeClient:
    """MongoClient stand-in. supports_transactions=False behaves like a standalone server."""

    def __init__(self, default_db: str | None = None, supports_transactions: bool = True):
        self.default_db = default_db
        self.supports_transactions = supports_transactions
        self.closed = False
        self.sessions: List[FakeSession] = []
        self._databases: Dict[str, FakeDatabase] = {}
        self.admin = MagicMock()
        self.admin.command = MagicMock(return_value={"ok": 1})

    def __getitem__(self, name: str) -> FakeDatabase:
        if name not in self._databases:
            self._databases[name] = FakeDatabase(self, name)
        return self._databases[name]

    def get_default_database(self, default=None, **kwargs):
        return self[self.default_db or default]

    def start_session(self, **kwargs):
        session = FakeSession(self)
        self.sessions.append(session)
        return session

    def close(self):
        self.closed = True

    def snapshot(self):
        return {
            (db_name, coll_name): copy.deepcopy(coll.documents)
            for db_name, db in self._databases.items()
            for coll_name, coll in db._collections.items()
        }

    def restore(self, snapshot):
        for (db_name, coll_name), documents in snapshot.items():
            self[db_name][coll_name].documents = documents


# ============================================================================
# MOTOR-STYLE ASYNC WRAPPERS
# ============================================================================


def _unwrap(session):
    return getattr(session, "sync", session)


class AsyncFakeCursor:
    def __init__(self, cursor: FakeCursor):
        self.sync = cursor

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return next(self.sync)
        except StopIteration:
            raise StopAsyncIteration from None

    async def close(self):
        self.sync.close()


class AsyncFakeCollection:
    def __init__(self, database: "AsyncFakeDatabase", sync: FakeCollection):
        self.database = database
        self.sync = sync
        self.name = sync.name

    def find(self, filter=None, session=None, **kwargs):
        return AsyncFakeCursor(self.sync.find(filter, session=_unwrap(session), **kwargs))

    async def create_index(self, keys, **kwargs):
        return self.sync.create_index(keys, **kwargs)

    async def index_information(self, session=None, **kwargs):
        return self.sync.index_information(session=_unwrap(session))

    async def drop(self, session=None, **kwargs):
        return self.sync.drop(session=_unwrap(session))

    async def insert_one(self, document, session=None, **kwargs):
        return self.sync.insert_one(document, session=_unwrap(session))

    async def insert_many(self, documents, ordered=True, session=None, **kwargs):
        return self.sync.insert_many(documents, ordered=ordered, session=_unwrap(session))

    async def delete_one(self, filter, session=None, **kwargs):
        return self.sync.delete_one(filter, session=_unwrap(session))

    async def delete_many(self, filter, session=None, **kwargs):
        return self.sync.delete_many(filter, session=_unwrap(session))

    async def replace_one(self, filter, replacement, session=None, **kwargs):
        return self.sync.replace_one(filter, replacement, session=_unwrap(session))

    async def bulk_write(self, requests, ordered=True, session=None, **kwargs):
        return self.sync.bulk_write(requests, ordered=ordered, session=_unwrap(session))


class AsyncFakeDatabase:
    def __init__(self, client: "AsyncFakeClient", sync: FakeDatabase):
        self.client = client
        self.sync = sync
        self.name = sync.name

    def __getitem__(self, name: str) -> AsyncFakeCollection:
        return AsyncFakeCollection(self, self.sync[name])


class _AsyncTransaction:
    def __init__(self, session: FakeSession):
        self._cm = session.start_transaction()

    async def __aenter__(self):
        return self._cm.__enter__()

    async def __aexit__(self, exc_type, exc, tb):
        return self._cm.__exit__(exc_type, exc, tb)


class AsyncFakeSession:
    def __init__(self, sync: FakeSession):
        self.sync = sync

    def start_transaction(self):
        return _AsyncTransaction(self.sync)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.sync.end_session()


class AsyncFakeClient:
    """AsyncIOMotorClient stand-in sharing the in-memory store of a FakeClient."""

    def __init__(self, sync: FakeClient | None = None):
        self.sync = sync or FakeClient()
        self.admin = MagicMock()

        async def ping(*args, **kwargs):
            return self.sync.admin.command(*args, **kwargs)

        self.admin.command = ping

    @property
    def closed(self) -> bool:
        return self.sync.closed

    def __getitem__(self, name: str) -> AsyncFakeDatabase:
        return AsyncFakeDatabase(self, self.sync[name])

    def get_default_database(self, default=None, **kwargs):
        return self[self.sync.default_db or default]

    async def start_session(self, **kwargs):
        return AsyncFakeSession(self.sync.start_session())

    def close(self):
        self.sync.close()


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def fake_client() -> FakeClient:
    """In-memory client for a replica set (transactions supported)."""
    return FakeClient()


@pytest.fixture
def standalone_client() -> FakeClient:
    """In-memory client that rejects transactions like a standalone server."""
    return FakeClient(supports_transactions=False)


@pytest.fixture
def async_fake_client() -> AsyncFakeClient:
    return AsyncFakeClient()


@pytest.fixture
def async_standalone_client(standalone_client) -> AsyncFakeClient:
    return AsyncFakeClient(standalone_client)


@pytest.fixture
def adapter(fake_client):
    """Adapter bound to the in-memory client."""
    from mdb_casbin_adapter import Adapter

    with Adapter(client=fake_client, db_name="casbin_test") as adapter:
        yield adapter


@pytest.fixture
def rule_collection(adapter) -> FakeCollection:
    return adapter.collection


# ============================================================================
# TEST DATA FACTORIES
# ============================================================================


@pytest.fixture
def rbac_policy() -> Dict[str, Dict[str, List[List[str]]]]:
    """The classic four-rule RBAC seed plus one role assignment."""
    return {
        "p": {
            "p": [
                ["alice", "data1", "read"],
                ["bob", "data2", "write"],
                ["data2_admin", "data2", "read"],
                ["data2_admin", "data2", "write"],
            ]
        },
        "g": {"g": [["alice", "data2_admin"]]},
    }


@pytest.fixture
def empty_policy() -> Dict[str, Dict[str, List[List[str]]]]:
    return {"p": {"p": []}, "g": {"g": []}}


@pytest.fixture
def casbin_like_model():
    """Object shaped like casbin's Model: model[sec][ptype].policy."""

    def build(definitions: Dict[str, List[str]]):
        sections = {
            sec: {ptype: SimpleNamespace(policy=[]) for ptype in ptypes}
            for sec, ptypes in definitions.items()
        }
        return SimpleNamespace(model=sections)

    return build


RBAC_MODEL_TEXT = """
[request_definition]
r = sub, obj, act

[policy_definition]
p = sub, obj, act

[role_definition]
g = _, _

[policy_effect]
e = some(where (p.eft == allow))

[matchers]
m = g(r.sub, p.sub) && r.obj == p.obj && r.act == p.act
"""


@pytest.fixture
def casbin_model() -> casbin.Model:
    """Fresh casbin RBAC model with sections p and g."""
    model = casbin.Model()
    model.load_model_from_text(RBAC_MODEL_TEXT)
    return model


# ============================================================================
# ENVIRONMENT AND GLOBAL STATE
# ============================================================================


@pytest.fixture(autouse=True)
def reset_environment(monkeypatch):
    """Clear adapter environment variables before each test."""
    for var in [
        "CASBIN_MONGO_URI",
        "MONGO_URI",
        "CASBIN_DB_NAME",
        "CASBIN_COLLECTION_NAME",
        "CASBIN_ADAPTER_TIMEOUT",
        "CASBIN_ADAPTER_FILTERED",
        "MONGO_SERVER_SELECTION_TIMEOUT_MS",
    ]:
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(autouse=True)
def reset_metrics():
    """Start every test with an empty metrics collector."""
    get_metrics_collector().reset()
    yield
    get_metrics_collector().reset()


# ============================================================================
# REAL MONGODB (Integration Tests)
# ============================================================================


@pytest.fixture(scope="session")
def mongodb_uri():
    """
    Connection string of a real MongoDB for integration tests.

    Uses CASBIN_TEST_MONGO_URI when set, otherwise starts a testcontainers
    MongoDB for the session. Skips when neither is available.
    """
    import os

    uri = os.getenv("CASBIN_TEST_MONGO_URI")
    if uri:
        yield uri
        return

    try:
        from testcontainers.mongodb import MongoDbContainer
    except ImportError:
        pytest.skip("No MongoDB: set CASBIN_TEST_MONGO_URI or pip install -e '.[test]'")

    try:
        container = MongoDbContainer("mongo:7.0").start()
    except Exception as e:
        pytest.skip(f"Cannot start a MongoDB container: {e}")

    try:
        yield container.get_connection_url()
    finally:
        container.stop()


@pytest.fixture
def integration_db_name(mongodb_uri):
    """Unique database per test, dropped afterwards."""
    import os
    import uuid

    from pymongo import MongoClient

    db_name = f"casbin_test_{os.getpid()}_{uuid.uuid4().hex[:8]}"
    yield db_name

    client = MongoClient(mongodb_uri)
    try:
        client.drop_database(db_name)
    finally:
        client.close()
