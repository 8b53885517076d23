"""
Shared pytest fixtures for tagstore tests.

Provides an in-memory stand-in for the pymongo client so tests run without
a MongoDB server. It implements just the driver surface tagstore uses and
lets tests inject backend failures.
"""

import copy
import functools
import threading
from collections import defaultdict
from typing import Any, Optional

import pytest
from pymongo import DeleteOne, ReplaceOne, _csot
from pymongo.errors import BulkWriteError, OperationFailure

from tagstore.provider import MongoDBProvider


_MISSING = object()


def _get_path(doc: dict, path: str) -> Any:
    """Resolve a dotted field path, or _MISSING."""
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _match_condition(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, arg in condition.items():
            if op == "$exists":
                if (value is not _MISSING) != bool(arg):
                    return False
            elif op == "$in":
                if value is _MISSING or value not in arg:
                    return False
            else:
                raise NotImplementedError(f"MockCollection does not support {op}")
        return True
    if value is _MISSING:
        return False
    # BSON doesn't consider 1 == "1"; neither does Python, but guard bool/int
    if type(value) is bool or type(condition) is bool:
        return type(value) is type(condition) and value == condition
    return value == condition


def match_filter(doc: dict, filter: dict) -> bool:
    """Evaluate the subset of MongoDB filter syntax tagstore emits."""
    for key, condition in filter.items():
        if key == "$and":
            if not all(match_filter(doc, sub) for sub in condition):
                return False
        elif not _match_condition(_get_path(doc, key), condition):
            return False
    return True


def _locked(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


def _sort_key(value: Any) -> tuple:
    # MongoDB order: missing/null < numbers < strings
    if value is _MISSING or value is None:
        return (0, 0)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    return (3, repr(value))


class MockCursor:
    """In-memory cursor: sort/skip/batch_size are applied lazily on first read."""

    def __init__(self, documents: list[dict]):
        self._documents = documents
        self._sort: list[tuple[str, int]] = []
        self._skip = 0
        self.batch_size_value: Optional[int] = None
        self._iter = None
        self.closed = False

    def sort(self, key_or_list, direction=None):
        if isinstance(key_or_list, str):
            self._sort = [(key_or_list, direction or 1)]
        else:
            self._sort = list(key_or_list)
        return self

    def skip(self, skip: int):
        self._skip = skip
        return self

    def batch_size(self, batch_size: int):
        self.batch_size_value = batch_size
        return self

    @property
    def skip_value(self) -> int:
        return self._skip

    @property
    def sort_value(self) -> list[tuple[str, int]]:
        return self._sort

    def _materialize(self):
        docs = list(self._documents)
        for field, direction in reversed(self._sort):
            docs.sort(key=lambda d: _sort_key(_get_path(d, field)), reverse=direction < 0)
        return iter(docs[self._skip:])

    def __iter__(self):
        return self

    def __next__(self) -> dict:
        if self.closed:
            raise StopIteration
        if self._iter is None:
            self._iter = self._materialize()
        return next(self._iter)

    def close(self) -> None:
        self.closed = True


class MockCollection:
    """
    In-memory collection.

    Failures: ``fail_on(method, *errors)`` makes the next calls of method
    raise the given errors in order. ``bulk_fail_at`` applies that many
    bulk requests and then raises.
    """

    def __init__(self, database: "MockDatabase", name: str):
        self.database = database
        self.name = name
        self.docs: dict[str, dict] = {}
        self.indexes: dict[str, list[tuple[str, int]]] = {}
        self.calls: dict[str, int] = defaultdict(int)
        # Operation timeout in effect at the last call of each method
        self.timeouts: dict[str, Optional[float]] = {}
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self.bulk_fail_at: Optional[int] = None
        self.cursors: list[MockCursor] = []
        self._lock = threading.RLock()

    @property
    def has_data(self) -> bool:
        return bool(self.docs or self.indexes)

    def fail_on(self, method: str, *errors: Exception) -> None:
        self._failures[method].extend(errors)

    def _enter(self, method: str) -> None:
        self.calls[method] += 1
        self.timeouts[method] = _csot.get_timeout()
        if self._failures[method]:
            raise self._failures[method].pop(0)

    # -- Documents --

    @_locked
    def find_one(self, filter: dict) -> Optional[dict]:
        self._enter("find_one")
        for doc in self.docs.values():
            if match_filter(doc, filter):
                return copy.deepcopy(doc)
        return None

    @_locked
    def find(self, filter: dict) -> MockCursor:
        self._enter("find")
        cursor = MockCursor([copy.deepcopy(d) for d in self.docs.values() if match_filter(d, filter)])
        self.cursors.append(cursor)
        return cursor

    @_locked
    def count_documents(self, filter: dict) -> int:
        self._enter("count_documents")
        return sum(1 for d in self.docs.values() if match_filter(d, filter))

    def _replace(self, filter: dict, replacement: dict, upsert: bool) -> None:
        key = filter["_id"]
        if key in self.docs or upsert:
            self.docs[key] = copy.deepcopy(replacement)

    def _delete(self, filter: dict) -> None:
        self.docs.pop(filter["_id"], None)

    @_locked
    def replace_one(self, filter: dict, replacement: dict, upsert: bool = False):
        self._enter("replace_one")
        self._replace(filter, replacement, upsert)

    @_locked
    def delete_one(self, filter: dict):
        self._enter("delete_one")
        self._delete(filter)

    @_locked
    def bulk_write(self, requests: list, ordered: bool = True):
        self._enter("bulk_write")
        for i, request in enumerate(requests):
            if self.bulk_fail_at is not None and i == self.bulk_fail_at:
                raise BulkWriteError({
                    "writeErrors": [{"index": i, "code": 2, "errmsg": "simulated write failure"}],
                    "nInserted": 0, "nUpserted": i, "nMatched": 0, "nModified": 0,
                    "nRemoved": 0, "upserted": [], "writeConcernErrors": [],
                })
            if isinstance(request, ReplaceOne):
                self._replace(request._filter, request._doc, request._upsert)
            elif isinstance(request, DeleteOne):
                self._delete(request._filter)
            else:
                raise NotImplementedError(type(request).__name__)

    # -- Indexes --

    @_locked
    def list_indexes(self):
        self._enter("list_indexes")
        result = [{"v": 2, "key": {"_id": 1}, "name": "_id_"}]
        for name, keys in self.indexes.items():
            result.append({"v": 2, "key": dict(keys), "name": name})
        return iter(result)

    @_locked
    def create_indexes(self, indexes: list) -> list[str]:
        self._enter("create_indexes")
        names = []
        for model in indexes:
            document = model.document
            self.indexes[document["name"]] = list(document["key"].items())
            names.append(document["name"])
        return names

    @_locked
    def drop_index(self, index_or_name) -> None:
        self._enter("drop_index")
        if index_or_name not in self.indexes:
            raise OperationFailure(f"index not found with name [{index_or_name}]", code=27)
        del self.indexes[index_or_name]


class MockDatabase:
    def __init__(self, client: "MockMongoClient", name: str):
        self.client = client
        self.name = name
        self.collections: dict[str, MockCollection] = {}

    def get_collection(self, name: str) -> MockCollection:
        with self.client._lock:
            if name not in self.collections:
                self.collections[name] = MockCollection(self, name)
            return self.collections[name]


class MockMongoClient:
    """In-memory stand-in for pymongo.MongoClient."""

    def __init__(self):
        self.databases: dict[str, MockDatabase] = {}
        self.closed = False
        self.close_calls = 0
        self.fail_list_database_names: Optional[Exception] = None
        self._lock = threading.RLock()

    def get_database(self, name: str) -> MockDatabase:
        with self._lock:
            if name not in self.databases:
                self.databases[name] = MockDatabase(self, name)
            return self.databases[name]

    def list_database_names(self) -> list[str]:
        if self.fail_list_database_names is not None:
            raise self.fail_list_database_names
        # Databases only exist on the server once something was written
        return [
            name for name, db in list(self.databases.items())
            if any(c.has_data for c in list(db.collections.values()))
        ]

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True

    def collection(self, store_name: str) -> MockCollection:
        """Test helper: the collection backing a store."""
        return self.get_database(store_name).get_collection("c")


@pytest.fixture
def mock_client():
    """A fresh in-memory MongoDB client."""
    return MockMongoClient()


@pytest.fixture
def provider(mock_client):
    """A provider over the mock client with no delay between retries."""
    p = MongoDBProvider(client=mock_client, time_between_retries=0)
    yield p
    p.close()


@pytest.fixture
def store(provider):
    """An open store named 'teststore'."""
    return provider.open_store("TestStore")


@pytest.fixture
def collection(mock_client, store):
    """The mock collection backing the 'teststore' store."""
    return mock_client.collection(store.name)
