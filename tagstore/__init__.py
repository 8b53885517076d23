"""
tagstore

Tagged key/value stores on MongoDB (or Amazon DocumentDB).

Quick Start:
    from tagstore import MongoDBProvider, StoreConfiguration, Tag

    provider = MongoDBProvider("mongodb://localhost:27017")
    store = provider.open_store("credentials")
    provider.set_store_config("credentials", StoreConfiguration(["type", "age"]))

    store.put("key1", b'{"name":"alice"}', [Tag("type", "person"), Tag("age", "30")])
    with store.query("type:person&&age:30") as it:
        for record in it:
            print(record.key, record.value)

Values are arbitrary bytes. JSON objects and JSON strings are stored as
native documents/strings, everything else as binary. Tags that look like
integers are stored as integers, so sorting by them is numeric.

Several providers (in several processes) may share one database; concurrent
writes to one key and concurrent index builds are retried.

CLI Usage:
    tagstore put mystore key1 '"hello"' -t color:red
    tagstore query mystore color:red
    tagstore config mystore color size

Environment Variables:
    TAGSTORE_HOME               - Config directory (default ~/.tagstore)
    TAGSTORE_CONNECTION_STRING  - MongoDB connection string
    TAGSTORE_DB_PREFIX          - Prefix for database names
"""

from .errors import (
    BackendError,
    DataCorruptionError,
    DataNotFoundError,
    InvalidQueryExpressionError,
    IteratorStateError,
    NotFoundError,
    ProviderClosedError,
    RetriesExhaustedError,
    StoreNotFoundError,
    TagStoreError,
    ValidationError,
)
from .indexes import ConvergenceResult
from .iterator import MongoDBIterator
from .provider import MongoDBProvider
from .retry import ErrorClassifier, RetryPolicy, SubstringClassifier, run_with_retry
from .store import MongoDBStore
from .types import (
    Operation,
    QueryOptions,
    Record,
    SortOptions,
    SortOrder,
    StoreConfiguration,
    Tag,
)

__version__ = "0.1.0"
__all__ = [
    "MongoDBProvider",
    "MongoDBStore",
    "MongoDBIterator",
    "ConvergenceResult",
    "Tag",
    "Record",
    "Operation",
    "StoreConfiguration",
    "QueryOptions",
    "SortOptions",
    "SortOrder",
    "RetryPolicy",
    "ErrorClassifier",
    "SubstringClassifier",
    "run_with_retry",
    "TagStoreError",
    "ValidationError",
    "InvalidQueryExpressionError",
    "NotFoundError",
    "DataNotFoundError",
    "StoreNotFoundError",
    "BackendError",
    "RetriesExhaustedError",
    "DataCorruptionError",
    "IteratorStateError",
    "ProviderClosedError",
]
