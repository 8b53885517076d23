"""
MongoDB / DocumentDB store provider.

One provider holds one client connection and a registry of open stores.
Every store lives in its own database (named after the store, lower-cased
and optionally prefixed) with a single collection.

Several providers, possibly in different processes, may point at the same
server. Writes and index builds that collide are retried (see retry.py).
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

import pymongo

from .config import DEFAULT_TIMEOUT, ProviderSettings
from .errors import (
    BackendError,
    ProviderClosedError,
    StoreNotFoundError,
    TagStoreError,
    ValidationError,
)
from .indexes import ConvergenceResult, converge_indexes, list_index_names
from .protocol import ClientProtocol, CollectionProtocol
from .retry import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_DELAY,
    DUPLICATE_KEY_CODES,
    DUPLICATE_KEY_MESSAGES,
    INDEX_CONFLICT_MESSAGES,
    RetryPolicy,
    SubstringClassifier,
)
from .store import MongoDBStore
from .types import StoreConfiguration, validate_tag_name

logger = logging.getLogger(__name__)

# Stores have no use for nested collections, but MongoDB needs one; a short
# name keeps index names well under the server's length limit.
COLLECTION_NAME = "c"


class ReadWriteLock:
    """Many readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class MongoDBProvider:
    """
    Opens and tracks stores over one shared MongoDB connection.

    Args:
        connection_string: MongoDB connection string. For DocumentDB,
            ``retryWrites=false`` must be set in it.
        client: An existing client to use instead of connecting
            (tests, custom setups). Closed by close().
        db_prefix: Prepended to every store's database name
        timeout: Seconds allowed for each backend call
        max_attempts: Attempts for writes and index creation that hit
            transient conflicts; values < 1 mean the default (3)
        time_between_retries: Seconds between those attempts
        duplicate_key_messages: Error substrings marking a write race
        duplicate_key_codes: Server error codes marking a write race
        index_conflict_messages: Error substrings marking an index build race
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        *,
        client: Optional[ClientProtocol] = None,
        db_prefix: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        time_between_retries: float = DEFAULT_RETRY_DELAY,
        duplicate_key_messages: Iterable[str] = DUPLICATE_KEY_MESSAGES,
        duplicate_key_codes: Iterable[int] = DUPLICATE_KEY_CODES,
        index_conflict_messages: Iterable[str] = INDEX_CONFLICT_MESSAGES,
    ):
        self._db_prefix = db_prefix
        self._timeout = timeout if timeout and timeout > 0 else DEFAULT_TIMEOUT
        self._policy = RetryPolicy(max_attempts=max_attempts, delay=time_between_retries)
        self._write_classifier = SubstringClassifier(duplicate_key_messages, duplicate_key_codes)
        self._index_classifier = SubstringClassifier(index_conflict_messages)

        self._open_stores: dict[str, MongoDBStore] = {}
        self._lock = ReadWriteLock()
        self._closed = False

        if client is not None:
            self._client = client
        elif connection_string:
            try:
                self._client = pymongo.MongoClient(
                    connection_string,
                    timeoutMS=int(self._timeout * 1000),
                )
            except Exception as e:
                raise BackendError(f"failed to create a new MongoDB client: {e}") from e
        else:
            raise ValidationError("either a connection string or a client is required")

    @classmethod
    def from_settings(
        cls,
        settings: ProviderSettings,
        client: Optional[ClientProtocol] = None,
    ) -> "MongoDBProvider":
        """Build a provider from loaded settings."""
        return cls(
            settings.connection_string,
            client=client,
            db_prefix=settings.db_prefix,
            timeout=settings.timeout,
            max_attempts=settings.max_attempts,
            time_between_retries=settings.time_between_retries,
            duplicate_key_messages=settings.duplicate_key_messages,
            duplicate_key_codes=settings.duplicate_key_codes,
            index_conflict_messages=settings.index_conflict_messages,
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    @property
    def timeout(self) -> float:
        return self._timeout

    def normalize_name(self, name: str) -> str:
        """Store name as used for the database: prefixed and lower-cased."""
        return (self._db_prefix + name).lower()

    def _check_open(self) -> None:
        if self._closed:
            raise ProviderClosedError("provider is closed")

    def _collection(self, name: str) -> CollectionProtocol:
        return self._client.get_database(name).get_collection(COLLECTION_NAME)

    # -------------------------------------------------------------------------
    # Stores
    # -------------------------------------------------------------------------

    def open_store(self, name: str) -> MongoDBStore:
        """
        Open the store called name, or return it if already open.

        Store names are not case-sensitive. The backing database is created
        by the server on the first write.
        """
        if not name:
            raise ValidationError("store name cannot be empty")

        name = self.normalize_name(name)

        with self._lock.write():
            self._check_open()
            store = self._open_stores.get(name)
            if store is None:
                store = MongoDBStore(
                    name,
                    self._collection(name),
                    timeout=self._timeout,
                    policy=self._policy,
                    classifier=self._write_classifier,
                    on_close=self._remove_store,
                )
                self._open_stores[name] = store
                logger.debug("Opened store %s", name)
        return store

    def set_store_config(self, name: str, config: StoreConfiguration) -> ConvergenceResult:
        """
        Index exactly the tag names in config.

        Missing indexes are created and indexes for tag names not in config
        are dropped. The store must already be open in this provider.

        Returns:
            What was kept, dropped and created

        Raises:
            ValidationError: a tag name contains ':'
            StoreNotFoundError: the store isn't open here
        """
        for tag_name in config.tag_names:
            validate_tag_name(tag_name)
        self._check_open()

        name = self.normalize_name(name)

        with self._lock.read():
            store = self._open_stores.get(name)
        if store is None:
            raise StoreNotFoundError(name)

        result = converge_indexes(
            store.collection,
            config.tag_names,
            store_name=name,
            policy=self._policy,
            classifier=self._index_classifier,
            timeout=self._timeout,
        )
        logger.info(
            "[Store name: %s] Store configuration set (kept %d, dropped %d, created %d)",
            name, len(result.kept), len(result.dropped), len(result.created),
        )
        return result

    def get_store_config(self, name: str) -> StoreConfiguration:
        """
        Read the indexed tag names of a store straight from the server.

        Does not open the store.

        Raises:
            StoreNotFoundError: the store's database doesn't exist
        """
        if not name:
            raise ValidationError("store name cannot be empty")
        self._check_open()

        name = self.normalize_name(name)

        try:
            with pymongo.timeout(self._timeout):
                database_names = self._client.list_database_names()
        except Exception as e:
            raise BackendError(
                f"failed to determine if the underlying database exists for {name}: {e}"
            ) from e

        if name not in database_names:
            raise StoreNotFoundError(name)

        try:
            tag_names = list_index_names(self._collection(name), timeout=self._timeout)
        except BackendError as e:
            raise BackendError(f"failed to get existing indexed tag names: {e}") from e

        return StoreConfiguration(tag_names=tag_names)

    def get_open_stores(self) -> list[MongoDBStore]:
        """Snapshot of the currently open stores, in no particular order."""
        with self._lock.read():
            return list(self._open_stores.values())

    def _remove_store(self, name: str) -> None:
        with self._lock.write():
            self._open_stores.pop(name, None)
            logger.debug("Closed store %s", name)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """
        Close every open store, then disconnect.

        Stops at the first store that fails to close. Closing an already
        closed provider does nothing. Stores opened concurrently either make
        it into the snapshot closed here or get ProviderClosedError.
        """
        with self._lock.write():
            if self._closed:
                return
            self._closed = True
            stores = list(self._open_stores.values())

        # Store close callbacks take the write lock themselves
        for store in stores:
            try:
                store.close()
            except TagStoreError as e:
                raise BackendError(
                    f'failed to close open store with name "{store.name}": {e}'
                ) from e

        try:
            self._client.close()
        except Exception as e:
            if "client is disconnected" not in str(e):
                raise BackendError(f"failed to disconnect from MongoDB: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
