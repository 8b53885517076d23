"""
Lazy iterator over query results.
"""

import logging
from typing import Any, Iterator, Mapping, Optional

import pymongo

from . import codec
from .errors import BackendError, DataCorruptionError, IteratorStateError
from .protocol import CollectionProtocol, CursorProtocol
from .types import Record, Tag

logger = logging.getLogger(__name__)


class MongoDBIterator:
    """
    Single-pass iterator backed by a MongoDB cursor.

    Use either the explicit protocol::

        while it.next():
            print(it.key(), it.value())
        it.close()

    or plain iteration, which yields Records and closes the cursor at the
    end::

        with store.query("color:red") as it:
            for record in it:
                ...

    Not safe for concurrent use by several threads.
    """

    def __init__(
        self,
        cursor: CursorProtocol,
        collection: CollectionProtocol,
        filter: Mapping[str, Any],
        timeout: float,
    ):
        self._cursor = cursor
        self._collection = collection
        self._filter = filter
        self._timeout = timeout
        self._current: Optional[Mapping[str, Any]] = None
        self._exhausted = False
        self._closed = False

    def next(self) -> bool:
        """Advance to the next result. False once there are no more."""
        self._current = None
        if self._closed or self._exhausted:
            return False
        try:
            with pymongo.timeout(self._timeout):
                self._current = next(self._cursor)
        except StopIteration:
            self._exhausted = True
            return False
        except Exception as e:
            raise BackendError(f"failed to advance MongoDB cursor: {e}") from e
        return True

    def _document(self) -> Mapping[str, Any]:
        if self._closed:
            raise IteratorStateError("iterator is closed")
        if self._current is None:
            raise IteratorStateError("no current result; call next() first")
        return self._current

    def key(self) -> str:
        try:
            return codec.key_from_document(self._document())
        except DataCorruptionError as e:
            raise DataCorruptionError(f"failed to get key from MongoDB result: {e}") from e

    def value(self) -> bytes:
        try:
            return codec.decode_value(codec.value_from_document(self._document()))
        except DataCorruptionError as e:
            raise DataCorruptionError(f"failed to get value from MongoDB result: {e}") from e

    def tags(self) -> list[Tag]:
        try:
            return codec.tags_from_document(self._document())
        except DataCorruptionError as e:
            raise DataCorruptionError(f"failed to get tags from MongoDB result: {e}") from e

    def record(self) -> Record:
        return codec.from_document(self._document())

    def total_items(self) -> int:
        """
        Count every document matching the query filter.

        Runs a separate count on the server, ignoring paging and the cursor
        position.
        """
        if self._closed:
            raise IteratorStateError("iterator is closed")
        try:
            with pymongo.timeout(self._timeout):
                return self._collection.count_documents(self._filter)
        except Exception as e:
            raise BackendError(f"failed to get document count from MongoDB: {e}") from e

    def close(self) -> None:
        """Release the server cursor. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._current = None
        try:
            with pymongo.timeout(self._timeout):
                self._cursor.close()
        except Exception as e:
            raise BackendError(f"failed to close MongoDB cursor: {e}") from e

    # -------------------------------------------------------------------------
    # Python iteration
    # -------------------------------------------------------------------------

    def __iter__(self) -> Iterator[Record]:
        try:
            while self.next():
                yield self.record()
        finally:
            self.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
