"""
A named store of key/value/tag records in one MongoDB collection.

Each record is a single document keyed by ``_id``. See codec.py for how
values and tags are laid out inside it.
"""

import logging
from typing import Any, Callable, Mapping, Optional, Sequence

import pymongo
from pymongo import DeleteOne, ReplaceOne

from . import codec
from .errors import BackendError, DataCorruptionError, DataNotFoundError, ValidationError
from .iterator import MongoDBIterator
from .protocol import CollectionProtocol
from .query import parse_expression, tag_field
from .retry import ErrorClassifier, RetryPolicy, run_with_retry
from .types import (
    Operation,
    QueryOptions,
    Record,
    SortOptions,
    Tag,
    normalize_tags,
    validate_key,
    validate_value,
)

logger = logging.getLogger(__name__)


class MongoDBStore:
    """
    Handle to one open store.

    Created by MongoDBProvider.open_store(); don't construct directly.
    All stores of a provider share its client connection.
    """

    def __init__(
        self,
        name: str,
        collection: CollectionProtocol,
        *,
        timeout: float,
        policy: RetryPolicy,
        classifier: ErrorClassifier,
        on_close: Callable[[str], None],
    ):
        self._name = name
        self._collection = collection
        self._timeout = timeout
        self._policy = policy
        self._classifier = classifier
        self._on_close = on_close

    @property
    def name(self) -> str:
        """Normalized store name (lower-case, including any prefix)."""
        return self._name

    @property
    def collection(self) -> CollectionProtocol:
        return self._collection

    def __repr__(self) -> str:
        return f"MongoDBStore({self._name!r})"

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def put(
        self,
        key: str,
        value: bytes,
        tags: Optional[Sequence[tuple[str, str]]] = None,
    ) -> None:
        """
        Store value (and tags) under key.

        Replaces any existing record for key, tags included. Tag values that
        are base-10 integers are stored as integers so they sort numerically.

        Args:
            key: Record key (non-empty)
            value: Raw bytes; may be empty but not None
            tags: (name, value) pairs; neither part may contain ':'
        """
        validate_key(key)
        validate_value(value)
        tag_list = normalize_tags(tags)

        document = codec.to_document(key, value, tag_list)

        def replace() -> None:
            with pymongo.timeout(self._timeout):
                self._collection.replace_one({codec.KEY_FIELD: key}, document, upsert=True)

        def log_attempt(attempt: int, exc: BaseException) -> None:
            logger.info(
                '[Store name: %s] Attempt %d - error while storing data under key "%s". '
                "This can happen if there are multiple calls in parallel to store data "
                "under the same key. If there are remaining retries, this operation will "
                "be tried again after %.1fs. Underlying error message: %s",
                self._name, attempt, key, self._policy.delay, exc,
            )

        run_with_retry(
            replace,
            self._policy,
            self._classifier,
            description="store data",
            on_retry=log_attempt,
        )

    def delete(self, key: str) -> None:
        """Delete the record under key. Deleting an absent key is not an error."""
        validate_key(key)
        try:
            with pymongo.timeout(self._timeout):
                self._collection.delete_one({codec.KEY_FIELD: key})
        except Exception as e:
            raise BackendError(
                f"failed to run DeleteOne command in MongoDB for store {self._name!r}: {e}"
            ) from e

    def batch(self, operations: Sequence[Operation]) -> None:
        """
        Apply several puts and deletes in one bulk write.

        An operation whose value is None deletes its key. The bulk write is
        ordered; if it fails part-way, operations already applied stay
        applied.
        """
        if not operations:
            raise ValidationError("batch requires at least one operation")
        for operation in operations:
            validate_key(operation.key)

        requests: list[Any] = []
        for operation in operations:
            if operation.value is None:
                requests.append(DeleteOne({codec.KEY_FIELD: operation.key}))
                continue
            validate_value(operation.value)
            document = codec.to_document(
                operation.key, operation.value, normalize_tags(operation.tags)
            )
            requests.append(
                ReplaceOne({codec.KEY_FIELD: operation.key}, document, upsert=True)
            )

        def bulk_write() -> None:
            with pymongo.timeout(self._timeout):
                self._collection.bulk_write(requests, ordered=True)

        def log_attempt(attempt: int, exc: BaseException) -> None:
            logger.info(
                "[Store name: %s] Attempt %d - error while performing batch operations. "
                "This can happen if there are multiple calls in parallel to do batch "
                "operations under the same key(s). If there are remaining retries, the "
                "batch operations will be tried again after %.1fs. "
                "Underlying error message: %s",
                self._name, attempt, self._policy.delay, exc,
            )

        run_with_retry(
            bulk_write,
            self._policy,
            self._classifier,
            description="perform batch operations",
            on_retry=log_attempt,
        )

    def flush(self) -> None:
        """Nothing to do: writes are not buffered."""

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def _find_one(self, key: str) -> Mapping[str, Any]:
        validate_key(key)
        try:
            with pymongo.timeout(self._timeout):
                document = self._collection.find_one({codec.KEY_FIELD: key})
        except Exception as e:
            raise BackendError(
                f"failed to run FindOne command in MongoDB for store {self._name!r}: {e}"
            ) from e
        if document is None:
            raise DataNotFoundError(key, self._name)
        return document

    def get(self, key: str) -> bytes:
        """
        Get the value stored under key.

        Raises:
            DataNotFoundError: nothing is stored under key
        """
        document = self._find_one(key)
        try:
            return codec.decode_value(codec.value_from_document(document))
        except DataCorruptionError as e:
            raise DataCorruptionError(f"failed to get value from MongoDB result: {e}") from e

    def get_tags(self, key: str) -> list[Tag]:
        """
        Get the tags stored with key.

        Raises:
            DataNotFoundError: nothing is stored under key
        """
        document = self._find_one(key)
        try:
            return codec.tags_from_document(document)
        except DataCorruptionError as e:
            raise DataCorruptionError(f"failed to get tags from MongoDB result: {e}") from e

    def get_record(self, key: str) -> Record:
        """Get value and tags for key in one lookup."""
        return codec.from_document(self._find_one(key))

    def get_bulk(self, keys: Sequence[str]) -> list[Optional[bytes]]:
        """
        Get the values for several keys at once.

        Returns:
            One entry per input key, in input order; None where the key has
            no record
        """
        if not keys:
            raise ValidationError("keys must contain at least one key")
        for key in keys:
            if not isinstance(key, str) or not key:
                raise ValidationError("key cannot be empty")

        wanted = list(dict.fromkeys(keys))
        found: dict[str, bytes] = {}
        try:
            with pymongo.timeout(self._timeout):
                cursor = self._collection.find({codec.KEY_FIELD: {"$in": wanted}})
                try:
                    documents = list(cursor)
                finally:
                    cursor.close()
        except Exception as e:
            raise BackendError(
                f"failed to run Find command in MongoDB for store {self._name!r}: {e}"
            ) from e

        for document in documents:
            try:
                record = codec.from_document(document)
            except DataCorruptionError as e:
                raise DataCorruptionError(f"failed to get value from MongoDB result: {e}") from e
            found[record.key] = record.value

        return [found.get(key) for key in keys]

    def query(
        self,
        expression: str,
        *,
        page_size: int = 0,
        initial_page_num: int = 0,
        sort_options: Optional[SortOptions] = None,
    ) -> MongoDBIterator:
        """
        Find records by tag.

        Args:
            expression: ``TagName``, ``TagName:TagValue``, or two such terms
                joined by ``&&`` (both must hold)
            page_size: Cursor batch size hint; 0 for the server default
            initial_page_num: Pages of page_size results to skip
            sort_options: Sort by a tag's value; unsorted if None

        Returns:
            An iterator over matching records. Close it when done.

        Raises:
            InvalidQueryExpressionError: malformed expression
        """
        filter = parse_expression(expression)
        options = QueryOptions(
            page_size=page_size,
            initial_page_num=initial_page_num,
            sort_options=sort_options,
        )

        try:
            with pymongo.timeout(self._timeout):
                cursor = self._collection.find(filter)
                if options.page_size > 0:
                    cursor = cursor.batch_size(options.page_size)
                if options.skip > 0:
                    cursor = cursor.skip(options.skip)
                if options.sort_options is not None:
                    cursor = cursor.sort([(
                        tag_field(options.sort_options.tag_name),
                        options.sort_options.order.value,
                    )])
        except Exception as e:
            raise BackendError(
                f"failed to run Find command in MongoDB for store {self._name!r}: {e}"
            ) from e

        return MongoDBIterator(cursor, self._collection, filter, self._timeout)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """
        Remove this store from its provider's open stores.

        The shared connection stays open; close the provider for that.
        """
        self._on_close(self._name)
