"""
Bring a store's secondary indexes in line with its configured tag names.

Each indexed tag gets an ascending index named after the tag on the
``tags.<name>`` field. Indexes not in the target set are dropped one by
one; missing ones are created together in a single call, which is retried
when it loses a race against another process building the same indexes.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable

import pymongo
from pymongo import IndexModel

from .errors import BackendError
from .protocol import CollectionProtocol
from .query import tag_field
from .retry import ErrorClassifier, RetryPolicy, run_with_retry

logger = logging.getLogger(__name__)

# Built-in primary key index; never managed here
PRIMARY_KEY_INDEX = "_id_"


@dataclass
class ConvergenceResult:
    """What one convergence pass did."""
    kept: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.dropped or self.created)


def list_index_names(collection: CollectionProtocol, *, timeout: float) -> list[str]:
    """Names of the collection's secondary indexes."""
    try:
        with pymongo.timeout(timeout):
            indexes = list(collection.list_indexes())
    except Exception as e:
        raise BackendError(f"failed to get list of indexes from MongoDB: {e}") from e

    names = []
    for index in indexes:
        name = index.get("name")
        if name is None:
            raise BackendError('index data is missing the "name" field')
        if not isinstance(name, str):
            raise BackendError(f"index name is of unexpected type {type(name).__name__}")
        if name != PRIMARY_KEY_INDEX:
            names.append(name)
    return names


def converge_indexes(
    collection: CollectionProtocol,
    target_tag_names: Iterable[str],
    *,
    store_name: str,
    policy: RetryPolicy,
    classifier: ErrorClassifier,
    timeout: float,
) -> ConvergenceResult:
    """
    Drop indexes not in target_tag_names and create the missing ones.

    Raises:
        BackendError: listing or dropping failed, or creation failed
            permanently
        RetriesExhaustedError: creation kept hitting index build conflicts
    """
    target = list(dict.fromkeys(target_tag_names))
    target_set = set(target)
    result = ConvergenceResult()

    for name in list_index_names(collection, timeout=timeout):
        if name in target_set:
            result.kept.append(name)
            logger.info(
                "[Store name (includes prefix, if any): %s] Skipping index creation "
                "for %s since the index already exists.", store_name, name,
            )
            continue

        try:
            with pymongo.timeout(timeout):
                collection.drop_index(name)
        except Exception as e:
            raise BackendError(f"failed to remove index for {name}: {e}") from e
        result.dropped.append(name)
        logger.info("[Store name: %s] Dropped index %s", store_name, name)

    kept = set(result.kept)
    to_create = [name for name in target if name not in kept]
    if not to_create:
        return result

    models = [
        IndexModel([(tag_field(name), pymongo.ASCENDING)], name=name)
        for name in to_create
    ]

    def create() -> list[str]:
        with pymongo.timeout(timeout):
            return collection.create_indexes(models)

    def log_attempt(attempt: int, exc: BaseException) -> None:
        logger.info(
            "[Store name: %s] Attempt %d - error while setting indexes. This can "
            "happen if multiple providers set the store configuration at the same "
            "time. If there are remaining retries, this operation will be tried "
            "again after %.1fs. Underlying error message: %s",
            store_name, attempt, policy.delay, exc,
        )

    run_with_retry(
        create,
        policy,
        classifier,
        description="create indexes in MongoDB collection",
        on_retry=log_attempt,
    )
    result.created.extend(to_create)
    logger.info("[Store name: %s] Created indexes: %s", store_name, ", ".join(to_create))
    return result
