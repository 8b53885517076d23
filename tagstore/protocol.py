"""
Protocol definitions for tagstore and its backend.

Defines interface contracts at two levels:
- ProviderProtocol / StoreProtocol / IteratorProtocol: the public API
- ClientProtocol / CollectionProtocol / CursorProtocol: the subset of a
  MongoDB driver the store relies on (pymongo satisfies these; tests use an
  in-memory stand-in)
"""

from typing import Any, Iterator, Mapping, Optional, Protocol, Sequence, runtime_checkable

from .types import Operation, Record, SortOptions, StoreConfiguration, Tag


# ---------------------------------------------------------------------------
# Backend protocols: what the store needs from the database driver
# ---------------------------------------------------------------------------


@runtime_checkable
class CursorProtocol(Protocol):
    """A server-side result cursor."""

    def __iter__(self) -> Iterator[Mapping[str, Any]]: ...

    def __next__(self) -> Mapping[str, Any]: ...

    def sort(self, key_or_list: Any, direction: Optional[int] = None) -> "CursorProtocol": ...

    def skip(self, skip: int) -> "CursorProtocol": ...

    def batch_size(self, batch_size: int) -> "CursorProtocol": ...

    def close(self) -> None: ...


@runtime_checkable
class CollectionProtocol(Protocol):
    """A document collection with secondary indexes."""

    # -- Documents --

    def find_one(self, filter: Mapping[str, Any]) -> Optional[Mapping[str, Any]]: ...

    def find(self, filter: Mapping[str, Any]) -> CursorProtocol: ...

    def count_documents(self, filter: Mapping[str, Any]) -> int: ...

    def replace_one(
        self,
        filter: Mapping[str, Any],
        replacement: Mapping[str, Any],
        upsert: bool = False,
    ) -> Any: ...

    def delete_one(self, filter: Mapping[str, Any]) -> Any: ...

    def bulk_write(self, requests: Sequence[Any], ordered: bool = True) -> Any: ...

    # -- Indexes --

    def list_indexes(self) -> Iterator[Mapping[str, Any]]: ...

    def create_indexes(self, indexes: Sequence[Any]) -> list[str]: ...

    def drop_index(self, index_or_name: Any) -> None: ...


@runtime_checkable
class DatabaseProtocol(Protocol):

    def get_collection(self, name: str) -> CollectionProtocol: ...


@runtime_checkable
class ClientProtocol(Protocol):
    """A connection to the database server."""

    def get_database(self, name: str) -> DatabaseProtocol: ...

    def list_database_names(self) -> list[str]: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Public protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class IteratorProtocol(Protocol):
    """
    Single-pass cursor over query results.

    Accessors are valid only after next() returned True.
    """

    def next(self) -> bool: ...

    def key(self) -> str: ...

    def value(self) -> bytes: ...

    def tags(self) -> list[Tag]: ...

    def total_items(self) -> int: ...

    def close(self) -> None: ...


@runtime_checkable
class StoreProtocol(Protocol):
    """A named collection of key/value/tag records."""

    @property
    def name(self) -> str: ...

    # -- Write --

    def put(self, key: str, value: bytes, tags: Optional[Sequence[tuple[str, str]]] = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def batch(self, operations: Sequence[Operation]) -> None: ...

    def flush(self) -> None: ...

    # -- Read --

    def get(self, key: str) -> bytes: ...

    def get_tags(self, key: str) -> list[Tag]: ...

    def get_record(self, key: str) -> Record: ...

    def get_bulk(self, keys: Sequence[str]) -> list[Optional[bytes]]: ...

    def query(
        self,
        expression: str,
        *,
        page_size: int = 0,
        initial_page_num: int = 0,
        sort_options: Optional[SortOptions] = None,
    ) -> IteratorProtocol: ...

    def close(self) -> None: ...


@runtime_checkable
class ProviderProtocol(Protocol):
    """Opens stores over one shared backend connection."""

    def open_store(self, name: str) -> StoreProtocol: ...

    def set_store_config(self, name: str, config: StoreConfiguration) -> Any: ...

    def get_store_config(self, name: str) -> StoreConfiguration: ...

    def get_open_stores(self) -> list[StoreProtocol]: ...

    def close(self) -> None: ...
