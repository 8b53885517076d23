"""
Data types for the tagged key/value store.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, NamedTuple, Optional

from .errors import ValidationError

# Separates tag name from tag value in query expressions
TAG_SEPARATOR = ":"


class Tag(NamedTuple):
    """A name/value annotation on a record. Plain 2-tuples work too."""
    name: str
    value: str = ""


@dataclass
class Record:
    """A decoded record: key, raw value bytes, and its tags."""
    key: str
    value: bytes
    tags: list[Tag] = field(default_factory=list)


@dataclass
class StoreConfiguration:
    """Tag names that should have a secondary index in a store."""
    tag_names: list[str] = field(default_factory=list)


@dataclass
class Operation:
    """
    One entry of a batch.

    A value of None deletes the key; anything else upserts it.
    """
    key: str
    value: Optional[bytes] = None
    tags: list[Tag] = field(default_factory=list)


class SortOrder(Enum):
    ASCENDING = 1
    DESCENDING = -1


@dataclass
class SortOptions:
    """Sort query results by the value of one tag."""
    tag_name: str
    order: SortOrder = SortOrder.ASCENDING


@dataclass
class QueryOptions:
    """
    Paging and sort hints for Store.query().

    page_size is passed to the backend as the cursor batch size. Together
    with initial_page_num it also determines how many results are skipped;
    initial_page_num has no effect without a page_size.
    """
    page_size: int = 0
    initial_page_num: int = 0
    sort_options: Optional[SortOptions] = None

    def __post_init__(self):
        if self.initial_page_num < 0:
            self.initial_page_num = 0
        if self.page_size < 0:
            self.page_size = 0

    @property
    def skip(self) -> int:
        """Number of leading results to skip."""
        if self.page_size > 0 and self.initial_page_num > 0:
            return self.initial_page_num * self.page_size
        return 0


def validate_key(key: str) -> None:
    """Keys must be non-empty strings."""
    if not isinstance(key, str) or not key:
        raise ValidationError("key is mandatory")


def validate_value(value: Optional[bytes]) -> None:
    """Values may be empty but never None."""
    if value is None:
        raise ValidationError("value cannot be nil")
    if not isinstance(value, (bytes, bytearray, memoryview)):
        raise ValidationError(f"value must be bytes, got {type(value).__name__}")


def validate_tag_name(name: str) -> None:
    if TAG_SEPARATOR in name:
        raise ValidationError(
            f'"{name}" is an invalid tag name since it contains one or more '
            f"'{TAG_SEPARATOR}' characters"
        )


def validate_tag_value(value: str) -> None:
    if TAG_SEPARATOR in value:
        raise ValidationError(
            f'"{value}" is an invalid tag value since it contains one or more '
            f"'{TAG_SEPARATOR}' characters"
        )


def normalize_tags(tags: Optional[Iterable[tuple[str, str]]]) -> list[Tag]:
    """
    Validate tags and return them as a list of Tag.

    Accepts any iterable of (name, value) pairs. Order is preserved so
    that a later duplicate name wins when the tags are stored.
    """
    if tags is None:
        return []
    normalized = []
    for item in tags:
        if isinstance(item, str):
            raise ValidationError(f"tags must be (name, value) pairs, got {item!r}")
        tag = Tag(*item)
        if not isinstance(tag.name, str) or not isinstance(tag.value, str):
            raise ValidationError(f"tag name and value must be strings: {tag!r}")
        validate_tag_name(tag.name)
        validate_tag_value(tag.value)
        normalized.append(tag)
    return normalized
