"""
Value and tag encoding for stored records.

A raw byte value is stored in one of three shapes, chosen in this order:

- structured: the bytes parse as a JSON object -> stored as a sub-document
- text: the bytes parse as a JSON string literal -> stored as a string
- binary: anything else -> stored as raw bytes

Structured values are stored natively so they can be inspected with ordinary
database tooling. Decoding re-serializes them as compact JSON.

Tag values that look like base-10 integers are stored as integers so that
sorting by a tag is numeric. Reading them back renders the canonical decimal
form, so "007" comes back as "7".
"""

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Union

import bson
from bson.errors import BSONError

from .errors import DataCorruptionError
from .types import Record, Tag

# Document field names
KEY_FIELD = "_id"
DOC_FIELD = "doc"
STR_FIELD = "str"
BIN_FIELD = "bin"
TAGS_FIELD = "tags"

_VALUE_FIELDS = (DOC_FIELD, STR_FIELD, BIN_FIELD)

# BSON integers are signed 64-bit
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


@dataclass(frozen=True)
class StructuredValue:
    data: dict


@dataclass(frozen=True)
class TextValue:
    text: str


@dataclass(frozen=True)
class BinaryValue:
    data: bytes


StoredValue = Union[StructuredValue, TextValue, BinaryValue]


class _Unrepresentable(ValueError):
    """A JSON document holds a number BSON cannot store faithfully."""


def _parse_int(literal: str) -> int:
    value = int(literal)
    if not INT64_MIN <= value <= INT64_MAX:
        raise _Unrepresentable(literal)
    return value


def _parse_float(literal: str) -> float:
    value = float(literal)
    if math.isinf(value):
        raise _Unrepresentable(literal)
    return value


def _reject_constant(literal: str):
    # NaN / Infinity are accepted by the json module but are not JSON
    raise _Unrepresentable(literal)


def _loads(text: str) -> Any:
    return json.loads(
        text,
        parse_int=_parse_int,
        parse_float=_parse_float,
        parse_constant=_reject_constant,
    )


def _storable(parsed: Any) -> bool:
    """True if parsed survives both BSON encoding and JSON re-serialization."""
    try:
        bson.encode({DOC_FIELD: parsed})
        json.dumps(parsed, ensure_ascii=False).encode("utf-8")
    except (BSONError, UnicodeEncodeError):
        # Lone surrogates, NUL in keys
        return False
    return True


def encode_value(raw: bytes) -> StoredValue:
    """Pick the stored shape for a raw value."""
    raw = bytes(raw)
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        return BinaryValue(raw)

    try:
        parsed = _loads(text)
    except ValueError:
        # Includes JSONDecodeError and _Unrepresentable
        return BinaryValue(raw)

    if not isinstance(parsed, (dict, str)) or not _storable(parsed):
        return BinaryValue(raw)
    if isinstance(parsed, dict):
        return StructuredValue(parsed)
    return TextValue(parsed)


def decode_value(value: StoredValue) -> bytes:
    """Turn a stored shape back into raw bytes."""
    if isinstance(value, StructuredValue):
        return json.dumps(
            value.data, separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")
    if isinstance(value, TextValue):
        return json.dumps(value.text, ensure_ascii=False).encode("utf-8")
    if isinstance(value, BinaryValue):
        return value.data
    raise TypeError(f"not a stored value shape: {type(value).__name__}")


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

def coerce_tag_value(value: str) -> Union[int, str]:
    """Return value as an int if it is a base-10 integer that fits in 64 bits."""
    if _INTEGER_RE.fullmatch(value):
        as_int = int(value)
        if INT64_MIN <= as_int <= INT64_MAX:
            return as_int
    return value


def tags_to_map(tags: Iterable[tuple[str, str]]) -> dict[str, Union[int, str]]:
    """Ordered tag pairs -> name/value mapping. Later names overwrite earlier ones."""
    mapping: dict[str, Union[int, str]] = {}
    for name, value in tags:
        mapping[name] = coerce_tag_value(value)
    return mapping


def map_to_tags(mapping: Mapping[str, Any]) -> list[Tag]:
    """Stored tag mapping -> list of Tag with string values."""
    return [Tag(name, str(value)) for name, value in mapping.items()]


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

def to_document(key: str, raw: bytes, tags: Iterable[tuple[str, str]]) -> dict:
    """Build the backend document stored under key."""
    document: dict[str, Any] = {KEY_FIELD: key}
    value = encode_value(raw)
    if isinstance(value, StructuredValue):
        document[DOC_FIELD] = value.data
    elif isinstance(value, TextValue):
        document[STR_FIELD] = value.text
    else:
        document[BIN_FIELD] = value.data
    document[TAGS_FIELD] = tags_to_map(tags)
    return document


def value_from_document(document: Mapping[str, Any]) -> StoredValue:
    present = [f for f in _VALUE_FIELDS if f in document]
    if len(present) != 1:
        raise DataCorruptionError(
            f"document {document.get(KEY_FIELD)!r} must hold exactly one of "
            f"{', '.join(_VALUE_FIELDS)}; found {present or 'none'}"
        )
    field_name = present[0]
    stored = document[field_name]

    if field_name == DOC_FIELD and isinstance(stored, Mapping):
        return StructuredValue(dict(stored))
    if field_name == STR_FIELD and isinstance(stored, str):
        return TextValue(stored)
    if field_name == BIN_FIELD and isinstance(stored, (bytes, bytearray)):
        return BinaryValue(bytes(stored))

    raise DataCorruptionError(
        f"document {document.get(KEY_FIELD)!r} has a {field_name!r} field "
        f"of unexpected type {type(stored).__name__}"
    )


def tags_from_document(document: Mapping[str, Any]) -> list[Tag]:
    stored = document.get(TAGS_FIELD)
    if stored is None:
        return []
    if not isinstance(stored, Mapping):
        raise DataCorruptionError(
            f"document {document.get(KEY_FIELD)!r} has tags of unexpected "
            f"type {type(stored).__name__}"
        )
    return map_to_tags(stored)


def key_from_document(document: Mapping[str, Any]) -> str:
    key = document.get(KEY_FIELD)
    if not isinstance(key, str):
        raise DataCorruptionError(f"document key is missing or not a string: {key!r}")
    return key


def from_document(document: Mapping[str, Any]) -> Record:
    """Decode a backend document into a Record."""
    return Record(
        key=key_from_document(document),
        value=decode_value(value_from_document(document)),
        tags=tags_from_document(document),
    )
