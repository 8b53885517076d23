"""
Tag query expressions.

Supported forms::

    TagName                          tag present, any value
    TagName:TagValue                 tag equals value
    TagName1:TagValue1&&TagName2     both terms hold

At most two terms may be joined with ``&&``. Values that look like base-10
integers are matched as integers, mirroring how tags are stored.
"""

from typing import Any

from .codec import TAGS_FIELD, coerce_tag_value
from .errors import InvalidQueryExpressionError
from .types import TAG_SEPARATOR

AND_OPERATOR = "&&"
MAX_AND_TERMS = 2


def tag_field(tag_name: str) -> str:
    """Document field path holding the value of tag_name."""
    return f"{TAGS_FIELD}.{tag_name}"


def parse_term(term: str) -> tuple[str, Any]:
    """Parse one ``name[:value]`` term into a (field, condition) pair."""
    parts = term.split(TAG_SEPARATOR)
    if len(parts) > 2 or not parts[0]:
        raise InvalidQueryExpressionError(term)

    if len(parts) == 1:
        condition: Any = {"$exists": True}
    else:
        condition = coerce_tag_value(parts[1])

    return tag_field(parts[0]), condition


def parse_expression(expression: str) -> dict[str, Any]:
    """
    Parse a query expression into a MongoDB filter document.

    Raises:
        InvalidQueryExpressionError: for an empty expression, more than one
            ``&&``, a term with more than one ``:``, or a missing tag name
    """
    if not expression:
        raise InvalidQueryExpressionError(expression)

    terms = expression.split(AND_OPERATOR)
    if len(terms) > MAX_AND_TERMS:
        raise InvalidQueryExpressionError(expression)

    operands = [parse_term(term) for term in terms]

    fields = [f for f, _ in operands]
    if len(set(fields)) == len(fields):
        # Sibling keys in one filter document are an implicit AND
        return dict(operands)

    # Same tag named twice: keep both conditions
    return {"$and": [{f: c} for f, c in operands]}
