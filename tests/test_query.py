"""
Tests for the tag query expression parser.
"""

import pytest

from tagstore.errors import InvalidQueryExpressionError, ValidationError
from tagstore.query import parse_expression, parse_term, tag_field


class TestParseTerm:

    def test_name_only_means_exists(self):
        assert parse_term("color") == ("tags.color", {"$exists": True})

    def test_name_and_value(self):
        assert parse_term("color:red") == ("tags.color", "red")

    def test_integer_value_coerced(self):
        """Values are matched the way tags are stored."""
        assert parse_term("age:30") == ("tags.age", 30)

    def test_empty_value_matches_empty_string(self):
        """A trailing ':' is an equality test against ''."""
        assert parse_term("color:") == ("tags.color", "")

    @pytest.mark.parametrize("term", ["a:b:c", ":red", ""])
    def test_malformed_terms(self, term):
        with pytest.raises(InvalidQueryExpressionError):
            parse_term(term)


class TestParseExpression:

    def test_single_term(self):
        assert parse_expression("type:person") == {"tags.type": "person"}

    def test_two_terms(self):
        assert parse_expression("type:person&&age:30") == {
            "tags.type": "person",
            "tags.age": 30,
        }

    def test_two_terms_mixed(self):
        assert parse_expression("type&&age:30") == {
            "tags.type": {"$exists": True},
            "tags.age": 30,
        }

    def test_same_tag_twice_keeps_both_conditions(self):
        """A repeated tag must not collapse into one filter key."""
        assert parse_expression("a&&a:1") == {
            "$and": [{"tags.a": {"$exists": True}}, {"tags.a": 1}],
        }

    @pytest.mark.parametrize("expression", [
        "",
        "a&&b&&c",
        "a:1:2",
        "a&&b:1:2",
        "&&a",
        "a&&",
        ":x",
    ])
    def test_invalid_expressions(self, expression):
        with pytest.raises(InvalidQueryExpressionError) as exc_info:
            parse_expression(expression)
        assert exc_info.value.expression is not None

    def test_invalid_expression_is_validation_error(self):
        """Callers can catch the broader ValidationError."""
        with pytest.raises(ValidationError):
            parse_expression("a&&b&&c")

    def test_message_describes_grammar(self):
        with pytest.raises(InvalidQueryExpressionError, match="TagName:TagValue"):
            parse_expression("a:b:c")


def test_tag_field():
    assert tag_field("color") == "tags.color"
