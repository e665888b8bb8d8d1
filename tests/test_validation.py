"""Tests for query validation and sanitization."""

import pytest

from app.schemas.query import QueryContext
from app.services.validation import (
    BLOCKED_CONTENT_MESSAGE,
    EMPTY_QUERY_MESSAGE,
    LANGUAGE_MESSAGE,
    SCRIPT_PATTERN_MESSAGE,
    SPAM_MESSAGE,
    SQL_PATTERN_MESSAGE,
    QueryValidator,
)


@pytest.fixture
def validator():
    return QueryValidator(max_query_length=2000)


@pytest.mark.parametrize("query", ["", "   ", None])
def test_empty_query_is_rejected_with_single_error(validator, query):
    result = validator.validate_query(query)

    assert result.is_valid is False
    assert result.errors == [EMPTY_QUERY_MESSAGE]
    assert result.sanitized_query is None


def test_valid_query_is_sanitized(validator):
    result = validator.validate_query('  Do you have "vegan" <b>pizza</b>?  ')

    assert result.is_valid is True
    assert result.errors == []
    assert result.sanitized_query == "Do you have vegan bpizza/b?"


def test_too_long_query_reports_the_limit():
    result = QueryValidator(max_query_length=20).validate_query("What time do you open on weekends?")

    assert result.is_valid is False
    assert "Query exceeds maximum length of 20 characters" in result.errors


def test_blocked_words_match_whole_words_only(validator):
    assert BLOCKED_CONTENT_MESSAGE in validator.validate_query("Is this a scam?").errors
    # "description" contains "script" but is not the blocked word
    assert validator.validate_query("Can I get a description of the lasagna?").is_valid


def test_repeated_words_are_spam(validator):
    result = validator.validate_query("pizza pizza pizza pizza pizza now")

    assert SPAM_MESSAGE in result.errors


def test_short_repetition_is_not_spam(validator):
    assert validator.validate_query("hi hi").is_valid


@pytest.mark.parametrize(
    "query",
    [
        "1 UNION SELECT password FROM users",
        "'; DROP TABLE businesses",
        "x' or '1'='1",
        "waitfor delay '0:0:5'",
    ],
)
def test_sql_injection_patterns_are_rejected(validator, query):
    assert SQL_PATTERN_MESSAGE in validator.validate_query(query).errors


@pytest.mark.parametrize(
    "query",
    [
        "<script>alert(1)</script>",
        "click javascript:alert(1)",
        '<img src=x onerror="alert(1)">',
    ],
)
def test_script_patterns_are_rejected(validator, query):
    assert SCRIPT_PATTERN_MESSAGE in validator.validate_query(query).errors


def test_non_latin_only_text_is_unsupported(validator):
    result = validator.validate_query("Привет как дела")

    assert LANGUAGE_MESSAGE in result.errors


def test_mixed_latin_text_is_supported(validator):
    assert validator.validate_query("Do you serve crème brûlée?").is_valid


def test_sanitize_strips_sql_metacharacters(validator):
    assert validator.sanitize("a; b -- c /* d */") == "a b  c  d"


def test_session_id_format():
    assert QueryValidator.validate_session_id("sess_abc12345")
    assert QueryValidator.validate_session_id("a" * 64)
    assert not QueryValidator.validate_session_id("short")
    assert not QueryValidator.validate_session_id("has space in it")
    assert not QueryValidator.validate_session_id(None)


def test_customer_id_format():
    assert QueryValidator.validate_customer_id("cust123")
    assert not QueryValidator.validate_customer_id("ab")
    assert not QueryValidator.validate_customer_id("cust-123")


def test_query_context_limits():
    ok = QueryContext(location="Springfield", preferences=["vegan"])
    too_many = QueryContext(preferences=[str(i) for i in range(21)])
    long_location = QueryContext(location="x" * 201)

    assert QueryValidator.validate_query_context(None) == []
    assert QueryValidator.validate_query_context(ok) == []
    assert QueryValidator.validate_query_context(too_many) == [
        "Context preferences cannot contain more than 20 entries"
    ]
    assert QueryValidator.validate_query_context(long_location) == ["Context location is too long"]
