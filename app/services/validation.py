"""
Query validation and sanitization.

Rejects empty or oversized input, blocked words, repeated-word spam,
SQL-injection and script-injection patterns, and text written only in
non-Latin scripts. Returns a ValidationResult instead of raising.
"""

import logging
import re

from app.schemas.pipeline import ValidationResult
from app.schemas.query import QueryContext

logger = logging.getLogger(__name__)

EMPTY_QUERY_MESSAGE = "Query cannot be empty"
BLOCKED_CONTENT_MESSAGE = "Query contains inappropriate content"
SPAM_MESSAGE = "Query appears to be spam"
SQL_PATTERN_MESSAGE = "Query contains potentially malicious SQL patterns"
SCRIPT_PATTERN_MESSAGE = "Query contains potentially malicious script patterns"
LANGUAGE_MESSAGE = "Language not supported. Please use English."

BLOCKED_WORDS = (
    "spam", "scam", "hack", "exploit", "inject", "sql",
    "script", "xss", "csrf", "ddos", "phishing",
)

SQL_INJECTION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bunion\s+(?:all\s+)?select\b",
        r"\bdrop\s+table\b",
        r"\bdelete\s+from\b",
        r"\binsert\s+into\b",
        r"\bupdate\s+\w+\s+set\b",
        r"\balter\s+table\b",
        r"\bcreate\s+table\b",
        r"\bexec(?:ute)?\s*\(",
        r"\bsp_executesql\b",
        r"\bxp_cmdshell\b",
        r"\bwaitfor\s+delay\b",
        r"\bbenchmark\s*\(",
        r"\bsleep\s*\(",
        r"'\s*or\s+'?1'?\s*=\s*'?1",
    )
]

SCRIPT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"<\s*script\b",
        r"javascript\s*:",
        r"\bon\w+\s*=\s*['\"]?",
        r"<\s*iframe\b",
    )
]

_BLOCKED_WORD_RE = re.compile(r"\b(?:" + "|".join(BLOCKED_WORDS) + r")\b", re.IGNORECASE)
_LATIN_LETTER_RE = re.compile(r"[A-Za-zÀ-ɏ]")
# Cyrillic, Greek, Arabic, Hebrew, Devanagari, Thai, CJK, Hiragana/Katakana, Hangul
_NON_LATIN_LETTER_RE = re.compile(
    r"[Ͱ-ϿЀ-ӿ֐-׿؀-ۿऀ-ॿ"
    r"฀-๿぀-ヿ㐀-䶿一-鿿가-힯]"
)
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{8,64}$")
_CUSTOMER_ID_RE = re.compile(r"^[A-Za-z0-9]{3,50}$")

SPAM_MIN_WORDS = 4
SPAM_REPEAT_RATIO = 0.5


class QueryValidator:
    """Stateless validator configured with the maximum query length."""

    def __init__(self, max_query_length: int = 2000):
        self.max_query_length = max_query_length

    def validate_query(self, query: str | None) -> ValidationResult:
        if query is None or not query.strip():
            return ValidationResult(is_valid=False, errors=[EMPTY_QUERY_MESSAGE])

        errors: list[str] = []
        if len(query) > self.max_query_length:
            errors.append(f"Query exceeds maximum length of {self.max_query_length} characters")

        sanitized = self.sanitize(query)

        if _BLOCKED_WORD_RE.search(sanitized):
            errors.append(BLOCKED_CONTENT_MESSAGE)
        if self._is_repetitive(sanitized):
            errors.append(SPAM_MESSAGE)
        if any(p.search(query) for p in SQL_INJECTION_PATTERNS):
            errors.append(SQL_PATTERN_MESSAGE)
        if any(p.search(query) for p in SCRIPT_PATTERNS):
            errors.append(SCRIPT_PATTERN_MESSAGE)
        if not self._is_supported_language(sanitized):
            errors.append(LANGUAGE_MESSAGE)

        if errors:
            logger.info("Query rejected: length=%s errors=%s", len(query), errors)
            return ValidationResult(is_valid=False, errors=errors)
        return ValidationResult(is_valid=True, errors=[], sanitized_query=sanitized)

    def sanitize(self, text: str) -> str:
        """Strip markup and SQL metacharacters, then truncate."""
        cleaned = text.strip()
        cleaned = re.sub(r"[<>]", "", cleaned)
        cleaned = re.sub(r"['\"]", "", cleaned)
        cleaned = cleaned.replace(";", "")
        cleaned = cleaned.replace("--", "")
        cleaned = cleaned.replace("/*", "").replace("*/", "")
        return cleaned[: self.max_query_length].strip()

    @staticmethod
    def _is_repetitive(text: str) -> bool:
        words = re.findall(r"\w+", text.lower())
        if len(words) < SPAM_MIN_WORDS:
            return False
        repeated = len(words) - len(set(words))
        return repeated / len(words) > SPAM_REPEAT_RATIO

    @staticmethod
    def _is_supported_language(text: str) -> bool:
        """False only when the text has non-Latin letters and no Latin ones."""
        if _LATIN_LETTER_RE.search(text):
            return True
        return not _NON_LATIN_LETTER_RE.search(text)

    @staticmethod
    def validate_session_id(session_id: str | None) -> bool:
        return bool(session_id) and bool(_SESSION_ID_RE.match(session_id))

    @staticmethod
    def validate_customer_id(customer_id: str | None) -> bool:
        return bool(customer_id) and bool(_CUSTOMER_ID_RE.match(customer_id))

    @staticmethod
    def validate_query_context(context: QueryContext | None) -> list[str]:
        """Problems with caller-supplied context (pydantic already enforces the types)."""
        if context is None:
            return []
        errors = []
        if context.preferences and len(context.preferences) > 20:
            errors.append("Context preferences cannot contain more than 20 entries")
        if context.location and len(context.location) > 200:
            errors.append("Context location is too long")
        return errors
