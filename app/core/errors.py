"""Error codes for the query pipeline and the exception that carries them.

Every user-facing failure is a QueryError with one of the codes below; app.main
renders it into the {success: false, error: {...}, timestamp} envelope.
"""

from typing import Any


INVALID_INPUT = "INVALID_INPUT"
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
SESSION_EXPIRED = "SESSION_EXPIRED"
CONTEXT_RETRIEVAL_FAILED = "CONTEXT_RETRIEVAL_FAILED"
INTENT_DETECTION_FAILED = "INTENT_DETECTION_FAILED"
PROCESSING_TIMEOUT = "PROCESSING_TIMEOUT"
BUSINESS_NOT_FOUND = "BUSINESS_NOT_FOUND"
UNAUTHORIZED = "UNAUTHORIZED"
NOT_FOUND = "NOT_FOUND"
METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
INTERNAL_ERROR = "INTERNAL_ERROR"

ERROR_MESSAGES: dict[str, str] = {
    INVALID_INPUT: "Invalid query input provided",
    RATE_LIMIT_EXCEEDED: "Rate limit exceeded. Please try again later.",
    SESSION_EXPIRED: "Session has expired. Please start a new conversation.",
    CONTEXT_RETRIEVAL_FAILED: "Failed to retrieve relevant context",
    INTENT_DETECTION_FAILED: "Failed to detect query intent",
    PROCESSING_TIMEOUT: "Query processing timed out. Please try again.",
    BUSINESS_NOT_FOUND: "Business not found or inactive",
    UNAUTHORIZED: "Unauthorized access",
    NOT_FOUND: "Resource not found",
    METHOD_NOT_ALLOWED: "Method not allowed",
    INTERNAL_ERROR: "Internal server error occurred",
}

ERROR_STATUS: dict[str, int] = {
    INVALID_INPUT: 400,
    UNAUTHORIZED: 401,
    BUSINESS_NOT_FOUND: 404,
    NOT_FOUND: 404,
    METHOD_NOT_ALLOWED: 405,
    SESSION_EXPIRED: 410,
    RATE_LIMIT_EXCEEDED: 429,
    CONTEXT_RETRIEVAL_FAILED: 500,
    INTENT_DETECTION_FAILED: 500,
    INTERNAL_ERROR: 500,
    PROCESSING_TIMEOUT: 504,
}


class QueryError(Exception):
    """A pipeline failure that is reported to the caller with a stable code."""

    def __init__(
        self,
        code: str,
        message: str | None = None,
        *,
        retry_after: int | None = None,
        details: Any = None,
    ):
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, ERROR_MESSAGES[INTERNAL_ERROR])
        self.retry_after = retry_after
        self.details = details
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return ERROR_STATUS.get(self.code, 500)

    def to_dict(self) -> dict[str, Any]:
        """Error body for the response envelope (camelCase keys)."""
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        if self.details is not None:
            body["details"] = self.details
        return body
