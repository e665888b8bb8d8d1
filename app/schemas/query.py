"""Request and response bodies for the /query endpoints."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import Field

from app.schemas.base import CamelModel


class QueryContext(CamelModel):
    """Optional caller-supplied context for a query."""

    location: str | None = None
    preferences: list[str] | None = None
    metadata: dict[str, Any] | None = None

    model_config = {"extra": "ignore"}


class QueryRequest(CamelModel):
    """Body for POST /query and POST /query/stream."""

    query: str = Field(description="Customer message; validated and sanitized by the pipeline")
    session_id: str | None = Field(default=None, description="Existing conversation session id")
    customer_id: str | None = Field(default=None, description="Optional stable customer identifier")
    context: QueryContext | None = None


class QuerySource(CamelModel):
    """A retrieved piece of business content the answer was grounded on."""

    id: UUID
    content_type: str
    content_id: str
    title: str | None = None
    snippet: str
    similarity: float
    confidence: float


class QueryResponseBody(CamelModel):
    text: str
    confidence: float
    sources: list[QuerySource] = Field(default_factory=list)
    intent: str
    suggestions: list[str] = Field(default_factory=list)


class SessionInfo(CamelModel):
    session_id: str
    expires_at: datetime
    context_summary: str = ""
    turn_count: int = 0


class UsageInfo(CamelModel):
    tokens_used: int
    cost_estimate: float
    remaining_quota: int | None = None


class ValidationInfo(CamelModel):
    is_valid: bool
    issues: list[str] = Field(default_factory=list)


class QueryMetadata(CamelModel):
    processing_time_ms: int
    model_used: str
    intent_confidence: float
    intent_reasoning: str = ""
    intent_should_persist: bool = False
    context_items_used: int = 0
    business_context_used: list[str] = Field(default_factory=list)
    is_follow_up: bool = False
    resolved_query: str | None = None
    validation: ValidationInfo | None = None


class QueryResult(CamelModel):
    response: QueryResponseBody
    session: SessionInfo
    usage: UsageInfo | None = None
    metadata: QueryMetadata


class QueryApiResponse(CamelModel):
    """Envelope for POST /query."""

    success: bool = True
    data: QueryResult
    timestamp: datetime


class EndSessionResponse(CamelModel):
    success: bool = True
    data: dict[str, Any]
    timestamp: datetime
