"""
Result types passed between pipeline stages.

Each service returns one of these instead of raising for expected failures
(validation, rate limiting, retrieval), so the orchestrator can decide how a
failure degrades the response.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import UUID

from pydantic import Field

from app.schemas.base import CamelModel


class QueryIntent(str, Enum):
    MENU_INQUIRY = "MENU_INQUIRY"
    HOURS_POLICY = "HOURS_POLICY"
    PRICING_QUESTION = "PRICING_QUESTION"
    DIETARY_RESTRICTIONS = "DIETARY_RESTRICTIONS"
    LOCATION_INFO = "LOCATION_INFO"
    GENERAL_CHAT = "GENERAL_CHAT"
    COMPLAINT_FEEDBACK = "COMPLAINT_FEEDBACK"
    UNKNOWN = "UNKNOWN"


class OrderIntent(str, Enum):
    LOOKUP_ORDER = "lookup_order"
    NEW_ORDER = "new_order"
    CANCEL_ORDER = "cancel_order"
    MODIFY_ORDER = "modify_order"
    SUPPORT = "support"
    GENERAL = "general"


# --- Validation & rate limiting ---

class ValidationResult(CamelModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    sanitized_query: str | None = None


class RateLimitResult(CamelModel):
    allowed: bool
    remaining: int
    reset_time: datetime
    retry_after: int | None = None


# --- Intent ---

class IntentResult(CamelModel):
    intent: str
    confidence: float
    reasoning: str
    should_persist: bool


class IntentContext(CamelModel):
    """Intent state machine for one session, stored in the session metadata."""

    current_intent: str | None = None
    intent_data: dict[str, Any] = Field(default_factory=dict)
    last_intent_change: datetime | None = None
    conversation_step: int = 0


# --- Retrieval ---

class ContextResult(CamelModel):
    id: UUID
    business_id: UUID
    content_type: str
    content_id: str
    content: str
    title: str | None = None
    similarity: float
    confidence: float
    text_snippet: str
    metadata: dict[str, Any] | None = None


class SearchError(CamelModel):
    code: Literal["SEARCH_FAILED", "RETRIEVAL_FAILED"]
    message: str


class SearchResponse(CamelModel):
    success: bool
    results: list[ContextResult] = Field(default_factory=list)
    total_results: int = 0
    average_confidence: float = 0.0
    processing_time_ms: int = 0
    error: SearchError | None = None


class ContentItem(CamelModel):
    """One unit of business content to embed (menu item, policy, FAQ, business info)."""

    content_type: str
    content_id: str
    content: str
    title: str | None = None
    metadata: dict[str, Any] | None = None


class IndexSummary(CamelModel):
    indexed: int = 0
    updated: int = 0
    unchanged: int = 0
    removed: int = 0
    failed: int = 0


class ContextBundle(CamelModel):
    """Retrieved matches plus the structured business facts assembled for one query."""

    results: list[ContextResult] = Field(default_factory=list)
    business_facts: dict[str, Any] = Field(default_factory=dict)
    average_confidence: float = 0.0
    retrieval_failed: bool = False
    error: SearchError | None = None

    @property
    def has_context(self) -> bool:
        return bool(self.results)


# --- Session ---

class HistoryTurn(CamelModel):
    role: Literal["user", "assistant"]
    content: str
    intent: str | None = None
    timestamp: datetime | None = None


class SessionMemory(CamelModel):
    """Derived view over recent history used for follow-up detection and prompting."""

    key_topics: list[str] = Field(default_factory=list)
    key_facts: list[str] = Field(default_factory=list)
    last_question: str | None = None
    last_answer: str | None = None
    conversation_flow: str = ""


class ConversationContext(CamelModel):
    history: list[HistoryTurn] = Field(default_factory=list)
    context_summary: str = ""
    memory: SessionMemory = Field(default_factory=SessionMemory)
    turn_count: int = 0


# --- Prompt ---

class PromptTemplate(CamelModel):
    system_message: str
    business_context: str
    conversation_history: str
    current_query: str
    response_guidelines: str
    constraints: str

    def sections(self) -> list[str]:
        return [
            self.system_message,
            self.business_context,
            self.conversation_history,
            self.current_query,
            self.response_guidelines,
            self.constraints,
        ]

    def to_system_instruction(self) -> str:
        """Everything except the customer's query, in a fixed order."""
        parts = [
            self.system_message,
            self.business_context,
            self.conversation_history,
            self.response_guidelines,
            self.constraints,
        ]
        return "\n\n".join(p for p in parts if p)


class PromptValidation(CamelModel):
    is_valid: bool
    issues: list[str] = Field(default_factory=list)
    estimated_tokens: int


# --- LLM ---

class LLMResponse(CamelModel):
    text: str
    tokens_used: int
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float
    model: str
    finish_reason: str
    processing_time_ms: int


class StreamingLLMChunk(CamelModel):
    chunk: str
    completed: bool
    tokens_used: int
    cost: float
    session_id: str
    finish_reason: str | None = None


class BusinessQuota(CamelModel):
    business_id: UUID
    monthly_limit: int
    current_usage: int
    remaining_quota: int
    reset_date: datetime


# --- Response processing ---

class ResponseValidation(CamelModel):
    is_valid: bool
    confidence: float
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class BusinessInformation(CamelModel):
    name: str
    phone: str | None = None
    website: str | None = None
    address: str | None = None
    hours: str | None = None


class ProcessedResponse(CamelModel):
    text: str
    confidence: float
    sources: list[ContextResult] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    business_info_extracted: BusinessInformation
    validation_result: ResponseValidation
    processing_time_ms: int = 0


# --- Streaming ---

class StreamEvent(CamelModel):
    type: Literal["chunk", "complete", "error"]
    data: dict[str, Any]

    @property
    def is_terminal(self) -> bool:
        return self.type in ("complete", "error")
