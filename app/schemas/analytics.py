"""Analytics, usage and audit-log shapes."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import Field

from app.schemas.base import CamelModel


class QueryLogEntry(CamelModel):
    """One processed query, as handed to the analytics logger."""

    business_id: UUID
    session_id: str | None = None
    query_text: str
    intent_detected: str | None = None
    context_retrieved: list[dict[str, Any]] | None = None
    response_generated: str | None = None
    processing_time_ms: int | None = None
    token_usage: int | None = None
    cost_estimate: float | None = None
    confidence_score: float | None = None
    model_used: str | None = None
    status: Literal["SUCCESS", "ERROR", "TIMEOUT", "RATE_LIMITED"]
    error_message: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None


class UsageEvent(CamelModel):
    business_id: UUID
    event_type: Literal["query", "tokens", "embedding", "api_call", "storage"]
    quantity: int = 1
    tokens_consumed: int | None = None
    cost_cents: float | None = None
    metadata: dict[str, Any] | None = None
    timestamp: datetime


class OutboundEvent(CamelModel):
    """A side effect handed from the request path to background delivery."""

    kind: Literal["query_log", "usage_event"]
    payload: QueryLogEntry | UsageEvent
    attempts: int = 0


# --- Read models ---

class TopQuery(CamelModel):
    query: str
    count: int
    average_confidence: float


class QueryAnalytics(CamelModel):
    total_queries: int
    successful_queries: int
    failed_queries: int
    average_processing_time: float
    average_confidence: float
    intent_distribution: dict[str, int] = Field(default_factory=dict)
    error_distribution: dict[str, int] = Field(default_factory=dict)
    top_queries: list[TopQuery] = Field(default_factory=list)


class SessionAnalytics(CamelModel):
    total_sessions: int
    active_sessions: int
    average_session_duration: float
    average_queries_per_session: float
    session_completion_rate: float


class IntentCount(CamelModel):
    intent: str
    count: int


class RealTimeMetrics(CamelModel):
    queries_last_hour: int
    active_sessions: int
    average_response_time: float
    error_rate: float
    top_intents: list[IntentCount] = Field(default_factory=list)


class QueryLogRecord(CamelModel):
    id: UUID
    session_id: str | None = None
    query_text: str
    intent_detected: str | None = None
    response_generated: str | None = None
    processing_time_ms: int | None = None
    token_usage: int | None = None
    confidence_score: float | None = None
    model_used: str | None = None
    status: str
    error_message: str | None = None
    created_at: datetime


class QueryLogPage(CamelModel):
    logs: list[QueryLogRecord] = Field(default_factory=list)
    total: int
    has_more: bool


class QueryAnalyticsData(CamelModel):
    query_analytics: QueryAnalytics
    session_analytics: SessionAnalytics
    real_time_metrics: RealTimeMetrics
    processor_stats: dict[str, Any]
    query_logs: QueryLogPage | None = None


class QueryAnalyticsResponse(CamelModel):
    success: bool = True
    data: QueryAnalyticsData
    timestamp: datetime


class UsageCounterStatus(CamelModel):
    quota_type: str
    current_usage: int
    limit: int
    overage: int = 0
    remaining: int
    reset_date: datetime


class UsageAlertRecord(CamelModel):
    id: UUID
    alert_type: str
    quota_type: str
    threshold_percentage: int
    current_usage: int | None = None
    created_at: datetime
    resolved_at: datetime | None = None


class UsageStatusData(CamelModel):
    counters: list[UsageCounterStatus] = Field(default_factory=list)
    alerts: list[UsageAlertRecord] = Field(default_factory=list)


class UsageStatusResponse(CamelModel):
    success: bool = True
    data: UsageStatusData
    timestamp: datetime
