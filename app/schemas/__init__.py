from app.schemas.query import (
    QueryRequest,
    QueryContext,
    QueryApiResponse,
    QueryResult,
    QueryResponseBody,
    QuerySource,
    SessionInfo,
    UsageInfo,
    QueryMetadata,
)
from app.schemas.analytics import (
    QueryLogEntry,
    UsageEvent,
    OutboundEvent,
    QueryAnalyticsResponse,
    UsageStatusResponse,
)

__all__ = [
    "QueryRequest",
    "QueryContext",
    "QueryApiResponse",
    "QueryResult",
    "QueryResponseBody",
    "QuerySource",
    "SessionInfo",
    "UsageInfo",
    "QueryMetadata",
    "QueryLogEntry",
    "UsageEvent",
    "OutboundEvent",
    "QueryAnalyticsResponse",
    "UsageStatusResponse",
]
