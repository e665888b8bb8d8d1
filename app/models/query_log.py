"""Append-only audit record of one processed query."""

import uuid
from sqlalchemy import Column, Float, Integer, String, Text, DateTime, ForeignKey, Index, func
from sqlalchemy.dialects.postgresql import UUID, JSONB

from app.db.base import Base

QUERY_STATUS_SUCCESS = "SUCCESS"
QUERY_STATUS_ERROR = "ERROR"
QUERY_STATUS_TIMEOUT = "TIMEOUT"
QUERY_STATUS_RATE_LIMITED = "RATE_LIMITED"

QUERY_STATUSES = (
    QUERY_STATUS_SUCCESS,
    QUERY_STATUS_ERROR,
    QUERY_STATUS_TIMEOUT,
    QUERY_STATUS_RATE_LIMITED,
)


class QueryLog(Base):
    __tablename__ = "query_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False, index=True)
    session_id = Column(String(64), nullable=True, index=True)
    query_text = Column(Text, nullable=False)
    intent_detected = Column(String(32), nullable=True)
    context_retrieved = Column(JSONB, nullable=True)  # snapshot of the sources used
    response_generated = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    token_usage = Column(Integer, nullable=True)
    cost_estimate = Column(Float, nullable=True)
    confidence_score = Column(Float, nullable=True)
    model_used = Column(String, nullable=True)
    status = Column(String(16), nullable=False)
    error_message = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_query_logs_business_created", "business_id", "created_at"),
    )
