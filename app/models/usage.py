"""Per-business usage counters and threshold alerts."""

import uuid
from sqlalchemy import BigInteger, Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base

QUOTA_QUERIES = "queries"
QUOTA_TOKENS = "tokens"
QUOTA_EMBEDDINGS = "embeddings"
QUOTA_API_CALLS = "api_calls"
QUOTA_STORAGE = "storage"

ALERT_APPROACHING_LIMIT = "approaching_limit"
ALERT_LIMIT_EXCEEDED = "limit_exceeded"


class UsageCounter(Base):
    """
    Running total for one (business, quota_type) in the current billing period.

    current_usage only grows between resets; usage beyond quota_limit is kept
    in overage rather than dropped.
    """

    __tablename__ = "usage_counters"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False, index=True)
    quota_type = Column(String(32), nullable=False)
    current_usage = Column(BigInteger, nullable=False, default=0)
    quota_limit = Column(BigInteger, nullable=False)
    overage = Column(BigInteger, nullable=False, default=0)
    reset_date = Column(DateTime(timezone=True), nullable=False)
    last_reset_date = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("business_id", "quota_type", name="uq_usage_counters_business_quota"),
    )


class UsageAlert(Base):
    """Threshold crossing; at most one unresolved row per (business, alert_type, quota_type, threshold)."""

    __tablename__ = "usage_alerts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id"), nullable=False, index=True)
    alert_type = Column(String(32), nullable=False)
    quota_type = Column(String(32), nullable=False)
    threshold_percentage = Column(Integer, nullable=False)
    current_usage = Column(BigInteger, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
