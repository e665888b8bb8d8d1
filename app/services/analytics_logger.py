"""
Query audit log: writes and dashboard aggregates.

log_query is the request-path entry point and only queues the entry; the
row is written by write_query_log from the analytics dispatcher.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.timeutil import as_utc, utcnow
from app.models.conversation import ConversationMessage, ConversationSession
from app.models.query_log import QUERY_STATUS_SUCCESS, QueryLog
from app.schemas.analytics import (
    IntentCount,
    OutboundEvent,
    QueryAnalytics,
    QueryLogEntry,
    QueryLogPage,
    QueryLogRecord,
    RealTimeMetrics,
    SessionAnalytics,
    TopQuery,
)

logger = logging.getLogger(__name__)

TOP_QUERIES_LIMIT = 10
TOP_INTENTS_LIMIT = 5


class AnalyticsLogger:
    def __init__(self, settings: Settings, clock: Callable = utcnow):
        self.settings = settings
        self._clock = clock

    def log_query(self, entry: QueryLogEntry, outbox) -> None:
        """Queue a query log entry for background delivery. Never raises."""
        try:
            outbox.publish(OutboundEvent(kind="query_log", payload=entry))
        except Exception:
            logger.exception("Failed to queue query log business_id=%s", entry.business_id)

    def write_query_log(self, db: Session, entry: QueryLogEntry) -> QueryLog:
        """Insert one immutable log row. Raises on failure so the dispatcher can retry."""
        row = QueryLog(
            business_id=entry.business_id,
            session_id=entry.session_id,
            query_text=entry.query_text,
            intent_detected=entry.intent_detected,
            context_retrieved=entry.context_retrieved,
            response_generated=entry.response_generated,
            processing_time_ms=entry.processing_time_ms,
            token_usage=entry.token_usage,
            cost_estimate=entry.cost_estimate,
            confidence_score=entry.confidence_score,
            model_used=entry.model_used,
            status=entry.status,
            error_message=entry.error_message,
            user_agent=entry.user_agent,
            ip_address=entry.ip_address,
            created_at=self._clock(),
        )
        db.add(row)
        db.commit()
        return row

    @staticmethod
    def _logs_in_range(db: Session, business_id: UUID, start_date: Optional[datetime], end_date: Optional[datetime]):
        query = db.query(QueryLog).filter(QueryLog.business_id == business_id)
        if start_date is not None:
            query = query.filter(QueryLog.created_at >= start_date)
        if end_date is not None:
            query = query.filter(QueryLog.created_at <= end_date)
        return query

    def get_query_analytics(
        self,
        db: Session,
        business_id: UUID,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> QueryAnalytics:
        logs = self._logs_in_range(db, business_id, start_date, end_date)
        total = logs.count()
        successful = logs.filter(QueryLog.status == QUERY_STATUS_SUCCESS).count()

        averages = logs.with_entities(
            func.avg(QueryLog.processing_time_ms), func.avg(QueryLog.confidence_score)
        ).one()

        intents = (
            logs.filter(QueryLog.intent_detected.isnot(None))
            .with_entities(QueryLog.intent_detected, func.count(QueryLog.id))
            .group_by(QueryLog.intent_detected)
            .all()
        )
        errors = (
            logs.filter(QueryLog.status != QUERY_STATUS_SUCCESS)
            .with_entities(QueryLog.status, func.count(QueryLog.id))
            .group_by(QueryLog.status)
            .all()
        )
        count_col = func.count(QueryLog.id).label("count")
        top = (
            logs.with_entities(QueryLog.query_text, count_col, func.avg(QueryLog.confidence_score))
            .group_by(QueryLog.query_text)
            .order_by(count_col.desc(), QueryLog.query_text)
            .limit(TOP_QUERIES_LIMIT)
            .all()
        )

        return QueryAnalytics(
            total_queries=total,
            successful_queries=successful,
            failed_queries=total - successful,
            average_processing_time=float(averages[0] or 0),
            average_confidence=float(averages[1] or 0),
            intent_distribution={intent: count for intent, count in intents},
            error_distribution={status: count for status, count in errors},
            top_queries=[
                TopQuery(query=text, count=count, average_confidence=float(avg or 0)) for text, count, avg in top
            ],
        )

    def get_session_analytics(
        self,
        db: Session,
        business_id: UUID,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> SessionAnalytics:
        now = self._clock()
        query = db.query(ConversationSession).filter(ConversationSession.business_id == business_id)
        if start_date is not None:
            query = query.filter(ConversationSession.started_at >= start_date)
        if end_date is not None:
            query = query.filter(ConversationSession.started_at <= end_date)
        sessions = query.all()
        if not sessions:
            return SessionAnalytics(
                total_sessions=0,
                active_sessions=0,
                average_session_duration=0.0,
                average_queries_per_session=0.0,
                session_completion_rate=0.0,
            )

        total = len(sessions)
        active = sum(1 for s in sessions if s.is_active and as_utc(s.expires_at) > now)
        ended = sum(1 for s in sessions if s.ended_at is not None)
        durations = [
            (as_utc(s.ended_at or s.last_activity_at) - as_utc(s.started_at)).total_seconds() for s in sessions
        ]
        user_messages = (
            db.query(func.count(ConversationMessage.id))
            .filter(
                ConversationMessage.conversation_id.in_([s.id for s in sessions]),
                ConversationMessage.role == "user",
            )
            .scalar()
        ) or 0

        return SessionAnalytics(
            total_sessions=total,
            active_sessions=active,
            average_session_duration=sum(durations) / total,
            average_queries_per_session=user_messages / total,
            session_completion_rate=ended / total,
        )

    def get_realtime_metrics(self, db: Session, business_id: UUID) -> RealTimeMetrics:
        now = self._clock()
        logs = self._logs_in_range(db, business_id, now - timedelta(hours=1), None)
        total = logs.count()
        failed = logs.filter(QueryLog.status != QUERY_STATUS_SUCCESS).count()
        average_time = logs.with_entities(func.avg(QueryLog.processing_time_ms)).scalar()

        count_col = func.count(QueryLog.id).label("count")
        intents = (
            logs.filter(QueryLog.intent_detected.isnot(None))
            .with_entities(QueryLog.intent_detected, count_col)
            .group_by(QueryLog.intent_detected)
            .order_by(count_col.desc(), QueryLog.intent_detected)
            .limit(TOP_INTENTS_LIMIT)
            .all()
        )
        active_sessions = (
            db.query(func.count(ConversationSession.id))
            .filter(
                ConversationSession.business_id == business_id,
                ConversationSession.is_active.is_(True),
                ConversationSession.expires_at > now,
            )
            .scalar()
        ) or 0

        return RealTimeMetrics(
            queries_last_hour=total,
            active_sessions=active_sessions,
            average_response_time=float(average_time or 0),
            error_rate=failed / total if total else 0.0,
            top_intents=[IntentCount(intent=intent, count=count) for intent, count in intents],
        )

    def search_query_logs(
        self,
        db: Session,
        business_id: UUID,
        intent: Optional[str] = None,
        status: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> QueryLogPage:
        query = self._logs_in_range(db, business_id, start_date, end_date)
        if intent:
            query = query.filter(QueryLog.intent_detected == intent)
        if status:
            query = query.filter(QueryLog.status == status)
        total = query.count()
        rows = query.order_by(QueryLog.created_at.desc()).offset(offset).limit(limit).all()
        return QueryLogPage(
            logs=[
                QueryLogRecord(
                    id=row.id,
                    session_id=row.session_id,
                    query_text=row.query_text,
                    intent_detected=row.intent_detected,
                    response_generated=row.response_generated,
                    processing_time_ms=row.processing_time_ms,
                    token_usage=row.token_usage,
                    confidence_score=row.confidence_score,
                    model_used=row.model_used,
                    status=row.status,
                    error_message=row.error_message,
                    created_at=as_utc(row.created_at),
                )
                for row in rows
            ],
            total=total,
            has_more=offset + len(rows) < total,
        )

    def cleanup_old_logs(self, db: Session) -> int:
        """Delete entries older than the retention window."""
        cutoff = self._clock() - timedelta(days=self.settings.query_log_retention_days)
        count = db.query(QueryLog).filter(QueryLog.created_at < cutoff).delete(synchronize_session=False)
        db.commit()
        if count:
            logger.info("Deleted %s query logs older than %s", count, cutoff.date().isoformat())
        return count
