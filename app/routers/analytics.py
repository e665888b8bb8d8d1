"""Business-scoped analytics and usage endpoints for dashboard clients."""

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.auth import BusinessPrincipal, get_business_principal, require_permission
from app.core.container import ServiceContainer, get_container
from app.core.errors import INVALID_INPUT, QueryError
from app.core.timeutil import utcnow
from app.db.session import get_db
from app.schemas.analytics import (
    QueryAnalyticsData,
    QueryAnalyticsResponse,
    UsageStatusData,
    UsageStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])

USAGE_RESET_PERMISSION = "usage:reset"


@router.get("/query", response_model=QueryAnalyticsResponse, response_model_by_alias=True)
def get_query_analytics(
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    intent: str | None = Query(default=None),
    status: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    principal: BusinessPrincipal = Depends(get_business_principal),
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """
    Aggregate query and session analytics for the caller's business.

    Raw logs are included (paginated) only when `limit` is given.
    """
    if start_date and end_date and start_date > end_date:
        raise QueryError(INVALID_INPUT, "startDate must be before endDate")

    business = container.query_processor.load_business(db, principal.business_id)
    analytics = container.analytics_logger
    query_logs = None
    if limit is not None:
        query_logs = analytics.search_query_logs(
            db,
            business.id,
            intent=intent,
            status=status,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset,
        )

    data = QueryAnalyticsData(
        query_analytics=analytics.get_query_analytics(db, business.id, start_date, end_date),
        session_analytics=analytics.get_session_analytics(db, business.id, start_date, end_date),
        real_time_metrics=analytics.get_realtime_metrics(db, business.id),
        processor_stats=container.query_processor.get_processor_stats(db, business.id),
        query_logs=query_logs,
    )
    return QueryAnalyticsResponse(data=data, timestamp=utcnow())


def _usage_status(db: Session, container: ServiceContainer, business_id: UUID) -> UsageStatusResponse:
    tracker = container.usage_tracker
    return UsageStatusResponse(
        data=UsageStatusData(
            counters=tracker.get_usage_status(db, business_id),
            alerts=tracker.list_alerts(db, business_id),
        ),
        timestamp=utcnow(),
    )


@router.get("/usage", response_model=UsageStatusResponse, response_model_by_alias=True)
def get_usage(
    principal: BusinessPrincipal = Depends(get_business_principal),
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """Current counters per quota type plus unresolved alerts."""
    business = container.query_processor.load_business(db, principal.business_id)
    return _usage_status(db, container, business.id)


@router.post("/usage/reset", response_model=UsageStatusResponse, response_model_by_alias=True)
def reset_usage(
    principal: BusinessPrincipal = Depends(get_business_principal),
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """Start a new billing period for the caller's business."""
    require_permission(principal, USAGE_RESET_PERMISSION)
    business = container.query_processor.load_business(db, principal.business_id)
    container.usage_tracker.reset_usage_counters(db, business.id)
    logger.info("Usage counters reset by %s for business_id=%s", principal.auth_method, business.id)
    return _usage_status(db, container, business.id)


@router.post("/usage/alerts/{alert_id}/resolve")
def resolve_alert(
    alert_id: UUID,
    principal: BusinessPrincipal = Depends(get_business_principal),
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """Mark an alert resolved so its threshold can alert again."""
    resolved = container.usage_tracker.resolve_alert(db, principal.business_id, alert_id)
    return {
        "success": True,
        "data": {"alertId": str(alert_id), "resolved": resolved},
        "timestamp": utcnow().isoformat(),
    }
