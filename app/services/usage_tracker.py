"""
Usage counters, quota checks and threshold alerts.

record_usage_event bumps a process-local counter immediately (so quota checks
see it on the next request) and hands the event to the analytics outbox; the
durable counter is written later by apply_usage_event in a background session.
A crash between the two can under-count the durable counter.
"""

import logging
import threading
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.timeutil import add_months, as_utc, utcnow
from app.models.usage import (
    ALERT_APPROACHING_LIMIT,
    ALERT_LIMIT_EXCEEDED,
    QUOTA_API_CALLS,
    QUOTA_EMBEDDINGS,
    QUOTA_QUERIES,
    QUOTA_STORAGE,
    QUOTA_TOKENS,
    UsageAlert,
    UsageCounter,
)
from app.schemas.analytics import OutboundEvent, UsageAlertRecord, UsageCounterStatus, UsageEvent

logger = logging.getLogger(__name__)

EVENT_QUOTA_TYPES = {
    "query": QUOTA_QUERIES,
    "tokens": QUOTA_TOKENS,
    "embedding": QUOTA_EMBEDDINGS,
    "api_call": QUOTA_API_CALLS,
    "storage": QUOTA_STORAGE,
}
QUOTA_TYPES = (QUOTA_QUERIES, QUOTA_TOKENS, QUOTA_EMBEDDINGS, QUOTA_API_CALLS, QUOTA_STORAGE)
ALERT_THRESHOLDS = (75, 90, 100)


class UsageTracker:
    def __init__(self, settings: Settings, clock: Callable = utcnow):
        self.settings = settings
        self._clock = clock
        self._cache: dict[tuple[str, str], UsageCounterStatus] = {}
        self._lock = threading.Lock()

    def default_limit(self, quota_type: str) -> int:
        return {
            QUOTA_QUERIES: self.settings.default_query_quota,
            QUOTA_TOKENS: self.settings.monthly_token_limit,
            QUOTA_EMBEDDINGS: self.settings.default_embedding_quota,
            QUOTA_API_CALLS: self.settings.default_api_call_quota,
            QUOTA_STORAGE: self.settings.default_storage_quota,
        }[quota_type]

    @staticmethod
    def _status(quota_type: str, current: int, limit: int, overage: int, reset_date) -> UsageCounterStatus:
        return UsageCounterStatus(
            quota_type=quota_type,
            current_usage=current,
            limit=limit,
            overage=overage,
            remaining=max(0, limit - current),
            reset_date=as_utc(reset_date),
        )

    def _load(self, db: Session, business_id: UUID, quota_type: str) -> UsageCounterStatus:
        counter = (
            db.query(UsageCounter)
            .filter(UsageCounter.business_id == business_id, UsageCounter.quota_type == quota_type)
            .first()
        )
        if counter is None:
            return self._status(quota_type, 0, self.default_limit(quota_type), 0, add_months(self._clock(), 1))
        return self._status(
            quota_type, counter.current_usage, counter.quota_limit, counter.overage, counter.reset_date
        )

    def get_current_usage(self, db: Session, business_id: UUID, quota_type: str) -> UsageCounterStatus:
        """Cached view of one counter, including increments not yet written to the database."""
        key = (str(business_id), quota_type)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached
        loaded = self._load(db, business_id, quota_type)
        with self._lock:
            return self._cache.setdefault(key, loaded)

    def can_perform_operation(self, db: Session, business_id: UUID, quota_type: str, quantity: int = 1) -> bool:
        status = self.get_current_usage(db, business_id, quota_type)
        return status.current_usage + quantity <= status.limit

    def record_usage_event(self, db: Session, event: UsageEvent, outbox) -> None:
        """Count the event locally and queue its durable write. Never raises."""
        try:
            quota_type = EVENT_QUOTA_TYPES[event.event_type]
            current = self.get_current_usage(db, event.business_id, quota_type)
            with self._lock:
                updated = current.current_usage + event.quantity
                self._cache[(str(event.business_id), quota_type)] = self._status(
                    quota_type,
                    updated,
                    current.limit,
                    max(0, updated - current.limit),
                    current.reset_date,
                )
            outbox.publish(OutboundEvent(kind="usage_event", payload=event))
        except Exception:
            logger.exception("Failed to record usage event business_id=%s type=%s", event.business_id, event.event_type)

    def apply_usage_event(self, db: Session, event: UsageEvent) -> UsageCounter:
        """
        Durable write: upsert the counter, increment it, record overage and raise
        threshold alerts. Commits on success; raises on failure (the dispatcher retries).
        """
        quota_type = EVENT_QUOTA_TYPES[event.event_type]
        counter = (
            db.query(UsageCounter)
            .filter(UsageCounter.business_id == event.business_id, UsageCounter.quota_type == quota_type)
            .with_for_update()
            .first()
        )
        if counter is None:
            counter = UsageCounter(
                business_id=event.business_id,
                quota_type=quota_type,
                current_usage=0,
                quota_limit=self.default_limit(quota_type),
                overage=0,
                reset_date=add_months(self._clock(), 1),
            )
            db.add(counter)

        counter.current_usage = (counter.current_usage or 0) + event.quantity
        counter.overage = max(0, counter.current_usage - counter.quota_limit)
        db.flush()
        self._check_alerts(db, counter)
        db.commit()
        return counter

    def _check_alerts(self, db: Session, counter: UsageCounter) -> Optional[UsageAlert]:
        """Create one alert for the highest crossed threshold unless an unresolved one exists."""
        if counter.quota_limit <= 0:
            return None
        percentage = counter.current_usage * 100 / counter.quota_limit
        crossed = [t for t in ALERT_THRESHOLDS if percentage >= t]
        if not crossed:
            return None

        threshold = crossed[-1]
        alert_type = ALERT_LIMIT_EXCEEDED if threshold >= 100 else ALERT_APPROACHING_LIMIT
        existing = (
            db.query(UsageAlert)
            .filter(
                UsageAlert.business_id == counter.business_id,
                UsageAlert.alert_type == alert_type,
                UsageAlert.quota_type == counter.quota_type,
                UsageAlert.threshold_percentage == threshold,
                UsageAlert.resolved_at.is_(None),
            )
            .first()
        )
        if existing is not None:
            return None

        alert = UsageAlert(
            business_id=counter.business_id,
            alert_type=alert_type,
            quota_type=counter.quota_type,
            threshold_percentage=threshold,
            current_usage=counter.current_usage,
        )
        db.add(alert)
        logger.warning(
            "Usage alert business_id=%s quota=%s threshold=%s%% usage=%s/%s",
            counter.business_id,
            counter.quota_type,
            threshold,
            counter.current_usage,
            counter.quota_limit,
        )
        return alert

    def reset_usage_counters(self, db: Session, business_id: UUID) -> list[UsageCounterStatus]:
        """Start a new billing period: usage and overage to 0, reset date one month on."""
        counters = db.query(UsageCounter).filter(UsageCounter.business_id == business_id).all()
        for counter in counters:
            previous = as_utc(counter.reset_date)
            counter.last_reset_date = previous
            counter.reset_date = add_months(previous, 1)
            counter.current_usage = 0
            counter.overage = 0
        (
            db.query(UsageAlert)
            .filter(UsageAlert.business_id == business_id, UsageAlert.resolved_at.is_(None))
            .update({UsageAlert.resolved_at: self._clock()}, synchronize_session=False)
        )
        db.commit()

        with self._lock:
            for key in [k for k in self._cache if k[0] == str(business_id)]:
                del self._cache[key]

        logger.info("Reset %s usage counters for business_id=%s", len(counters), business_id)
        return [
            self._status(c.quota_type, 0, c.quota_limit, 0, c.reset_date) for c in counters
        ]

    def get_usage_status(self, db: Session, business_id: UUID) -> list[UsageCounterStatus]:
        return [self.get_current_usage(db, business_id, quota_type) for quota_type in QUOTA_TYPES]

    def list_alerts(self, db: Session, business_id: UUID, include_resolved: bool = False) -> list[UsageAlertRecord]:
        query = db.query(UsageAlert).filter(UsageAlert.business_id == business_id)
        if not include_resolved:
            query = query.filter(UsageAlert.resolved_at.is_(None))
        return [
            UsageAlertRecord(
                id=a.id,
                alert_type=a.alert_type,
                quota_type=a.quota_type,
                threshold_percentage=a.threshold_percentage,
                current_usage=a.current_usage,
                created_at=as_utc(a.created_at),
                resolved_at=as_utc(a.resolved_at),
            )
            for a in query.order_by(UsageAlert.created_at.desc()).all()
        ]

    def resolve_alert(self, db: Session, business_id: UUID, alert_id: UUID) -> bool:
        alert = (
            db.query(UsageAlert)
            .filter(UsageAlert.id == alert_id, UsageAlert.business_id == business_id)
            .first()
        )
        if alert is None or alert.resolved_at is not None:
            return False
        alert.resolved_at = self._clock()
        db.commit()
        return True
