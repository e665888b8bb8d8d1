"""
Hand-off of audit and billing side effects from the request path.

The request publishes OutboundEvents to a per-request AnalyticsOutbox. After
the response is sent, AnalyticsDispatcher.deliver writes each event in its own
database session, retrying up to max_attempts; events that still fail are
logged and kept in a bounded dead-letter list.
"""

import logging
import threading
from collections import deque
from typing import Callable, Iterable

from app.schemas.analytics import OutboundEvent

logger = logging.getLogger(__name__)

DEAD_LETTER_LIMIT = 100


class AnalyticsOutbox:
    """Events collected while handling one request."""

    def __init__(self):
        self._events: list[OutboundEvent] = []

    def publish(self, event: OutboundEvent) -> None:
        self._events.append(event)

    def drain(self) -> list[OutboundEvent]:
        events, self._events = self._events, []
        return events

    def __len__(self) -> int:
        return len(self._events)


class AnalyticsDispatcher:
    def __init__(self, session_factory: Callable, analytics_logger, usage_tracker, max_attempts: int = 3):
        self.session_factory = session_factory
        self.analytics_logger = analytics_logger
        self.usage_tracker = usage_tracker
        self.max_attempts = max(1, max_attempts)
        self.dead_letters: deque[OutboundEvent] = deque(maxlen=DEAD_LETTER_LIMIT)
        self._lock = threading.Lock()
        self._stats = {"delivered": 0, "retried": 0, "failed": 0}

    def _write(self, event: OutboundEvent) -> None:
        db = self.session_factory()
        try:
            if event.kind == "query_log":
                self.analytics_logger.write_query_log(db, event.payload)
            else:
                self.usage_tracker.apply_usage_event(db, event.payload)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _bump(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1

    def deliver_one(self, event: OutboundEvent) -> bool:
        while event.attempts < self.max_attempts:
            event.attempts += 1
            try:
                self._write(event)
            except Exception:
                logger.exception(
                    "Analytics delivery failed kind=%s attempt=%s/%s",
                    event.kind,
                    event.attempts,
                    self.max_attempts,
                )
                if event.attempts < self.max_attempts:
                    self._bump("retried")
                continue
            self._bump("delivered")
            return True

        self._bump("failed")
        self.dead_letters.append(event)
        logger.error(
            "Dropping analytics event after %s attempts kind=%s business_id=%s",
            event.attempts,
            event.kind,
            event.payload.business_id,
        )
        return False

    def deliver(self, events: Iterable[OutboundEvent]) -> int:
        """Deliver events in order; returns how many were written. Never raises."""
        delivered = 0
        for event in events:
            if self.deliver_one(event):
                delivered += 1
        return delivered

    def flush(self, outbox: AnalyticsOutbox) -> int:
        """Background-task entry point: deliver whatever the request published."""
        return self.deliver(outbox.drain())

    def get_stats(self) -> dict:
        with self._lock:
            stats = dict(self._stats)
        stats["deadLetters"] = len(self.dead_letters)
        return stats
