"""
Conversation session lifecycle: absent -> active -> expired.

Expired rows are never reactivated. A request for an expired session id gets
a replacement row under the same id (or SESSION_EXPIRED when renewal is
disabled). All mutation of one session runs under a per-session asyncio.Lock
so concurrent requests for the same session append in arrival order.
"""

import asyncio
import logging
import secrets
import string
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.errors import SESSION_EXPIRED, QueryError
from app.core.timeutil import as_utc, utcnow
from app.models.conversation import ConversationMessage, ConversationSession
from app.schemas.pipeline import ConversationContext, HistoryTurn, IntentContext
from app.services.conversation_memory import (
    build_context_summary,
    extract_session_context,
    extract_user_preferences,
)

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase
INTENT_CONTEXT_KEY = "intent_context"
PREFERENCES_KEY = "preferences"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_session_id() -> str:
    """`sess_<base36 ms timestamp>_<8 random base36 chars>`."""
    random_part = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"sess_{_to_base36(int(time.time() * 1000))}_{random_part}"


class SessionManager:
    def __init__(self, settings: Settings, clock: Callable = utcnow):
        self.settings = settings
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def timeout(self) -> timedelta:
        return timedelta(minutes=self.settings.session_timeout_minutes)

    @asynccontextmanager
    async def session_lock(self, business_id: UUID, session_id: str):
        """Hold the per-session lock; the lock is dropped once nobody holds or awaits it."""
        key = f"{business_id}:{session_id}"
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                self._locks.pop(key, None)

    def _find_active(self, db: Session, business_id: UUID, session_id: str) -> Optional[ConversationSession]:
        return (
            db.query(ConversationSession)
            .filter(
                ConversationSession.business_id == business_id,
                ConversationSession.session_id == session_id,
                ConversationSession.is_active.is_(True),
            )
            .order_by(ConversationSession.started_at.desc())
            .first()
        )

    def _create(self, db: Session, business_id: UUID, session_id: str, customer_id: Optional[str]) -> ConversationSession:
        now = self._clock()
        session = ConversationSession(
            business_id=business_id,
            session_id=session_id,
            customer_id=customer_id,
            started_at=now,
            last_activity_at=now,
            expires_at=now + self.timeout,
            is_active=True,
            metadata_={},
        )
        db.add(session)
        db.commit()
        db.refresh(session)
        logger.info("Created session business_id=%s session_id=%s", business_id, session_id)
        return session

    def _touch(self, session: ConversationSession) -> None:
        now = self._clock()
        session.last_activity_at = now
        session.expires_at = now + self.timeout

    def is_expired(self, session: ConversationSession) -> bool:
        return self._clock() >= as_utc(session.expires_at)

    async def get_or_create_session(
        self,
        db: Session,
        business_id: UUID,
        session_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> ConversationSession:
        """
        Return the active session for (business, session_id), bumping its activity,
        or create one. With no session_id a new id is generated.

        Raises:
            QueryError(SESSION_EXPIRED): the session expired and renewal is disabled.
        """
        if not session_id:
            session_id = generate_session_id()
            async with self.session_lock(business_id, session_id):
                return self._create(db, business_id, session_id, customer_id)

        async with self.session_lock(business_id, session_id):
            existing = self._find_active(db, business_id, session_id)
            if existing is not None and not self.is_expired(existing):
                self._touch(existing)
                if customer_id and not existing.customer_id:
                    existing.customer_id = customer_id
                db.commit()
                return existing

            if existing is not None:
                existing.is_active = False
                db.commit()
                logger.info("Session expired business_id=%s session_id=%s", business_id, session_id)
                if not self.settings.session_renew_on_expiry:
                    raise QueryError(SESSION_EXPIRED)
            elif not self.settings.session_renew_on_expiry and self._has_history(db, business_id, session_id):
                raise QueryError(SESSION_EXPIRED)

            return self._create(db, business_id, session_id, customer_id or (existing.customer_id if existing else None))

    @staticmethod
    def _has_history(db: Session, business_id: UUID, session_id: str) -> bool:
        return (
            db.query(ConversationSession.id)
            .filter(
                ConversationSession.business_id == business_id,
                ConversationSession.session_id == session_id,
            )
            .first()
            is not None
        )

    def get_conversation_context(self, db: Session, session: ConversationSession) -> ConversationContext:
        """Last `conversation_history_limit` messages plus derived memory and summary."""
        limit = self.settings.conversation_history_limit
        recent = (
            db.query(ConversationMessage)
            .filter(ConversationMessage.conversation_id == session.id)
            .order_by(ConversationMessage.sequence.desc())
            .limit(limit)
            .all()
        )
        history = [
            HistoryTurn(role=m.role, content=m.content, intent=m.intent, timestamp=m.created_at)
            for m in reversed(recent)
        ]
        turn_count = (
            db.query(func.count(ConversationMessage.id))
            .filter(ConversationMessage.conversation_id == session.id, ConversationMessage.role == "user")
            .scalar()
        ) or 0
        return ConversationContext(
            history=history,
            context_summary=session.context_summary or "",
            memory=extract_session_context(history),
            turn_count=turn_count,
        )

    async def append_turn(
        self,
        db: Session,
        session: ConversationSession,
        user_text: str,
        assistant_text: str,
        intent: Optional[str] = None,
    ) -> ConversationSession:
        """Append one user/assistant exchange and refresh summary, preferences and expiry."""
        async with self.session_lock(session.business_id, session.session_id):
            last_sequence = (
                db.query(func.max(ConversationMessage.sequence))
                .filter(ConversationMessage.conversation_id == session.id)
                .scalar()
            ) or 0
            db.add(ConversationMessage(
                conversation_id=session.id,
                business_id=session.business_id,
                role="user",
                content=user_text,
                intent=intent,
                sequence=last_sequence + 1,
            ))
            db.add(ConversationMessage(
                conversation_id=session.id,
                business_id=session.business_id,
                role="assistant",
                content=assistant_text,
                intent=intent,
                sequence=last_sequence + 2,
            ))
            db.flush()

            context = self.get_conversation_context(db, session)
            session.context_summary = build_context_summary(context.history)
            session.metadata_ = {
                **(session.metadata_ or {}),
                PREFERENCES_KEY: extract_user_preferences(context.history),
            }
            self._touch(session)
            db.commit()
            db.refresh(session)
            return session

    def end_session(self, db: Session, business_id: UUID, session_id: str) -> bool:
        """Deactivate the active session. Returns False if there was none."""
        session = self._find_active(db, business_id, session_id)
        if session is None:
            return False
        now = self._clock()
        session.is_active = False
        session.ended_at = now
        session.expires_at = now
        db.commit()
        logger.info("Ended session business_id=%s session_id=%s", business_id, session_id)
        return True

    def cleanup_expired_sessions(self, db: Session) -> int:
        """Deactivate every expired active session."""
        count = (
            db.query(ConversationSession)
            .filter(
                ConversationSession.is_active.is_(True),
                ConversationSession.expires_at < self._clock(),
            )
            .update({ConversationSession.is_active: False}, synchronize_session=False)
        )
        db.commit()
        if count:
            logger.info("Cleaned up %s expired conversation sessions", count)
        return count

    def count_active_sessions(self, db: Session, business_id: UUID) -> int:
        return (
            db.query(func.count(ConversationSession.id))
            .filter(
                ConversationSession.business_id == business_id,
                ConversationSession.is_active.is_(True),
                ConversationSession.expires_at > self._clock(),
            )
            .scalar()
        ) or 0

    def get_session_stats(self, db: Session, business_id: UUID) -> dict:
        now = self._clock()
        sessions = db.query(ConversationSession).filter(ConversationSession.business_id == business_id)
        total = sessions.count()
        active = self.count_active_sessions(db, business_id)
        expired = sessions.filter(
            ConversationSession.is_active.is_(False),
            ConversationSession.expires_at < now,
        ).count()

        recent = sessions.filter(ConversationSession.started_at >= now - timedelta(days=1)).all()
        if recent:
            durations = [
                (as_utc(s.last_activity_at) - as_utc(s.started_at)).total_seconds() / 60 for s in recent
            ]
            average_duration = sum(durations) / len(recent)
            average_messages = sum(len(s.messages) for s in recent) / len(recent)
        else:
            average_duration = 0.0
            average_messages = 0.0

        return {
            "totalSessions": total,
            "activeSessions": active,
            "expiredSessions": expired,
            "averageSessionDurationMinutes": average_duration,
            "averageMessagesPerSession": average_messages,
        }

    # --- Intent context (stored in the session metadata) ---

    @staticmethod
    def get_intent_context(session: ConversationSession) -> IntentContext:
        raw = (session.metadata_ or {}).get(INTENT_CONTEXT_KEY)
        if not raw:
            return IntentContext()
        return IntentContext.model_validate(raw)

    def update_intent_context(
        self,
        db: Session,
        session: ConversationSession,
        intent: str,
        intent_data: Optional[dict] = None,
    ) -> IntentContext:
        current = self.get_intent_context(session)
        updated = IntentContext(
            current_intent=intent,
            intent_data=intent_data if intent_data is not None else current.intent_data,
            last_intent_change=self._clock() if intent != current.current_intent else current.last_intent_change,
            conversation_step=current.conversation_step + 1,
        )
        session.metadata_ = {
            **(session.metadata_ or {}),
            INTENT_CONTEXT_KEY: updated.model_dump(mode="json"),
        }
        db.commit()
        return updated

    def clear_intent_context(self, db: Session, session: ConversationSession) -> None:
        session.metadata_ = {
            **(session.metadata_ or {}),
            INTENT_CONTEXT_KEY: IntentContext(last_intent_change=self._clock()).model_dump(mode="json"),
        }
        db.commit()
