"""
Embeds business content and keeps the embeddings table in step with it.

Rows are matched on (business, content type, content id). Unchanged content
is not re-embedded; rows whose item disappeared are soft-deleted.
"""

import logging
from typing import Iterable

from sqlalchemy.orm import Session

from app.core.timeutil import utcnow
from app.models.business import Business
from app.models.embedding import CONTENT_TYPE_BUSINESS_INFO, CONTENT_TYPES, EMBEDDING_DIMENSIONS, Embedding
from app.schemas.analytics import UsageEvent
from app.schemas.pipeline import ContentItem, IndexSummary
from app.services.context_retriever import business_facts
from app.services.gemini_client import GeminiClient, LLMServiceError
from app.services.usage_tracker import UsageTracker

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 8000


def business_info_item(business: Business) -> ContentItem:
    """A BUSINESS_INFO item summarising the business's own record."""
    facts = business_facts(business)
    lines = [f"{business.name}: {business.description or ''}".strip()]
    for label, key in (("Phone", "phone"), ("Email", "email"), ("Website", "website"), ("Address", "address"), ("Hours", "hours")):
        if facts.get(key):
            lines.append(f"{label}: {facts[key]}")
    return ContentItem(
        content_type=CONTENT_TYPE_BUSINESS_INFO,
        content_id=str(business.id),
        content="\n".join(lines),
        title=business.name,
    )


async def index_business_content(
    db: Session,
    gemini: GeminiClient,
    usage_tracker: UsageTracker,
    outbox,
    business: Business,
    items: Iterable[ContentItem],
) -> IndexSummary:
    """
    Embed and upsert `items` for `business`; soft-delete embeddings for items
    no longer present. Embedding failures are counted, not raised.
    """
    summary = IndexSummary()
    now = utcnow()
    existing = {
        (row.content_type, row.content_id): row
        for row in db.query(Embedding)
        .filter(Embedding.business_id == business.id, Embedding.deleted_at.is_(None))
        .all()
    }
    seen: set[tuple[str, str]] = set()

    for item in items:
        if item.content_type not in CONTENT_TYPES:
            logger.warning("Skipping content with unknown type %s for business_id=%s", item.content_type, business.id)
            summary.failed += 1
            continue

        key = (item.content_type, item.content_id)
        seen.add(key)
        content = item.content.strip()[:MAX_CONTENT_LENGTH]
        metadata = {**(item.metadata or {}), **({"title": item.title} if item.title else {})}
        row = existing.get(key)
        if row is not None and row.content == content and (row.metadata_ or {}) == metadata:
            summary.unchanged += 1
            continue

        try:
            vector = await gemini.embed(content, EMBEDDING_DIMENSIONS)
        except LLMServiceError as e:
            logger.warning("Embedding failed business_id=%s content=%s/%s: %s", business.id, *key, e)
            summary.failed += 1
            continue

        if row is None:
            db.add(Embedding(
                business_id=business.id,
                content_type=item.content_type,
                content_id=item.content_id,
                content=content,
                embedding=vector,
                metadata_=metadata,
            ))
            summary.indexed += 1
        else:
            row.content = content
            row.embedding = vector
            row.metadata_ = metadata
            summary.updated += 1

        usage_tracker.record_usage_event(
            db,
            UsageEvent(business_id=business.id, event_type="embedding", quantity=1, timestamp=now),
            outbox,
        )

    for key, row in existing.items():
        if key not in seen:
            row.deleted_at = now
            summary.removed += 1

    db.commit()
    logger.info(
        "Indexed content business_id=%s new=%s updated=%s unchanged=%s removed=%s failed=%s",
        business.id,
        summary.indexed,
        summary.updated,
        summary.unchanged,
        summary.removed,
        summary.failed,
    )
    return summary
