"""Tests for embedding business content into the vector store."""

import asyncio

import pytest

from app.core.config import settings
from app.models.embedding import Embedding
from app.schemas.pipeline import ContentItem
from app.seed.seed_data import PIZZA_PALACE_CONTENT
from app.services.analytics_dispatcher import AnalyticsOutbox
from app.services.content_indexer import business_info_item, index_business_content
from app.services.gemini_client import LLMServiceError
from app.services.usage_tracker import UsageTracker


@pytest.fixture
def tracker():
    return UsageTracker(settings)


def _index(db, gemini, tracker, business, items, outbox=None):
    outbox = outbox if outbox is not None else AnalyticsOutbox()
    return asyncio.run(index_business_content(db, gemini, tracker, outbox, business, items))


def _live(db, business):
    return (
        db.query(Embedding)
        .filter(Embedding.business_id == business.id, Embedding.deleted_at.is_(None))
        .order_by(Embedding.content_id)
        .all()
    )


def test_new_content_is_embedded_and_counted(fake_gemini, tracker, seeded_db, pizza_palace):
    outbox = AnalyticsOutbox()

    summary = _index(seeded_db, fake_gemini, tracker, pizza_palace, PIZZA_PALACE_CONTENT, outbox)

    assert summary.indexed == len(PIZZA_PALACE_CONTENT)
    assert summary.failed == 0
    assert len(fake_gemini.embed_calls) == len(PIZZA_PALACE_CONTENT)
    rows = {row.content_id: row for row in _live(seeded_db, pizza_palace)}
    assert rows["margherita"].metadata_["title"] == "Margherita Pizza"
    assert rows["margherita"].metadata_["price"] == 14.99
    assert [e.payload.event_type for e in outbox.drain()] == ["embedding"] * len(PIZZA_PALACE_CONTENT)


def test_unchanged_content_is_not_re_embedded(fake_gemini, tracker, seeded_db, pizza_palace):
    _index(seeded_db, fake_gemini, tracker, pizza_palace, PIZZA_PALACE_CONTENT)
    fake_gemini.embed_calls.clear()

    summary = _index(seeded_db, fake_gemini, tracker, pizza_palace, PIZZA_PALACE_CONTENT)

    assert summary.unchanged == len(PIZZA_PALACE_CONTENT)
    assert summary.indexed == 0
    assert fake_gemini.embed_calls == []


def test_changed_content_is_updated_in_place(fake_gemini, tracker, seeded_db, pizza_palace):
    _index(seeded_db, fake_gemini, tracker, pizza_palace, PIZZA_PALACE_CONTENT)
    changed = [
        item.model_copy(update={"content": "Margherita Pizza - now with buffalo mozzarella. $15.99"})
        if item.content_id == "margherita" else item
        for item in PIZZA_PALACE_CONTENT
    ]

    summary = _index(seeded_db, fake_gemini, tracker, pizza_palace, changed)

    assert summary.updated == 1
    assert summary.unchanged == len(PIZZA_PALACE_CONTENT) - 1
    rows = {row.content_id: row for row in _live(seeded_db, pizza_palace)}
    assert "buffalo" in rows["margherita"].content
    assert len(rows) == len(PIZZA_PALACE_CONTENT)


def test_missing_items_are_soft_deleted(fake_gemini, tracker, seeded_db, pizza_palace):
    _index(seeded_db, fake_gemini, tracker, pizza_palace, PIZZA_PALACE_CONTENT)
    remaining = [item for item in PIZZA_PALACE_CONTENT if item.content_id != "pepperoni"]

    summary = _index(seeded_db, fake_gemini, tracker, pizza_palace, remaining)

    assert summary.removed == 1
    assert "pepperoni" not in {row.content_id for row in _live(seeded_db, pizza_palace)}
    deleted = seeded_db.query(Embedding).filter(Embedding.content_id == "pepperoni").one()
    assert deleted.deleted_at is not None


def test_unknown_content_type_is_counted_as_failed(fake_gemini, tracker, seeded_db, pizza_palace):
    item = ContentItem(content_type="COUPON", content_id="c1", content="10% off")

    summary = _index(seeded_db, fake_gemini, tracker, pizza_palace, [item])

    assert summary.failed == 1
    assert fake_gemini.embed_calls == []
    assert _live(seeded_db, pizza_palace) == []


def test_embedding_failure_is_counted_not_raised(fake_gemini, tracker, seeded_db, pizza_palace):
    fake_gemini.embed_error = LLMServiceError("The AI service is temporarily unavailable")

    summary = _index(seeded_db, fake_gemini, tracker, pizza_palace, PIZZA_PALACE_CONTENT[:2])

    assert summary.failed == 2
    assert summary.indexed == 0
    assert _live(seeded_db, pizza_palace) == []


def test_business_info_item(pizza_palace):
    item = business_info_item(pizza_palace)

    assert item.content_type == "BUSINESS_INFO"
    assert item.content_id == str(pizza_palace.id)
    assert item.title == "Pizza Palace"
    assert item.content.startswith("Pizza Palace: Family-owned pizzeria")
    assert "Phone: (555) 123-4567" in item.content
