"""Tests for context retrieval and bundle assembly."""

import asyncio

import httpx
import pytest

from app.core.config import settings
from app.services.context_retriever import ContextRetriever, business_facts
from app.services.gemini_client import LLMServiceError
from app.services.vector_search import VectorSearch
from tests.conftest import add_embedding, unit_vector, vector_with_similarity


def _retriever(gemini):
    return ContextRetriever(gemini, VectorSearch(), settings)


def test_bundle_contains_matches_and_business_facts(fake_gemini, seeded_db, pizza_palace, margherita):
    bundle = asyncio.run(
        _retriever(fake_gemini).get_context_bundle(seeded_db, pizza_palace, "What is your best pizza?")
    )

    assert bundle.retrieval_failed is False
    assert bundle.has_context
    assert [r.title for r in bundle.results] == ["Margherita Pizza"]
    assert bundle.average_confidence == bundle.results[0].confidence
    assert bundle.business_facts["name"] == "Pizza Palace"
    assert bundle.business_facts["phone"] == "(555) 123-4567"
    assert fake_gemini.embed_calls == ["What is your best pizza?"]


@pytest.mark.parametrize(
    "error",
    [LLMServiceError("embedding service down"), httpx.ConnectError("connection refused")],
)
def test_embedding_failure_yields_empty_bundle(fake_gemini, seeded_db, pizza_palace, margherita, error):
    fake_gemini.embed_error = error

    bundle = asyncio.run(_retriever(fake_gemini).get_context_bundle(seeded_db, pizza_palace, "pizza"))

    assert bundle.retrieval_failed is True
    assert bundle.results == []
    assert bundle.error.code == "RETRIEVAL_FAILED"
    assert bundle.business_facts["name"] == "Pizza Palace"


def test_retrieve_context_filters_one_content_type(fake_gemini, seeded_db, pizza_palace, margherita):
    add_embedding(seeded_db, pizza_palace, "POLICY", "delivery", "Free delivery over $25", unit_vector(0))

    policies = asyncio.run(
        _retriever(fake_gemini).retrieve_context(seeded_db, pizza_palace.id, "delivery", content_type="POLICY")
    )

    assert policies.success is True
    assert [r.content_id for r in policies.results] == ["delivery"]


def test_retrieve_all_context_merges_types_and_embeds_once(fake_gemini, seeded_db, pizza_palace):
    add_embedding(seeded_db, pizza_palace, "MENU_ITEM", "m", "Calzone", vector_with_similarity(0.8))
    add_embedding(seeded_db, pizza_palace, "POLICY", "p", "No refunds on pickup", vector_with_similarity(0.9))
    add_embedding(seeded_db, pizza_palace, "FAQ", "f", "We cater events", vector_with_similarity(0.85))

    response = asyncio.run(
        _retriever(fake_gemini).retrieve_all_context(seeded_db, pizza_palace.id, "catering", limit=2)
    )

    assert response.success is True
    # FAQ boost lifts 0.85 to 0.90, tying the policy; both beat the menu item
    assert {r.content_id for r in response.results} == {"p", "f"}
    assert response.total_results == 2
    assert len(fake_gemini.embed_calls) == 1


def test_business_facts_join_location(pizza_palace):
    facts = business_facts(pizza_palace)

    assert facts["address"].startswith("123 Main St")
    assert facts["hours"] == "Mon-Sun 11am-10pm"
    assert isinstance(facts["policies"], list)
