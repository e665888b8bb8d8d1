"""Tests for quota-enforced LLM generation."""

import asyncio
from datetime import datetime, timezone

import pytest

from app.core.config import settings
from app.models.usage import UsageCounter
from app.services.gemini_client import LLMServiceError
from app.services.llm_service import FALLBACK_RESPONSE, LLMService, QuotaExceededError
from app.services.prompt_builder import PromptBuilder
from app.services.usage_tracker import UsageTracker
from app.schemas.pipeline import ContextBundle


@pytest.fixture
def service(fake_gemini):
    return LLMService(fake_gemini, UsageTracker(settings), settings)


@pytest.fixture
def prompt(pizza_palace):
    return PromptBuilder().build_prompt(
        pizza_palace, ContextBundle(business_facts={"name": pizza_palace.name}), [], "Do you deliver?"
    )


def _exhaust_tokens(db, business):
    db.add(UsageCounter(
        business_id=business.id,
        quota_type="tokens",
        current_usage=100,
        quota_limit=100,
        overage=0,
        reset_date=datetime(2030, 1, 1, tzinfo=timezone.utc),
    ))
    db.commit()


def test_generate_response_reports_tokens_and_cost(service, fake_gemini, seeded_db, pizza_palace, prompt):
    response = asyncio.run(service.generate_response(seeded_db, pizza_palace.id, prompt))

    assert response.text == fake_gemini.reply
    assert response.prompt_tokens == 120
    assert response.completion_tokens == 30
    assert response.tokens_used == 150
    assert response.cost == pytest.approx(120 / 1000 * 0.0003 + 30 / 1000 * 0.0025)
    assert response.model == "gemini-test"
    assert response.finish_reason == "STOP"

    contents, system_instruction = fake_gemini.generate_calls[0]
    assert 'Current Customer Query: "Do you deliver?"' in contents
    assert "Pizza Palace" in system_instruction


def test_generate_response_reports_truncation(service, fake_gemini, seeded_db, pizza_palace, prompt):
    fake_gemini.finish_reason = "MAX_TOKENS"

    response = asyncio.run(service.generate_response(seeded_db, pizza_palace.id, prompt))

    assert response.finish_reason == "MAX_TOKENS"


def test_exhausted_quota_raises_without_calling_provider(service, fake_gemini, seeded_db, pizza_palace, prompt):
    _exhaust_tokens(seeded_db, pizza_palace)

    with pytest.raises(QuotaExceededError) as exc_info:
        asyncio.run(service.generate_response(seeded_db, pizza_palace.id, prompt))

    assert isinstance(exc_info.value, LLMServiceError)
    assert "Resets on 2030-01-01" in str(exc_info.value)
    assert fake_gemini.generate_calls == []


def test_empty_provider_answer_is_an_error(service, fake_gemini, seeded_db, pizza_palace, prompt):
    fake_gemini.reply = "   "

    with pytest.raises(LLMServiceError):
        asyncio.run(service.generate_response(seeded_db, pizza_palace.id, prompt))


def test_business_quota_defaults_to_monthly_limit(service, seeded_db, pizza_palace):
    quota = service.get_business_quota(seeded_db, pizza_palace.id)

    assert quota.monthly_limit == settings.monthly_token_limit
    assert quota.current_usage == 0
    assert quota.remaining_quota == settings.monthly_token_limit
    assert quota.reset_date > datetime.now(timezone.utc)


def test_calculate_cost(service):
    assert service.calculate_cost(1000, 1000) == pytest.approx(0.0028)
    assert service.calculate_cost(0, 0) == 0


async def _collect(agen):
    return [chunk async for chunk in agen]


def test_streaming_yields_chunks_then_one_completed_chunk(service, fake_gemini, seeded_db, pizza_palace, prompt):
    chunks = asyncio.run(_collect(
        service.generate_streaming_response(seeded_db, pizza_palace.id, prompt, "sess_stream_001")
    ))

    assert [c.chunk for c in chunks[:-1]] == fake_gemini.stream_chunks
    assert all(not c.completed for c in chunks[:-1])
    final = chunks[-1]
    assert final.completed is True
    assert final.chunk == ""
    assert final.tokens_used == 150
    assert final.finish_reason == "STOP"
    assert all(c.session_id == "sess_stream_001" for c in chunks)
    assert fake_gemini.stream_closed is True


def test_streaming_estimates_tokens_without_provider_usage(service, fake_gemini, seeded_db, pizza_palace, prompt):
    fake_gemini.prompt_tokens = 0
    fake_gemini.completion_tokens = 0

    chunks = asyncio.run(_collect(
        service.generate_streaming_response(seeded_db, pizza_palace.id, prompt, "sess_stream_002")
    ))

    streamed = "".join(fake_gemini.stream_chunks)
    assert chunks[-1].tokens_used == -(-len(streamed) // 4)


def test_closing_stream_early_closes_upstream(service, fake_gemini, seeded_db, pizza_palace, prompt):
    async def first_then_close():
        agen = service.generate_streaming_response(seeded_db, pizza_palace.id, prompt, "sess_stream_003")
        first = await agen.__anext__()
        await agen.aclose()
        return first

    first = asyncio.run(first_then_close())

    assert first.chunk == fake_gemini.stream_chunks[0]
    assert fake_gemini.stream_closed is True


def test_streaming_quota_check_happens_before_provider(service, fake_gemini, seeded_db, pizza_palace, prompt):
    _exhaust_tokens(seeded_db, pizza_palace)

    with pytest.raises(QuotaExceededError):
        asyncio.run(_collect(
            service.generate_streaming_response(seeded_db, pizza_palace.id, prompt, "sess_stream_004")
        ))
    assert fake_gemini.stream_calls == []


def test_fallback_response_text(service):
    assert service.generate_fallback_response() == FALLBACK_RESPONSE
    assert FALLBACK_RESPONSE
