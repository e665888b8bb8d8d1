"""Tests for the query pipeline orchestrator."""

import asyncio
import uuid

import httpx
import pytest

from app.core.config import settings
from app.core.errors import (
    BUSINESS_NOT_FOUND,
    INVALID_INPUT,
    PROCESSING_TIMEOUT,
    RATE_LIMIT_EXCEEDED,
    QueryError,
)
from app.models.business import BUSINESS_STATUS_SUSPENDED
from app.schemas.query import QueryRequest
from app.services.analytics_dispatcher import AnalyticsOutbox
from app.services.llm_service import FALLBACK_RESPONSE
from app.services.prompt_builder import PromptBuilder
from app.services.query_processor import QueryCaller
from app.services.rate_limiter import CompositeRateLimiter, RateLimiter
from app.services.validation import EMPTY_QUERY_MESSAGE

BEST_PIZZA_REPLY = "Our best pizza is the Margherita Pizza, with fresh mozzarella, tomato sauce and basil."


@pytest.fixture
def processor(container):
    return container.query_processor


@pytest.fixture
def caller(pizza_palace):
    return QueryCaller(business_id=pizza_palace.id, rate_limit_key="key:test", user_agent="pytest", ip_address="127.0.0.1")


def _process(processor, db, caller, outbox=None, **body):
    outbox = outbox if outbox is not None else AnalyticsOutbox()
    return asyncio.run(processor.process_query(db, caller, QueryRequest(**body), outbox))


def _logs(outbox):
    return [e.payload for e in outbox.drain() if e.kind == "query_log"]


def test_best_pizza_answer_is_grounded_in_menu(processor, fake_gemini, seeded_db, caller, margherita):
    fake_gemini.reply = BEST_PIZZA_REPLY
    outbox = AnalyticsOutbox()

    result = _process(processor, seeded_db, caller, outbox, query="What is your best pizza?")

    assert "Margherita Pizza" in result.response.text
    assert result.response.intent == "MENU_INQUIRY"
    assert result.response.confidence > 0.8
    assert result.response.confidence == pytest.approx(0.94, abs=1e-6)
    assert len(result.response.sources) == 1
    assert result.response.sources[0].title == "Margherita Pizza"
    assert result.metadata.model_used == "gemini-test"
    assert result.metadata.context_items_used == 1
    assert result.usage.tokens_used == 150
    assert result.session.turn_count == 1
    assert result.session.session_id.startswith("sess_")

    events = outbox.drain()
    assert [e.kind for e in events] == ["query_log", "usage_event", "usage_event"]
    log = events[0].payload
    assert log.status == "SUCCESS"
    assert log.intent_detected == "MENU_INQUIRY"
    assert log.user_agent == "pytest"
    assert log.context_retrieved[0]["title"] == "Margherita Pizza"


def test_llm_failure_returns_fallback(processor, failing_gemini, seeded_db, caller, margherita):
    outbox = AnalyticsOutbox()

    result = _process(processor, seeded_db, caller, outbox, query="What is your best pizza?")

    assert result.metadata.model_used == "fallback"
    assert result.response.text == FALLBACK_RESPONSE
    assert result.response.confidence == 0.3
    assert result.response.sources == []
    assert result.usage.tokens_used == 0
    log = _logs(outbox)[0]
    assert log.status == "ERROR"
    assert log.model_used == "fallback"
    assert log.error_message == "The AI service is temporarily unavailable"


def test_invalid_prompt_returns_fallback(processor, fake_gemini, seeded_db, caller):
    processor.prompt_builder = PromptBuilder(context_window_tokens=1)

    result = _process(processor, seeded_db, caller, query="Do you deliver?")

    assert result.metadata.model_used == "fallback"
    assert fake_gemini.generate_calls == []


def test_empty_query_is_rejected_before_any_ai_call(processor, fake_gemini, seeded_db, caller):
    with pytest.raises(QueryError) as exc_info:
        _process(processor, seeded_db, caller, query="   ")

    assert exc_info.value.code == INVALID_INPUT
    assert exc_info.value.message == EMPTY_QUERY_MESSAGE
    assert exc_info.value.details == [EMPTY_QUERY_MESSAGE]
    assert fake_gemini.generate_calls == []
    assert fake_gemini.embed_calls == []


def test_invalid_session_id_is_rejected(processor, seeded_db, caller):
    with pytest.raises(QueryError) as exc_info:
        _process(processor, seeded_db, caller, query="Do you deliver?", session_id="bad id")

    assert exc_info.value.code == INVALID_INPUT
    assert "Invalid session ID format" in exc_info.value.details


def test_rate_limited_query_is_logged(processor, fake_gemini, seeded_db, caller):
    processor.rate_limiter = CompositeRateLimiter([RateLimiter(1, 60)])
    _process(processor, seeded_db, caller, query="Do you deliver?")
    outbox = AnalyticsOutbox()

    with pytest.raises(QueryError) as exc_info:
        _process(processor, seeded_db, caller, outbox, query="Do you deliver?")

    assert exc_info.value.code == RATE_LIMIT_EXCEEDED
    assert 0 < exc_info.value.retry_after <= 60
    assert [log.status for log in _logs(outbox)] == ["RATE_LIMITED"]
    assert len(fake_gemini.generate_calls) == 1
    assert processor.get_processor_stats(seeded_db, caller.business_id)["rateLimited"] == 1


def test_unknown_or_suspended_business(processor, seeded_db, caller, pizza_palace):
    with pytest.raises(QueryError) as exc_info:
        _process(processor, seeded_db, caller._replace(business_id=uuid.uuid4()), query="Do you deliver?")
    assert exc_info.value.code == BUSINESS_NOT_FOUND

    pizza_palace.status = BUSINESS_STATUS_SUSPENDED
    seeded_db.commit()
    with pytest.raises(QueryError) as exc_info:
        _process(processor, seeded_db, caller, query="Do you deliver?")
    assert exc_info.value.code == BUSINESS_NOT_FOUND


def test_slow_pipeline_times_out(processor, fake_gemini, seeded_db, caller):
    async def slow_embed(text, dimensions):
        await asyncio.sleep(1)
        return list(fake_gemini.query_vector)

    fake_gemini.embed = slow_embed
    processor.settings = settings.model_copy(update={"query_timeout_ms": 20})
    outbox = AnalyticsOutbox()

    with pytest.raises(QueryError) as exc_info:
        _process(processor, seeded_db, caller, outbox, query="Do you deliver?")

    assert exc_info.value.code == PROCESSING_TIMEOUT
    assert exc_info.value.status_code == 504
    assert [log.status for log in _logs(outbox)] == ["TIMEOUT"]
    assert fake_gemini.generate_calls == []


def test_follow_up_resolves_pronoun_from_history(processor, fake_gemini, seeded_db, caller):
    first = _process(processor, seeded_db, caller, query="Do you have pizza?")
    session_id = first.session.session_id

    second = _process(processor, seeded_db, caller, query="Is it vegan?", session_id=session_id)

    assert second.session.session_id == session_id
    assert second.session.turn_count == 2
    assert second.metadata.is_follow_up is True
    assert second.metadata.resolved_query == "Is pizza vegan?"
    assert fake_gemini.embed_calls[-1] == "Is pizza vegan?"
    contents, system_instruction = fake_gemini.generate_calls[-1]
    assert "Do you have pizza?" in system_instruction
    assert "Customer interested in:" in second.session.context_summary


def test_first_query_is_not_a_follow_up(processor, seeded_db, caller):
    result = _process(processor, seeded_db, caller, query="Is it vegan?")

    assert result.metadata.is_follow_up is False
    assert result.metadata.resolved_query is None


def test_processor_stats(processor, failing_gemini, seeded_db, caller):
    _process(processor, seeded_db, caller, query="Do you deliver?")

    stats = processor.get_processor_stats(seeded_db, caller.business_id)

    assert stats["totalQueries"] == 1
    assert stats["failedQueries"] == 1
    assert stats["fallbackResponses"] == 1
    assert stats["activeSessions"] == 1
    assert "minute" in stats["rateLimiter"]
    assert stats["streaming"]["activeStreams"] == 0


def _stream_frames(processor, db, caller, outbox, **body):
    async def run():
        prepared = await processor.prepare_streaming_query(db, caller, QueryRequest(**body), outbox)
        return [frame async for frame in processor.stream_query(db, prepared, outbox)]
    return asyncio.run(run())


def test_stream_query_frames(processor, fake_gemini, seeded_db, caller, margherita):
    outbox = AnalyticsOutbox()

    frames = _stream_frames(processor, seeded_db, caller, outbox, query="What is your best pizza?")

    assert [f["type"] for f in frames] == ["start", "chunk", "chunk", "chunk", "end"]
    assert frames[0]["data"]["intent"] == "MENU_INQUIRY"
    end = frames[-1]["data"]
    assert end["text"] == "Thanks for asking! We are happy to help with that."
    assert end["tokensUsed"] == 150
    assert end["sources"][0]["title"] == "Margherita Pizza"
    assert [log.status for log in _logs(outbox)] == ["SUCCESS"]


def test_stream_query_failure_ends_with_fallback_error_frame(processor, failing_gemini, seeded_db, caller):
    outbox = AnalyticsOutbox()

    frames = _stream_frames(processor, seeded_db, caller, outbox, query="Do you deliver?")

    assert [f["type"] for f in frames] == ["start", "chunk", "error"]
    assert frames[-1]["data"]["text"] == FALLBACK_RESPONSE
    logs = _logs(outbox)
    assert [log.status for log in logs] == ["ERROR"]
    assert logs[0].model_used == "fallback"


def test_transport_failure_during_generation_returns_fallback(processor, fake_gemini, seeded_db, caller):
    fake_gemini.generate_error = httpx.ConnectError("connection refused")
    outbox = AnalyticsOutbox()

    result = _process(processor, seeded_db, caller, outbox, query="Do you deliver?")

    assert result.metadata.model_used == "fallback"
    assert result.response.text == FALLBACK_RESPONSE
    log = _logs(outbox)[0]
    assert log.status == "ERROR"
    assert log.error_message == "The AI service is temporarily unavailable"


def test_embedding_outage_answers_without_context(processor, fake_gemini, seeded_db, caller, margherita):
    fake_gemini.embed_error = httpx.ConnectError("connection refused")
    outbox = AnalyticsOutbox()

    result = _process(processor, seeded_db, caller, outbox, query="What is your best pizza?")

    assert result.metadata.model_used == "gemini-test"
    assert result.metadata.context_items_used == 0
    assert result.response.sources == []
    assert len(fake_gemini.generate_calls) == 1
    assert [log.status for log in _logs(outbox)] == ["SUCCESS"]


def test_stream_closed_by_client_is_still_logged_and_billed(processor, fake_gemini, seeded_db, caller):
    outbox = AnalyticsOutbox()

    async def run():
        prepared = await processor.prepare_streaming_query(
            seeded_db, caller, QueryRequest(query="Do you deliver?"), outbox
        )
        stream = processor.stream_query(seeded_db, prepared, outbox)
        frames = [await stream.__anext__(), await stream.__anext__()]
        await stream.aclose()
        return frames

    frames = asyncio.run(run())

    assert [f["type"] for f in frames] == ["start", "chunk"]
    assert fake_gemini.stream_closed is True
    events = outbox.drain()
    assert [e.kind for e in events] == ["query_log", "usage_event", "usage_event"]
    log = events[0].payload
    assert log.status == "ERROR"
    assert log.error_message == "Client disconnected"
    assert log.response_generated == "Thanks for asking! "
    assert log.token_usage == 5
    assert [e.payload.event_type for e in events[1:]] == ["query", "tokens"]
    assert events[2].payload.quantity == 5
    stats = processor.get_processor_stats(seeded_db, caller.business_id)
    assert stats["totalQueries"] == 1
    assert stats["failedQueries"] == 1
