"""Tests for the chunk / complete / error event stream."""

import asyncio

import pytest

from app.core.config import settings
from app.schemas.pipeline import ContextBundle
from app.services.llm_service import LLMService
from app.services.prompt_builder import PromptBuilder
from app.services.response_processor import ResponseProcessor
from app.services.streaming_manager import EMPTY_STREAM_MESSAGE, StreamingManager
from app.services.usage_tracker import UsageTracker


def _manager(gemini, prompt_builder=None):
    return StreamingManager(
        LLMService(gemini, UsageTracker(settings), settings),
        prompt_builder or PromptBuilder(),
        ResponseProcessor(),
    )


@pytest.fixture
def context(pizza_palace):
    return ContextBundle(business_facts={"name": pizza_palace.name})


@pytest.fixture
def prompt(pizza_palace, context):
    return PromptBuilder().build_prompt(pizza_palace, context, [], "Do you deliver?")


def _events(manager, db, business, prompt, context):
    async def collect():
        return [e async for e in manager.stream(db, business, prompt, context, "sess_stream_001", "HOURS_POLICY")]
    return asyncio.run(collect())


def _assert_single_terminal_last(events):
    terminal = [e for e in events if e.is_terminal]
    assert len(terminal) == 1
    assert events[-1] is terminal[0]


def test_successful_stream_ends_with_complete(fake_gemini, seeded_db, pizza_palace, prompt, context):
    manager = _manager(fake_gemini)

    events = _events(manager, seeded_db, pizza_palace, prompt, context)

    _assert_single_terminal_last(events)
    assert [e.type for e in events] == ["chunk", "chunk", "chunk", "complete"]
    assert [e.data["chunk"] for e in events[:-1]] == fake_gemini.stream_chunks
    complete = events[-1].data
    assert complete["response"]["text"] == "Thanks for asking! We are happy to help with that."
    assert complete["response"]["confidence"] == pytest.approx(0.7)
    assert complete["tokensUsed"] == 150
    assert complete["finishReason"] == "STOP"
    assert manager.get_stats() == {"activeStreams": 0, "completedStreams": 1, "failedStreams": 0}


def test_llm_failure_mid_stream_ends_with_error(failing_gemini, seeded_db, pizza_palace, prompt, context):
    manager = _manager(failing_gemini)

    events = _events(manager, seeded_db, pizza_palace, prompt, context)

    _assert_single_terminal_last(events)
    assert [e.type for e in events] == ["chunk", "error"]
    assert events[-1].data["error"] == "The AI service is temporarily unavailable"
    assert events[-1].data["sessionId"] == "sess_stream_001"
    assert manager.get_stats()["failedStreams"] == 1
    assert failing_gemini.stream_closed is True


def test_empty_stream_ends_with_error(fake_gemini, seeded_db, pizza_palace, prompt, context):
    fake_gemini.stream_chunks = []

    events = _events(_manager(fake_gemini), seeded_db, pizza_palace, prompt, context)

    _assert_single_terminal_last(events)
    assert [e.type for e in events] == ["error"]
    assert events[0].data["error"] == EMPTY_STREAM_MESSAGE


def test_invalid_prompt_ends_with_error_without_calling_provider(fake_gemini, seeded_db, pizza_palace, prompt, context):
    manager = _manager(fake_gemini, PromptBuilder(context_window_tokens=1))

    events = _events(manager, seeded_db, pizza_palace, prompt, context)

    _assert_single_terminal_last(events)
    assert events[0].type == "error"
    assert events[0].data["error"].startswith("Invalid prompt: Prompt too long")
    assert fake_gemini.stream_calls == []


def test_closing_early_closes_upstream(fake_gemini, seeded_db, pizza_palace, prompt, context):
    manager = _manager(fake_gemini)

    async def first_then_close():
        events = manager.stream(seeded_db, pizza_palace, prompt, context, "sess_stream_002")
        first = await events.__anext__()
        await events.aclose()
        return first

    first = asyncio.run(first_then_close())

    assert first.type == "chunk"
    assert fake_gemini.stream_closed is True
    assert manager.get_stats()["activeStreams"] == 0
