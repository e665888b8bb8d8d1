"""
Explicitly constructed service instances for one application.

build_container() is called once at startup and the result stored on
app.state.container; routes receive it through the get_container dependency,
which tests override.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request

from app.core.config import Settings
from app.services.analytics_dispatcher import AnalyticsDispatcher
from app.services.analytics_logger import AnalyticsLogger
from app.services.context_retriever import ContextRetriever
from app.services.gemini_client import GeminiClient
from app.services.intent_detector import (
    IntentClassifier,
    build_query_intent_classifier,
)
from app.services.llm_service import LLMService
from app.services.prompt_builder import PromptBuilder
from app.services.query_processor import QueryProcessor
from app.services.rate_limiter import CompositeRateLimiter, RateLimiter
from app.services.response_processor import ResponseProcessor
from app.services.session_manager import SessionManager
from app.services.streaming_manager import StreamingManager
from app.services.usage_tracker import UsageTracker
from app.services.validation import QueryValidator
from app.services.vector_search import VectorSearch


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: Callable
    gemini: GeminiClient
    rate_limiter: CompositeRateLimiter
    intent_classifier: IntentClassifier
    session_manager: SessionManager
    context_retriever: ContextRetriever
    usage_tracker: UsageTracker
    llm_service: LLMService
    analytics_logger: AnalyticsLogger
    dispatcher: AnalyticsDispatcher
    query_processor: QueryProcessor


def build_container(
    settings: Settings,
    session_factory: Optional[Callable] = None,
    gemini: Optional[GeminiClient] = None,
) -> ServiceContainer:
    if session_factory is None:
        from app.db.session import SessionLocal

        session_factory = SessionLocal

    gemini = gemini or GeminiClient(settings)
    rate_limiter = CompositeRateLimiter([
        RateLimiter(settings.rate_limit_per_minute, 60, name="minute"),
        RateLimiter(settings.rate_limit_per_hour, 3600, name="hour"),
    ])
    intent_classifier = build_query_intent_classifier()
    session_manager = SessionManager(settings)
    context_retriever = ContextRetriever(gemini, VectorSearch(), settings)
    prompt_builder = PromptBuilder(context_window_tokens=settings.context_window_tokens)
    usage_tracker = UsageTracker(settings)
    llm_service = LLMService(gemini, usage_tracker, settings)
    response_processor = ResponseProcessor()
    streaming_manager = StreamingManager(llm_service, prompt_builder, response_processor)
    analytics_logger = AnalyticsLogger(settings)
    dispatcher = AnalyticsDispatcher(
        session_factory, analytics_logger, usage_tracker, max_attempts=settings.analytics_max_attempts
    )

    query_processor = QueryProcessor(
        settings=settings,
        validator=QueryValidator(settings.max_query_length),
        rate_limiter=rate_limiter,
        intent_classifier=intent_classifier,
        session_manager=session_manager,
        context_retriever=context_retriever,
        prompt_builder=prompt_builder,
        llm_service=llm_service,
        response_processor=response_processor,
        streaming_manager=streaming_manager,
        analytics_logger=analytics_logger,
        usage_tracker=usage_tracker,
        dispatcher=dispatcher,
    )

    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        gemini=gemini,
        rate_limiter=rate_limiter,
        intent_classifier=intent_classifier,
        session_manager=session_manager,
        context_retriever=context_retriever,
        usage_tracker=usage_tracker,
        llm_service=llm_service,
        analytics_logger=analytics_logger,
        dispatcher=dispatcher,
        query_processor=query_processor,
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
