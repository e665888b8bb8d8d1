"""
Query pipeline orchestrator.

validate -> rate limit -> business -> session -> intent -> context -> prompt
-> LLM (fallback on failure) -> response processing -> history append, then
audit and usage events are published to the request's outbox. Everything
after the rate limit check runs under the query timeout.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, NamedTuple, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import Settings
from app.core.errors import (
    BUSINESS_NOT_FOUND,
    INVALID_INPUT,
    PROCESSING_TIMEOUT,
    RATE_LIMIT_EXCEEDED,
    QueryError,
)
from app.core.timeutil import as_utc, utcnow
from app.models.business import Business
from app.models.conversation import ConversationSession
from app.models.query_log import (
    QUERY_STATUS_ERROR,
    QUERY_STATUS_RATE_LIMITED,
    QUERY_STATUS_SUCCESS,
    QUERY_STATUS_TIMEOUT,
)
from app.schemas.analytics import QueryLogEntry, UsageEvent
from app.schemas.pipeline import (
    BusinessInformation,
    ContextBundle,
    ContextResult,
    ConversationContext,
    IntentResult,
    ProcessedResponse,
    PromptTemplate,
    ResponseValidation,
)
from app.schemas.query import (
    QueryMetadata,
    QueryRequest,
    QueryResponseBody,
    QueryResult,
    QuerySource,
    SessionInfo,
    UsageInfo,
    ValidationInfo,
)
from app.services.analytics_dispatcher import AnalyticsDispatcher, AnalyticsOutbox
from app.services.analytics_logger import AnalyticsLogger
from app.services.context_retriever import ContextRetriever
from app.services.conversation_memory import (
    build_session_context_prompt,
    is_follow_up_question,
    resolve_question_context,
)
from app.services.gemini_client import PROVIDER_ERROR_MESSAGE, LLMServiceError
from app.services.intent_detector import IntentClassifier
from app.services.llm_service import FALLBACK_CONFIDENCE, FALLBACK_MODEL, LLMService
from app.services.prompt_builder import PromptBuilder
from app.services.rate_limiter import CompositeRateLimiter
from app.services.response_processor import ResponseProcessor
from app.services.session_manager import SessionManager
from app.services.streaming_manager import StreamingManager
from app.services.usage_tracker import UsageTracker
from app.services.validation import QueryValidator

logger = logging.getLogger(__name__)

CLIENT_DISCONNECTED_MESSAGE = "Client disconnected"


class QueryCaller(NamedTuple):
    """Who is asking: the resolved tenant plus request details for rate limiting and audit."""

    business_id: UUID
    rate_limit_key: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class PreparedQuery:
    """Everything resolved before generation; shared by the JSON and streaming paths."""

    caller: QueryCaller
    business: Business
    session: ConversationSession
    query: str
    intent: IntentResult
    conversation: ConversationContext
    context: ContextBundle
    prompt: PromptTemplate
    is_follow_up: bool
    resolved_query: str
    started: float = field(default_factory=time.perf_counter)

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


def _new_stats() -> dict:
    return {
        "totalQueries": 0,
        "successfulQueries": 0,
        "failedQueries": 0,
        "fallbackResponses": 0,
        "timeouts": 0,
        "rateLimited": 0,
        "totalProcessingTimeMs": 0,
    }


def to_query_source(result: ContextResult) -> QuerySource:
    return QuerySource(
        id=result.id,
        content_type=result.content_type,
        content_id=result.content_id,
        title=result.title,
        snippet=result.text_snippet,
        similarity=result.similarity,
        confidence=result.confidence,
    )


class QueryProcessor:
    def __init__(
        self,
        settings: Settings,
        validator: QueryValidator,
        rate_limiter: CompositeRateLimiter,
        intent_classifier: IntentClassifier,
        session_manager: SessionManager,
        context_retriever: ContextRetriever,
        prompt_builder: PromptBuilder,
        llm_service: LLMService,
        response_processor: ResponseProcessor,
        streaming_manager: StreamingManager,
        analytics_logger: AnalyticsLogger,
        usage_tracker: UsageTracker,
        dispatcher: AnalyticsDispatcher,
    ):
        self.settings = settings
        self.validator = validator
        self.rate_limiter = rate_limiter
        self.intent_classifier = intent_classifier
        self.session_manager = session_manager
        self.context_retriever = context_retriever
        self.prompt_builder = prompt_builder
        self.llm_service = llm_service
        self.response_processor = response_processor
        self.streaming_manager = streaming_manager
        self.analytics_logger = analytics_logger
        self.usage_tracker = usage_tracker
        self.dispatcher = dispatcher
        self._stats: dict[str, dict] = {}

    @property
    def timeout_seconds(self) -> float:
        return self.settings.query_timeout_ms / 1000

    def _bump(self, business_id: UUID, key: str, amount: int = 1) -> None:
        stats = self._stats.setdefault(str(business_id), _new_stats())
        stats[key] += amount

    # --- Pre-flight ---

    def _validate(self, request: QueryRequest) -> str:
        validation = self.validator.validate_query(request.query)
        errors = list(validation.errors)
        if request.session_id is not None and not self.validator.validate_session_id(request.session_id):
            errors.append("Invalid session ID format")
        if request.customer_id is not None and not self.validator.validate_customer_id(request.customer_id):
            errors.append("Invalid customer ID format")
        errors.extend(self.validator.validate_query_context(request.context))
        if errors:
            raise QueryError(INVALID_INPUT, errors[0], details=errors)
        return validation.sanitized_query

    def _check_rate_limit(self, caller: QueryCaller, query: str, session_id: Optional[str], outbox: AnalyticsOutbox) -> None:
        result = self.rate_limiter.check_rate_limit(caller.rate_limit_key)
        if result.allowed:
            return
        self._bump(caller.business_id, "totalQueries")
        self._bump(caller.business_id, "rateLimited")
        self._log(caller, outbox, query, session_id, status=QUERY_STATUS_RATE_LIMITED, error_message="Rate limit exceeded")
        raise QueryError(RATE_LIMIT_EXCEEDED, retry_after=result.retry_after)

    @staticmethod
    def load_business(db: Session, business_id: UUID) -> Business:
        business = db.query(Business).filter(Business.id == business_id).first()
        if business is None or not business.is_available:
            raise QueryError(BUSINESS_NOT_FOUND)
        return business

    async def _prepare(self, db: Session, caller: QueryCaller, request: QueryRequest, query: str) -> PreparedQuery:
        started = time.perf_counter()
        business = self.load_business(db, caller.business_id)
        session = await self.session_manager.get_or_create_session(
            db, business.id, request.session_id, request.customer_id
        )
        conversation = self.session_manager.get_conversation_context(db, session)

        intent = self.intent_classifier.detect_intent(query, self.session_manager.get_intent_context(session))
        self.session_manager.update_intent_context(db, session, intent.intent)

        is_follow_up = bool(conversation.history) and is_follow_up_question(query, conversation.memory)
        resolved = resolve_question_context(query, conversation.memory) if is_follow_up else query

        context = await self.context_retriever.get_context_bundle(db, business, resolved)
        prompt = self.prompt_builder.fit_to_budget(
            business,
            context,
            conversation.history,
            resolved,
            intent.intent,
            build_session_context_prompt(conversation.memory, conversation.history),
        )
        logger.info(
            "Prepared query business_id=%s session_id=%s intent=%s confidence=%.2f context_items=%s follow_up=%s",
            business.id,
            session.session_id,
            intent.intent,
            intent.confidence,
            len(context.results),
            is_follow_up,
        )
        return PreparedQuery(
            caller=caller,
            business=business,
            session=session,
            query=query,
            intent=intent,
            conversation=conversation,
            context=context,
            prompt=prompt,
            is_follow_up=is_follow_up,
            resolved_query=resolved,
            started=started,
        )

    # --- Side effects ---

    def _log(
        self,
        caller: QueryCaller,
        outbox: AnalyticsOutbox,
        query: str,
        session_id: Optional[str],
        status: str,
        **fields,
    ) -> None:
        self.analytics_logger.log_query(
            QueryLogEntry(
                business_id=caller.business_id,
                session_id=session_id,
                query_text=query,
                status=status,
                user_agent=caller.user_agent,
                ip_address=caller.ip_address,
                **fields,
            ),
            outbox,
        )

    def _record_usage(self, db: Session, business_id: UUID, tokens: int, cost: float, outbox: AnalyticsOutbox) -> None:
        now = utcnow()
        self.usage_tracker.record_usage_event(
            db, UsageEvent(business_id=business_id, event_type="query", quantity=1, timestamp=now), outbox
        )
        if tokens:
            self.usage_tracker.record_usage_event(
                db,
                UsageEvent(
                    business_id=business_id,
                    event_type="tokens",
                    quantity=tokens,
                    tokens_consumed=tokens,
                    cost_cents=cost * 100,
                    timestamp=now,
                ),
                outbox,
            )

    def _fallback(self, prepared: PreparedQuery) -> ProcessedResponse:
        return ProcessedResponse(
            text=self.llm_service.generate_fallback_response(),
            confidence=FALLBACK_CONFIDENCE,
            sources=[],
            suggestions=self.response_processor.generate_suggestions(prepared.intent.intent),
            business_info_extracted=BusinessInformation(name=prepared.business.name),
            validation_result=ResponseValidation(is_valid=True, confidence=FALLBACK_CONFIDENCE),
        )

    async def _finish(
        self,
        db: Session,
        prepared: PreparedQuery,
        processed: ProcessedResponse,
        model: str,
        tokens: int,
        cost: float,
        outbox: AnalyticsOutbox,
        error_message: Optional[str] = None,
    ) -> int:
        """Append the exchange, publish audit and usage events; returns the processing time."""
        await self.session_manager.append_turn(
            db, prepared.session, prepared.query, processed.text, prepared.intent.intent
        )
        elapsed = prepared.elapsed_ms()
        business_id = prepared.business.id
        self._bump(business_id, "totalQueries")
        self._bump(business_id, "totalProcessingTimeMs", elapsed)
        if error_message is None:
            self._bump(business_id, "successfulQueries")
        else:
            self._bump(business_id, "failedQueries")
            self._bump(business_id, "fallbackResponses")

        self._log(
            prepared.caller,
            outbox,
            prepared.query,
            prepared.session.session_id,
            status=QUERY_STATUS_SUCCESS if error_message is None else QUERY_STATUS_ERROR,
            intent_detected=prepared.intent.intent,
            context_retrieved=[s.to_wire() for s in map(to_query_source, processed.sources)],
            response_generated=processed.text,
            processing_time_ms=elapsed,
            token_usage=tokens,
            cost_estimate=cost,
            confidence_score=processed.confidence,
            model_used=model,
            error_message=error_message,
        )
        self._record_usage(db, business_id, tokens, cost, outbox)
        logger.info(
            "Query processed business_id=%s session_id=%s intent=%s model=%s tokens=%s time_ms=%s",
            business_id,
            prepared.session.session_id,
            prepared.intent.intent,
            model,
            tokens,
            elapsed,
        )
        return elapsed

    def _record_disconnect(
        self,
        db: Session,
        prepared: PreparedQuery,
        partial_text: str,
        tokens: int,
        cost: float,
        outbox: AnalyticsOutbox,
    ) -> None:
        """Audit and bill a stream the client abandoned. Runs while the generator closes, so it must not await."""
        business_id = prepared.business.id
        self._bump(business_id, "totalQueries")
        self._bump(business_id, "failedQueries")
        self._log(
            prepared.caller,
            outbox,
            prepared.query,
            prepared.session.session_id,
            status=QUERY_STATUS_ERROR,
            intent_detected=prepared.intent.intent,
            response_generated=partial_text or None,
            processing_time_ms=prepared.elapsed_ms(),
            token_usage=tokens,
            cost_estimate=cost,
            model_used=self.llm_service.model,
            error_message=CLIENT_DISCONNECTED_MESSAGE,
        )
        self._record_usage(db, business_id, tokens, cost, outbox)
        logger.warning(
            "Client disconnected mid-stream business_id=%s session_id=%s tokens=%s",
            business_id,
            prepared.session.session_id,
            tokens,
        )

    # --- Entry points ---

    async def process_query(
        self,
        db: Session,
        caller: QueryCaller,
        request: QueryRequest,
        outbox: AnalyticsOutbox,
    ) -> QueryResult:
        """
        Run the full pipeline and return the response body.

        Raises:
            QueryError: INVALID_INPUT, RATE_LIMIT_EXCEEDED, BUSINESS_NOT_FOUND,
                SESSION_EXPIRED or PROCESSING_TIMEOUT. Generation failures never
                raise; they produce the fallback response.
        """
        query = self._validate(request)
        self._check_rate_limit(caller, query, request.session_id, outbox)
        try:
            return await asyncio.wait_for(self._run(db, caller, request, query, outbox), self.timeout_seconds)
        except asyncio.TimeoutError:
            self._timed_out(caller, query, request.session_id, outbox)

    def _timed_out(self, caller: QueryCaller, query: str, session_id: Optional[str], outbox: AnalyticsOutbox):
        logger.warning(
            "Query timed out business_id=%s after %sms (query length=%s)",
            caller.business_id,
            self.settings.query_timeout_ms,
            len(query),
        )
        self._bump(caller.business_id, "totalQueries")
        self._bump(caller.business_id, "timeouts")
        self._log(
            caller,
            outbox,
            query,
            session_id,
            status=QUERY_STATUS_TIMEOUT,
            processing_time_ms=self.settings.query_timeout_ms,
            error_message="Query processing timed out",
        )
        raise QueryError(PROCESSING_TIMEOUT)

    async def _run(
        self,
        db: Session,
        caller: QueryCaller,
        request: QueryRequest,
        query: str,
        outbox: AnalyticsOutbox,
    ) -> QueryResult:
        prepared = await self._prepare(db, caller, request, query)

        model, tokens, cost, error_message = FALLBACK_MODEL, 0, 0.0, None
        validation = self.prompt_builder.validate_prompt(prepared.prompt)
        if not validation.is_valid:
            error_message = f"Invalid prompt: {', '.join(validation.issues)}"
            logger.warning("Prompt rejected business_id=%s: %s", caller.business_id, error_message)
            processed = self._fallback(prepared)
        else:
            try:
                llm = await self.llm_service.generate_response(db, prepared.business.id, prepared.prompt)
                processed = self.response_processor.process_response(
                    llm.text, prepared.context, prepared.business, prepared.intent.intent, llm.finish_reason
                )
                model, tokens, cost = llm.model, llm.tokens_used, llm.cost
            except LLMServiceError as e:
                error_message = str(e)
                logger.error(
                    "LLM generation failed business_id=%s, using fallback response: %s", caller.business_id, e
                )
                processed = self._fallback(prepared)
            except Exception:
                error_message = PROVIDER_ERROR_MESSAGE
                logger.exception(
                    "Unexpected LLM failure business_id=%s, using fallback response", caller.business_id
                )
                processed = self._fallback(prepared)

        elapsed = await self._finish(db, prepared, processed, model, tokens, cost, outbox, error_message)
        quota = self.llm_service.get_business_quota(db, prepared.business.id)
        session = prepared.session

        return QueryResult(
            response=QueryResponseBody(
                text=processed.text,
                confidence=processed.confidence,
                sources=[to_query_source(s) for s in processed.sources],
                intent=prepared.intent.intent,
                suggestions=processed.suggestions,
            ),
            session=SessionInfo(
                session_id=session.session_id,
                expires_at=as_utc(session.expires_at),
                context_summary=session.context_summary or "",
                turn_count=prepared.conversation.turn_count + 1,
            ),
            usage=UsageInfo(tokens_used=tokens, cost_estimate=cost, remaining_quota=quota.remaining_quota),
            metadata=QueryMetadata(
                processing_time_ms=elapsed,
                model_used=model,
                intent_confidence=prepared.intent.confidence,
                intent_reasoning=prepared.intent.reasoning,
                intent_should_persist=prepared.intent.should_persist,
                context_items_used=len(processed.sources),
                business_context_used=[k for k, v in prepared.context.business_facts.items() if v],
                is_follow_up=prepared.is_follow_up,
                resolved_query=prepared.resolved_query if prepared.is_follow_up else None,
                validation=ValidationInfo(
                    is_valid=processed.validation_result.is_valid,
                    issues=processed.validation_result.issues,
                ),
            ),
        )

    async def prepare_streaming_query(
        self,
        db: Session,
        caller: QueryCaller,
        request: QueryRequest,
        outbox: AnalyticsOutbox,
    ) -> PreparedQuery:
        """Everything up to generation, so failures can still be answered as JSON errors."""
        query = self._validate(request)
        self._check_rate_limit(caller, query, request.session_id, outbox)
        try:
            return await asyncio.wait_for(self._prepare(db, caller, request, query), self.timeout_seconds)
        except asyncio.TimeoutError:
            self._timed_out(caller, query, request.session_id, outbox)

    async def stream_query(self, db: Session, prepared: PreparedQuery, outbox: AnalyticsOutbox) -> AsyncIterator[dict]:
        """
        Yield SSE payloads: one start, zero or more chunk, then exactly one end
        or error. The error frame carries the fallback text. If the consumer
        closes the stream early, the partial answer is still audited and billed.
        """
        session_id = prepared.session.session_id
        events = None
        terminal = None
        parts: list[str] = []
        tokens, cost = 0, 0.0
        try:
            yield {
                "type": "start",
                "data": {"sessionId": session_id, "intent": prepared.intent.intent, "timestamp": utcnow().isoformat()},
            }
            events = self.streaming_manager.stream(
                db, prepared.business, prepared.prompt, prepared.context, session_id, prepared.intent.intent
            )
            async for event in events:
                if event.is_terminal:
                    terminal = event
                    break
                parts.append(event.data["chunk"])
                tokens, cost = event.data["tokensUsed"], event.data["cost"]
                yield {"type": "chunk", "data": event.data}
        except (GeneratorExit, asyncio.CancelledError):
            self._record_disconnect(db, prepared, "".join(parts), tokens, cost, outbox)
            raise
        finally:
            if events is not None:
                await events.aclose()

        if terminal is not None and terminal.type == "complete":
            data = terminal.data
            processed = ProcessedResponse.model_validate(data["response"])
            elapsed = await self._finish(
                db, prepared, processed, self.llm_service.model, data["tokensUsed"], data["cost"], outbox
            )
            yield {
                "type": "end",
                "data": {
                    "sessionId": session_id,
                    "text": processed.text,
                    "confidence": processed.confidence,
                    "suggestions": processed.suggestions,
                    "sources": [to_query_source(s).to_wire() for s in processed.sources],
                    "intent": prepared.intent.intent,
                    "tokensUsed": data["tokensUsed"],
                    "cost": data["cost"],
                    "processingTimeMs": elapsed,
                    "timestamp": utcnow().isoformat(),
                },
            }
            return

        message = terminal.data.get("error") if terminal is not None else "Stream ended unexpectedly"
        logger.error("Streaming failed business_id=%s session_id=%s: %s", prepared.business.id, session_id, message)
        fallback = self._fallback(prepared)
        await self._finish(db, prepared, fallback, FALLBACK_MODEL, 0, 0.0, outbox, error_message=message)
        yield {
            "type": "error",
            "data": {
                "sessionId": session_id,
                "error": message,
                "text": fallback.text,
                "timestamp": utcnow().isoformat(),
            },
        }

    def get_processor_stats(self, db: Session, business_id: UUID) -> dict:
        stats = dict(self._stats.get(str(business_id), _new_stats()))
        total_time = stats.pop("totalProcessingTimeMs")
        completed = stats["successfulQueries"] + stats["fallbackResponses"]
        stats["averageProcessingTimeMs"] = total_time / completed if completed else 0.0
        stats["activeSessions"] = self.session_manager.count_active_sessions(db, business_id)
        stats["rateLimiter"] = self.rate_limiter.get_stats()
        stats["streaming"] = self.streaming_manager.get_stats()
        stats["analyticsDelivery"] = self.dispatcher.get_stats()
        return stats
