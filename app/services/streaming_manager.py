"""
Turns the LLM token stream into chunk / complete / error events.

Every stream ends with exactly one terminal event (complete or error) and
nothing is yielded after it. Closing the generator early (client disconnect)
closes the upstream LLM stream in the finally block.
"""

import logging
import time
from typing import AsyncIterator, Optional

from sqlalchemy.orm import Session

from app.core.timeutil import utcnow
from app.models.business import Business
from app.schemas.pipeline import ContextBundle, PromptTemplate, QueryIntent, StreamEvent
from app.services.gemini_client import LLMServiceError
from app.services.llm_service import LLMService
from app.services.prompt_builder import PromptBuilder
from app.services.response_processor import ResponseProcessor

logger = logging.getLogger(__name__)

EMPTY_STREAM_MESSAGE = "The AI service returned an empty response"


def _error_event(message: str, session_id: str) -> StreamEvent:
    return StreamEvent(
        type="error",
        data={"error": message, "sessionId": session_id, "timestamp": utcnow().isoformat()},
    )


class StreamingManager:
    def __init__(self, llm_service: LLMService, prompt_builder: PromptBuilder, response_processor: ResponseProcessor):
        self.llm_service = llm_service
        self.prompt_builder = prompt_builder
        self.response_processor = response_processor
        self.active_streams = 0
        self.completed_streams = 0
        self.failed_streams = 0

    async def stream(
        self,
        db: Session,
        business: Business,
        prompt: PromptTemplate,
        context: ContextBundle,
        session_id: str,
        intent: str = QueryIntent.UNKNOWN.value,
    ) -> AsyncIterator[StreamEvent]:
        """
        Yield chunk events, then one complete event carrying the processed
        response, or one error event. Never raises for pipeline failures.
        """
        started = time.perf_counter()
        validation = self.prompt_builder.validate_prompt(prompt)
        if not validation.is_valid:
            self.failed_streams += 1
            yield _error_event(f"Invalid prompt: {', '.join(validation.issues)}", session_id)
            return

        self.active_streams += 1
        upstream = self.llm_service.generate_streaming_response(db, business.id, prompt, session_id)
        parts: list[str] = []
        final = None
        failure: Optional[str] = None
        try:
            try:
                async for chunk in upstream:
                    if chunk.completed:
                        final = chunk
                        break
                    parts.append(chunk.chunk)
                    yield StreamEvent(
                        type="chunk",
                        data={
                            "chunk": chunk.chunk,
                            "sessionId": session_id,
                            "tokensUsed": chunk.tokens_used,
                            "cost": chunk.cost,
                            "timestamp": utcnow().isoformat(),
                        },
                    )
            except LLMServiceError as exc:
                failure = str(exc)
                logger.warning("Streaming generation failed session_id=%s: %s", session_id, exc)
            except Exception:
                failure = "Streaming failed"
                logger.exception("Unexpected streaming failure session_id=%s", session_id)
        finally:
            self.active_streams -= 1
            await upstream.aclose()

        text = "".join(parts)
        if failure is None and not text.strip():
            failure = EMPTY_STREAM_MESSAGE
        if failure is not None:
            self.failed_streams += 1
            yield _error_event(failure, session_id)
            return

        processed = self.response_processor.process_response(
            text, context, business, intent, final.finish_reason if final else None
        )
        self.completed_streams += 1
        yield StreamEvent(
            type="complete",
            data={
                "sessionId": session_id,
                "completed": True,
                "response": processed.to_wire(),
                "tokensUsed": final.tokens_used if final else 0,
                "cost": final.cost if final else 0.0,
                "finishReason": final.finish_reason if final else None,
                "processingTimeMs": int((time.perf_counter() - started) * 1000),
                "timestamp": utcnow().isoformat(),
            },
        )

    def get_stats(self) -> dict:
        return {
            "activeStreams": self.active_streams,
            "completedStreams": self.completed_streams,
            "failedStreams": self.failed_streams,
        }
