"""
LLM generation with per-business token quota enforcement.

The quota is checked before every call; an exhausted quota raises without
contacting the provider. Any failure surfaces as LLMServiceError, which the
query processor turns into the fixed fallback response.
"""

import logging
import math
import time
from typing import AsyncIterator
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import Settings
from app.models.usage import QUOTA_TOKENS
from app.schemas.pipeline import BusinessQuota, LLMResponse, PromptTemplate, StreamingLLMChunk
from app.services.gemini_client import GeminiClient, LLMServiceError, finish_reason_name
from app.services.usage_tracker import UsageTracker

logger = logging.getLogger(__name__)

FALLBACK_RESPONSE = (
    "I'm sorry, I'm having trouble answering right now. Please try again in a moment, "
    "or contact the business directly for help."
)
FALLBACK_MODEL = "fallback"
FALLBACK_CONFIDENCE = 0.3


class QuotaExceededError(LLMServiceError):
    """The business has used its monthly token allowance."""


class LLMService:
    def __init__(self, gemini: GeminiClient, usage_tracker: UsageTracker, settings: Settings):
        self.gemini = gemini
        self.usage_tracker = usage_tracker
        self.settings = settings

    @property
    def model(self) -> str:
        return self.gemini.model

    def get_business_quota(self, db: Session, business_id: UUID) -> BusinessQuota:
        status = self.usage_tracker.get_current_usage(db, business_id, QUOTA_TOKENS)
        return BusinessQuota(
            business_id=business_id,
            monthly_limit=status.limit,
            current_usage=status.current_usage,
            remaining_quota=status.remaining,
            reset_date=status.reset_date,
        )

    def check_quota(self, db: Session, business_id: UUID) -> BusinessQuota:
        quota = self.get_business_quota(db, business_id)
        if quota.remaining_quota <= 0:
            logger.warning(
                "Monthly token quota exceeded business_id=%s usage=%s limit=%s",
                business_id,
                quota.current_usage,
                quota.monthly_limit,
            )
            raise QuotaExceededError(
                f"Monthly token quota exceeded. Resets on {quota.reset_date.date().isoformat()}"
            )
        return quota

    def calculate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        return (
            prompt_tokens / 1000 * self.settings.cost_per_1k_input_tokens
            + completion_tokens / 1000 * self.settings.cost_per_1k_output_tokens
        )

    @staticmethod
    def _usage_counts(response) -> tuple[int, int, int]:
        usage = getattr(response, "usage_metadata", None)
        if usage is None:
            return 0, 0, 0
        prompt_tokens = usage.prompt_token_count or 0
        completion_tokens = usage.candidates_token_count or 0
        total = usage.total_token_count or (prompt_tokens + completion_tokens)
        return prompt_tokens, completion_tokens, total

    async def generate_response(self, db: Session, business_id: UUID, prompt: PromptTemplate) -> LLMResponse:
        """
        Generate a full response.

        Raises:
            QuotaExceededError: monthly tokens used up; the provider is not called.
            LLMServiceError: provider failure or an empty answer.
        """
        started = time.perf_counter()
        self.check_quota(db, business_id)

        response = await self.gemini.generate(prompt.current_query, prompt.to_system_instruction())
        text = (response.text or "").strip()
        if not text:
            raise LLMServiceError("The AI service returned an empty response")

        prompt_tokens, completion_tokens, total = self._usage_counts(response)
        result = LLMResponse(
            text=text,
            tokens_used=total,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=self.calculate_cost(prompt_tokens, completion_tokens),
            model=self.model,
            finish_reason=finish_reason_name(response),
            processing_time_ms=int((time.perf_counter() - started) * 1000),
        )
        logger.info(
            "LLM response business_id=%s tokens=%s finish_reason=%s time_ms=%s",
            business_id,
            result.tokens_used,
            result.finish_reason,
            result.processing_time_ms,
        )
        return result

    async def generate_streaming_response(
        self,
        db: Session,
        business_id: UUID,
        prompt: PromptTemplate,
        session_id: str,
    ) -> AsyncIterator[StreamingLLMChunk]:
        """
        Yield text chunks, then one completed chunk carrying final token counts.

        Token counts are estimated (characters / 4) until the provider reports usage.
        Closing this generator closes the upstream stream.
        """
        self.check_quota(db, business_id)

        upstream = self.gemini.stream(prompt.current_query, prompt.to_system_instruction())
        prompt_tokens = completion_tokens = total = 0
        streamed_chars = 0
        finish_reason = "STOP"
        try:
            async for chunk in upstream:
                text = chunk.text or ""
                reported = self._usage_counts(chunk)
                if reported[2]:
                    prompt_tokens, completion_tokens, total = reported
                if getattr(chunk, "candidates", None):
                    finish_reason = finish_reason_name(chunk)
                if not text:
                    continue
                streamed_chars += len(text)
                estimate = max(total, math.ceil(streamed_chars / 4))
                yield StreamingLLMChunk(
                    chunk=text,
                    completed=False,
                    tokens_used=estimate,
                    cost=self.calculate_cost(prompt_tokens, max(completion_tokens, estimate - prompt_tokens)),
                    session_id=session_id,
                )
        finally:
            await upstream.aclose()

        if not total:
            completion_tokens = math.ceil(streamed_chars / 4)
            total = prompt_tokens + completion_tokens
        yield StreamingLLMChunk(
            chunk="",
            completed=True,
            tokens_used=total,
            cost=self.calculate_cost(prompt_tokens, completion_tokens),
            session_id=session_id,
            finish_reason=finish_reason,
        )

    @staticmethod
    def generate_fallback_response() -> str:
        return FALLBACK_RESPONSE
