"""Gemini AI client service.

Wraps google-genai for chat completion (full and streaming) and embeddings.
A 429 RESOURCE_EXHAUSTED response starts a cooldown on this client instance;
while it lasts no request is sent upstream.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from app.core.config import Settings

logger = logging.getLogger(__name__)

PROVIDER_ERROR_MESSAGE = "The AI service is temporarily unavailable"


class LLMServiceError(Exception):
    """Generation failed upstream; the caller answers with the fallback text."""


class GeminiQuotaError(LLMServiceError):
    """Provider quota exhausted (HTTP 429) or still cooling down after one."""

    def __init__(self, message: str = "AI quota exceeded", retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


def _is_quota_error(exc: BaseException) -> bool:
    """True if the exception is a 429 / RESOURCE_EXHAUSTED from the Gemini API."""
    if not isinstance(exc, genai_errors.ClientError):
        return False
    if getattr(exc, "code", None) == 429:
        return True
    status = getattr(exc, "status", None)
    if status and "RESOURCE_EXHAUSTED" in str(status).upper():
        return True
    return False


def _extract_retry_delay_seconds(exc: BaseException) -> Optional[int]:
    """
    Parse RetryInfo from error details if present.
    Returns delay in seconds, or None if not found.
    """
    details = getattr(exc, "details", None)
    if not details or not isinstance(details, dict):
        return None
    err = details.get("error", details)
    if not isinstance(err, dict):
        return None
    raw_list = err.get("details") if isinstance(err.get("details"), list) else None
    if not raw_list:
        return None
    for item in raw_list:
        if not isinstance(item, dict):
            continue
        if item.get("@type") == "type.googleapis.com/google.rpc.RetryInfo":
            delay_str = item.get("retryDelay")
            if delay_str is None:
                continue
            # "34s" or "60.123s"
            match = re.match(r"^(\d+(?:\.\d+)?)\s*s", str(delay_str).strip())
            if match:
                return int(float(match.group(1)))
    return None


def finish_reason_name(response) -> str:
    """Finish reason of the first candidate as a plain string ("STOP", "MAX_TOKENS", ...)."""
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return "STOP"
    reason = getattr(candidates[0], "finish_reason", None)
    if reason is None:
        return "STOP"
    return getattr(reason, "name", None) or str(reason)


class GeminiClient:
    """Thin async facade over genai.Client.aio with quota cooldown handling."""

    def __init__(self, settings: Settings, client: Optional[genai.Client] = None):
        self.settings = settings
        self._client = client
        self._quota_cooldown_until: Optional[datetime] = None

    @property
    def model(self) -> str:
        return self.settings.gemini_model

    def _get_client(self) -> genai.Client:
        """Get Gemini client, raising error if API key not configured."""
        if self._client is None:
            if not self.settings.gemini_api_key:
                raise ValueError("GEMINI_API_KEY missing")
            self._client = genai.Client(api_key=self.settings.gemini_api_key)
        return self._client

    def in_cooldown(self) -> bool:
        """True if we are still in the quota cooldown window."""
        if self._quota_cooldown_until is None:
            return False
        if datetime.now(timezone.utc) >= self._quota_cooldown_until:
            self._quota_cooldown_until = None
            return False
        return True

    def _cooldown_remaining_seconds(self) -> Optional[int]:
        if self._quota_cooldown_until is None:
            return None
        remaining = (self._quota_cooldown_until - datetime.now(timezone.utc)).total_seconds()
        return max(1, int(remaining))

    def _check_cooldown(self) -> None:
        if self.in_cooldown():
            logger.debug("Skipping Gemini call due to recent quota exceeded; still in cooldown")
            raise GeminiQuotaError(
                "AI quota exceeded; cooling down",
                retry_after=self._cooldown_remaining_seconds(),
            )

    def _translate_error(self, exc: Exception) -> LLMServiceError:
        """Map an SDK exception to GeminiQuotaError (starting the cooldown) or LLMServiceError."""
        if _is_quota_error(exc):
            retry_sec = _extract_retry_delay_seconds(exc)
            cooldown_sec = retry_sec if retry_sec is not None else self.settings.gemini_quota_cooldown_seconds
            self._quota_cooldown_until = datetime.now(timezone.utc) + timedelta(seconds=cooldown_sec)
            logger.warning(
                "Gemini quota exceeded (429 RESOURCE_EXHAUSTED); cooldown %s s. retryDelay=%s",
                cooldown_sec,
                retry_sec,
            )
            return GeminiQuotaError(retry_after=cooldown_sec)
        logger.warning("Gemini call failed: %s: %s", type(exc).__name__, exc)
        return LLMServiceError(PROVIDER_ERROR_MESSAGE)

    def _generation_config(self, system_instruction: str) -> genai_types.GenerateContentConfig:
        return genai_types.GenerateContentConfig(
            system_instruction=system_instruction,
            temperature=self.settings.gemini_temperature,
            max_output_tokens=self.settings.gemini_max_output_tokens,
        )

    async def generate(self, contents: str, system_instruction: str):
        """
        Single-shot generation. Returns the SDK response (text, usage_metadata, candidates).

        Raises:
            GeminiQuotaError: on 429 or during cooldown (no upstream call is made).
            LLMServiceError: on any other failure, including a missing API key.
        """
        self._check_cooldown()
        try:
            client = self._get_client()
            logger.info("Calling Gemini model=%s, prompt_length=%s", self.model, len(contents))
            response = await client.aio.models.generate_content(
                model=self.model,
                contents=contents,
                config=self._generation_config(system_instruction),
            )
        except Exception as e:
            raise self._translate_error(e) from e

        logger.info("Gemini response_length=%s", len(response.text) if response.text else 0)
        return response

    async def stream(self, contents: str, system_instruction: str) -> AsyncIterator:
        """Yield SDK response chunks as they arrive. Closing the generator closes the upstream stream."""
        self._check_cooldown()
        try:
            client = self._get_client()
            logger.info("Streaming Gemini model=%s, prompt_length=%s", self.model, len(contents))
            upstream = await client.aio.models.generate_content_stream(
                model=self.model,
                contents=contents,
                config=self._generation_config(system_instruction),
            )
        except Exception as e:
            raise self._translate_error(e) from e

        try:
            async for chunk in upstream:
                yield chunk
        except Exception as e:
            raise self._translate_error(e) from e
        finally:
            aclose = getattr(upstream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def embed(self, text: str, dimensions: int) -> list[float]:
        """Embed one text; the vector is requested at the given dimensionality."""
        self._check_cooldown()
        try:
            client = self._get_client()
            result = await client.aio.models.embed_content(
                model=self.settings.gemini_embedding_model,
                contents=text,
                config=genai_types.EmbedContentConfig(output_dimensionality=dimensions),
            )
        except Exception as e:
            raise self._translate_error(e) from e

        if not result.embeddings:
            raise LLMServiceError("Embedding response was empty")
        return list(result.embeddings[0].values or [])
