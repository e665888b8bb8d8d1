"""
Context retrieval: embed the query, search business content, assemble a context bundle.

Retrieval failure is never fatal to a query. The bundle comes back empty with
retrieval_failed set and the pipeline answers with lower confidence.
"""

import logging
import time
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.config import Settings
from app.models.business import Business
from app.models.embedding import CONTENT_TYPES, EMBEDDING_DIMENSIONS
from app.schemas.pipeline import ContextBundle, SearchError, SearchResponse
from app.services.gemini_client import GeminiClient
from app.services.vector_search import VectorSearch

logger = logging.getLogger(__name__)


class ContextRetriever:
    def __init__(self, gemini: GeminiClient, vector_search: VectorSearch, settings: Settings):
        self.gemini = gemini
        self.vector_search = vector_search
        self.settings = settings

    async def _embed(self, query: str) -> list[float]:
        return await self.gemini.embed(query.strip(), EMBEDDING_DIMENSIONS)

    async def retrieve_context(
        self,
        db: Session,
        business_id: UUID,
        query: str,
        content_type: Optional[str] = None,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> SearchResponse:
        """Search one content type (or all rows when content_type is None)."""
        try:
            vector = await self._embed(query)
        except Exception as e:
            return self._embedding_failed(business_id, e)

        return self.vector_search.search_similar(
            db,
            business_id,
            vector,
            query_text=query,
            content_type=content_type,
            limit=limit or self.settings.context_max_items,
            threshold=self._threshold(threshold),
        )

    async def retrieve_all_context(
        self,
        db: Session,
        business_id: UUID,
        query: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> SearchResponse:
        """
        Embed once, search every content type, merge by confidence and keep the top `limit`.
        """
        started = time.perf_counter()
        limit = limit or self.settings.context_max_items
        try:
            vector = await self._embed(query)
        except Exception as e:
            return self._embedding_failed(business_id, e)

        merged = []
        for content_type in CONTENT_TYPES:
            response = self.vector_search.search_similar(
                db,
                business_id,
                vector,
                query_text=query,
                content_type=content_type,
                limit=limit,
                threshold=self._threshold(threshold),
            )
            if not response.success:
                return response
            merged.extend(response.results)

        merged.sort(key=lambda r: r.confidence, reverse=True)
        results = merged[:limit]
        average = sum(r.confidence for r in results) / len(results) if results else 0.0
        return SearchResponse(
            success=True,
            results=results,
            total_results=len(results),
            average_confidence=average,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
        )

    async def get_context_bundle(self, db: Session, business: Business, query: str) -> ContextBundle:
        search = await self.retrieve_all_context(db, business.id, query)
        if not search.success:
            logger.warning(
                "Context retrieval failed for business_id=%s: %s",
                business.id,
                search.error.message if search.error else "unknown",
            )
        return self.build_context_bundle(business, search)

    def build_context_bundle(self, business: Business, search: SearchResponse) -> ContextBundle:
        """Combine search matches with the business's structured facts."""
        if not search.success:
            return ContextBundle(
                business_facts=business_facts(business),
                retrieval_failed=True,
                error=search.error,
            )
        return ContextBundle(
            results=search.results,
            business_facts=business_facts(business),
            average_confidence=search.average_confidence,
        )

    def _threshold(self, threshold: Optional[float]) -> float:
        return self.settings.context_similarity_threshold if threshold is None else threshold

    @staticmethod
    def _embedding_failed(business_id: UUID, exc: Exception) -> SearchResponse:
        logger.warning("Query embedding failed for business_id=%s: %s", business_id, exc)
        return SearchResponse(
            success=False,
            error=SearchError(code="RETRIEVAL_FAILED", message="Failed to generate query embedding"),
        )


def business_facts(business: Business) -> dict[str, Any]:
    """Structured facts about the business used in prompts and contradiction checks."""
    location = ", ".join(p for p in (business.address, business.city, business.state, business.zip_code) if p)
    facts: dict[str, Any] = {
        "name": business.name,
        "type": business.business_type,
        "category": business.category,
        "description": business.description,
        "phone": business.phone,
        "email": business.email,
        "website": business.website,
        "address": location or None,
        "hours": business.operating_hours,
        "timezone": business.timezone,
        "policies": list(business.policies or []),
        "services": list(business.services or []),
        "products": list(business.products or []),
        "special_offers": list(business.special_offers or []),
    }
    return facts
