"""
Cosine-similarity search over business content embeddings.

PostgreSQL uses the pgvector `<=>` operator in raw SQL. Other dialects (SQLite
in tests) load the business's rows and score them with numpy, applying the
same filters, threshold, ordering and limit.
"""

import logging
import re
import time
from typing import Any, Optional
from uuid import UUID

import numpy as np
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.embedding import CONTENT_TYPE_FAQ, EMBEDDING_DIMENSIONS, Embedding
from app.schemas.pipeline import ContextResult, SearchError, SearchResponse

logger = logging.getLogger(__name__)

MAX_RESULTS = 100
DEFAULT_SNIPPET_LENGTH = 200
MIN_SNIPPET_LENGTH = 50
MAX_SNIPPET_LENGTH = 300

CONTENT_MATCH_BOOST = 0.10
TITLE_MATCH_BOOST = 0.15
FAQ_BOOST = 0.05

_PG_SEARCH_SQL = """
    SELECT id, business_id, content_type, content_id, content, metadata,
           1 - (embedding <=> CAST(:vec AS vector)) AS similarity
    FROM embeddings
    WHERE business_id = :business_id
      AND deleted_at IS NULL
      {content_type_filter}
      AND 1 - (embedding <=> CAST(:vec AS vector)) >= :threshold
    ORDER BY embedding <=> CAST(:vec AS vector)
    LIMIT :limit
"""


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b) + 1e-8))


def generate_text_snippet(content: str, query: str, max_length: int = DEFAULT_SNIPPET_LENGTH) -> str:
    """
    Window of `content` around the best match for `query`.

    Centres on the whole query if it appears, else on the longest query word
    that does, else takes the start. "..." marks a cut on either side.
    """
    max_length = max(MIN_SNIPPET_LENGTH, min(MAX_SNIPPET_LENGTH, max_length))
    if len(content) <= max_length:
        return content

    lowered = content.lower()
    needle = query.lower().strip()
    position = lowered.find(needle) if needle else -1
    match_length = len(needle)

    if position == -1:
        words = sorted({w for w in re.findall(r"\w+", needle) if len(w) > 2}, key=len, reverse=True)
        for word in words:
            position = lowered.find(word)
            if position != -1:
                match_length = len(word)
                break

    if position == -1:
        return content[:max_length].rstrip() + "..."

    start = max(0, position + match_length // 2 - max_length // 2)
    end = min(len(content), start + max_length)
    start = max(0, end - max_length)

    snippet = content[start:end].strip()
    if start > 0:
        snippet = "..." + snippet
    if end < len(content):
        snippet = snippet + "..."
    return snippet


def boosted_confidence(similarity: float, query: str, content: str, title: Optional[str], content_type: str) -> float:
    needle = query.lower().strip()
    confidence = similarity
    if needle and needle in content.lower():
        confidence += CONTENT_MATCH_BOOST
    if needle and title and needle in title.lower():
        confidence += TITLE_MATCH_BOOST
    if content_type == CONTENT_TYPE_FAQ:
        confidence += FAQ_BOOST
    return min(1.0, confidence)


class VectorSearch:
    def __init__(self, snippet_length: int = DEFAULT_SNIPPET_LENGTH):
        self.snippet_length = snippet_length

    def search_similar(
        self,
        db: Session,
        business_id: UUID,
        query_vector: list[float],
        query_text: str = "",
        content_type: Optional[str] = None,
        limit: int = 10,
        threshold: float = 0.75,
    ) -> SearchResponse:
        """
        Business-scoped similarity search. Every returned result has similarity >= threshold.

        A vector of the wrong dimensionality fails with SEARCH_FAILED before the
        database is touched; a database error fails with SEARCH_FAILED too.
        """
        started = time.perf_counter()
        if len(query_vector) != EMBEDDING_DIMENSIONS:
            logger.warning(
                "Rejected query vector with %s dimensions (expected %s)",
                len(query_vector),
                EMBEDDING_DIMENSIONS,
            )
            return SearchResponse(
                success=False,
                error=SearchError(
                    code="SEARCH_FAILED",
                    message=f"Embedding must have {EMBEDDING_DIMENSIONS} dimensions, got {len(query_vector)}",
                ),
            )

        limit = max(1, min(limit, MAX_RESULTS))
        try:
            if db.get_bind().dialect.name == "postgresql":
                rows = self._search_postgres(db, business_id, query_vector, content_type, limit, threshold)
            else:
                rows = self._search_in_memory(db, business_id, query_vector, content_type, limit, threshold)
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("Vector search failed for business_id=%s: %s", business_id, e)
            return SearchResponse(
                success=False,
                error=SearchError(code="SEARCH_FAILED", message="Vector search query failed"),
                processing_time_ms=int((time.perf_counter() - started) * 1000),
            )

        results = [self._to_result(row, query_text) for row in rows]
        results.sort(key=lambda r: r.confidence, reverse=True)
        average = sum(r.confidence for r in results) / len(results) if results else 0.0

        return SearchResponse(
            success=True,
            results=results,
            total_results=len(results),
            average_confidence=average,
            processing_time_ms=int((time.perf_counter() - started) * 1000),
        )

    def _search_postgres(self, db, business_id, query_vector, content_type, limit, threshold) -> list[dict[str, Any]]:
        params = {
            "vec": "[" + ",".join(repr(float(v)) for v in query_vector) + "]",
            "business_id": business_id,
            "threshold": threshold,
            "limit": limit,
        }
        content_type_filter = ""
        if content_type:
            content_type_filter = "AND content_type = :content_type"
            params["content_type"] = content_type
        sql = text(_PG_SEARCH_SQL.format(content_type_filter=content_type_filter))
        return [dict(row._mapping) for row in db.execute(sql, params)]

    def _search_in_memory(self, db, business_id, query_vector, content_type, limit, threshold) -> list[dict[str, Any]]:
        query = db.query(Embedding).filter(
            Embedding.business_id == business_id,
            Embedding.deleted_at.is_(None),
        )
        if content_type:
            query = query.filter(Embedding.content_type == content_type)

        target = np.asarray(query_vector, dtype=float)
        scored = []
        for row in query.all():
            similarity = cosine_similarity(np.asarray(row.embedding, dtype=float), target)
            if similarity >= threshold:
                scored.append({
                    "id": row.id,
                    "business_id": row.business_id,
                    "content_type": row.content_type,
                    "content_id": row.content_id,
                    "content": row.content,
                    "metadata": row.metadata_,
                    "similarity": similarity,
                })
        scored.sort(key=lambda r: r["similarity"], reverse=True)
        return scored[:limit]

    def _to_result(self, row: dict[str, Any], query_text: str) -> ContextResult:
        metadata = row.get("metadata") or {}
        title = metadata.get("title")
        similarity = float(row["similarity"])
        return ContextResult(
            id=row["id"],
            business_id=row["business_id"],
            content_type=row["content_type"],
            content_id=str(row["content_id"]),
            content=row["content"],
            title=title,
            similarity=similarity,
            confidence=boosted_confidence(similarity, query_text, row["content"], title, row["content_type"]),
            text_snippet=generate_text_snippet(row["content"], query_text, self.snippet_length),
            metadata=metadata or None,
        )
