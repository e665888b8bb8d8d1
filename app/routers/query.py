"""Customer query endpoints: JSON answer, SSE stream and session end.

Audit and usage events collected while handling a request are delivered after
the response is sent (BackgroundTasks for JSON, the StreamingResponse
background for SSE, and the error handler in app.main for failed requests).
"""

import json
import logging
from typing import AsyncIterator

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from starlette.background import BackgroundTask

from app.core.auth import BusinessPrincipal, client_ip, get_business_principal
from app.core.container import ServiceContainer, get_container
from app.core.timeutil import utcnow
from app.db.session import get_db
from app.schemas.query import EndSessionResponse, QueryApiResponse, QueryRequest
from app.services.analytics_dispatcher import AnalyticsOutbox
from app.services.query_processor import QueryCaller

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/query", tags=["query"])


def get_outbox(request: Request, container: ServiceContainer = Depends(get_container)) -> AnalyticsOutbox:
    """Per-request outbox; kept on request.state so error responses can still flush it."""
    outbox = AnalyticsOutbox()
    request.state.outbox = outbox
    request.state.dispatcher = container.dispatcher
    return outbox


def _caller(principal: BusinessPrincipal, request: Request) -> QueryCaller:
    return QueryCaller(
        business_id=principal.business_id,
        rate_limit_key=principal.rate_limit_key,
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip(request),
    )


@router.post("", response_model=QueryApiResponse, response_model_by_alias=True)
async def post_query(
    body: QueryRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: BusinessPrincipal = Depends(get_business_principal),
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
    outbox: AnalyticsOutbox = Depends(get_outbox),
):
    """Answer one customer query for the authenticated business."""
    result = await container.query_processor.process_query(db, _caller(principal, request), body, outbox)
    background_tasks.add_task(container.dispatcher.flush, outbox)
    return QueryApiResponse(data=result, timestamp=utcnow())


async def _open_stream(
    body: QueryRequest,
    request: Request,
    principal: BusinessPrincipal,
    container: ServiceContainer,
    outbox: AnalyticsOutbox,
) -> StreamingResponse:
    # The stream outlives the request-scoped session, so it gets its own.
    db = container.session_factory()
    try:
        prepared = await container.query_processor.prepare_streaming_query(
            db, _caller(principal, request), body, outbox
        )
    except Exception:
        db.close()
        raise

    async def frames() -> AsyncIterator[str]:
        payloads = container.query_processor.stream_query(db, prepared, outbox)
        try:
            async for payload in payloads:
                yield f"data: {json.dumps(payload, default=str)}\n\n"
        finally:
            # The pipeline stream must close before the session it writes through.
            await payloads.aclose()
            db.close()

    return StreamingResponse(
        frames(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        background=BackgroundTask(container.dispatcher.flush, outbox),
    )


@router.post("/stream")
async def post_query_stream(
    body: QueryRequest,
    request: Request,
    principal: BusinessPrincipal = Depends(get_business_principal),
    container: ServiceContainer = Depends(get_container),
    outbox: AnalyticsOutbox = Depends(get_outbox),
):
    """Server-sent events: start, chunk*, then end or error."""
    return await _open_stream(body, request, principal, container, outbox)


@router.get("/stream")
async def get_query_stream(
    request: Request,
    query: str = Query(default=""),
    session_id: str | None = Query(default=None, alias="sessionId"),
    customer_id: str | None = Query(default=None, alias="customerId"),
    principal: BusinessPrincipal = Depends(get_business_principal),
    container: ServiceContainer = Depends(get_container),
    outbox: AnalyticsOutbox = Depends(get_outbox),
):
    """EventSource-friendly variant of POST /query/stream."""
    body = QueryRequest(query=query, session_id=session_id, customer_id=customer_id)
    return await _open_stream(body, request, principal, container, outbox)


@router.post("/sessions/{session_id}/end", response_model=EndSessionResponse, response_model_by_alias=True)
def end_session(
    session_id: str,
    principal: BusinessPrincipal = Depends(get_business_principal),
    db: Session = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """Deactivate a conversation session; ended is False if it was not active."""
    ended = container.session_manager.end_session(db, principal.business_id, session_id)
    return EndSessionResponse(data={"sessionId": session_id, "ended": ended}, timestamp=utcnow())
