import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import settings
from app.core.container import build_container
from app.core.errors import (
    INTERNAL_ERROR,
    INVALID_INPUT,
    METHOD_NOT_ALLOWED,
    NOT_FOUND,
    UNAUTHORIZED,
    QueryError,
)
from app.core.timeutil import utcnow
from app.routers import analytics, query

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.project_name,
    version="1.0.0",
)

app.state.container = build_container(settings)

# Include routers
app.include_router(query.router, prefix=settings.api_v1_prefix)
app.include_router(analytics.router, prefix=settings.api_v1_prefix)


def _error_response(request: Request, status_code: int, error: dict, headers: dict | None = None) -> JSONResponse:
    """Envelope for failures; still delivers any audit events the request queued."""
    outbox = getattr(request.state, "outbox", None)
    dispatcher = getattr(request.state, "dispatcher", None)
    background = None
    if outbox is not None and dispatcher is not None and len(outbox):
        background = BackgroundTask(dispatcher.flush, outbox)
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "timestamp": utcnow().isoformat()},
        headers=headers,
        background=background,
    )


@app.exception_handler(QueryError)
async def query_error_handler(request: Request, exc: QueryError):
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after is not None else None
    return _error_response(request, exc.status_code, jsonable_encoder(exc.to_dict()), headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    error = QueryError(INVALID_INPUT, details=jsonable_encoder(exc.errors()))
    return _error_response(request, error.status_code, error.to_dict())


_HTTP_STATUS_CODES = {401: UNAUTHORIZED, 403: UNAUTHORIZED, 404: NOT_FOUND, 405: METHOD_NOT_ALLOWED}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        code = INTERNAL_ERROR
    else:
        code = _HTTP_STATUS_CODES.get(exc.status_code, INVALID_INPUT)
    return _error_response(
        request, exc.status_code, {"code": code, "message": str(exc.detail)}, getattr(exc, "headers", None)
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = QueryError(INTERNAL_ERROR, details=str(exc) if settings.debug else None)
    return _error_response(request, error.status_code, error.to_dict())


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "message": "Welcome to the Support Query API",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
