"""
api/main.py -- FastAPI application entry point for the release readiness service.

The API is read-only: it serves whatever the two sync loops last wrote to
the store and computes readiness signals on request.

Run with:      uvicorn asgi:app --reload
               python main.py serve

Middleware stack (outermost to innermost):
  1. CORSMiddleware -- adds CORS headers for allowed browser origins
  2. log_requests   -- one access log line per request with latency

Lifespan owns the SyncContext: it opens the store, builds the configured
syncers, and starts their loops as background tasks. Shutdown stops the
loops first, then closes the store.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.releases import router as releases_router
from api.routes.v1.snapshots import router as snapshots_router
from core.config import configure_logging, get_settings
from core.scheduler import build_context, start_sync_tasks, stop_sync_tasks

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

configure_logging(get_settings().log_level)
logger = logging.getLogger("releaseready.api")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the SyncContext on startup and tear it down on shutdown.

    Startup order matters: the store must be open before either loop starts,
    since the first pass runs immediately.
    """
    logger.info("Release readiness API starting up")
    ctx = build_context(get_settings())
    app.state.sync = ctx
    start_sync_tasks(ctx)
    logger.info("Started %d sync loop(s)", len(ctx.tasks))

    yield

    await stop_sync_tasks(ctx)
    ctx.close()
    logger.info("Release readiness API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Release Readiness API",
    description="Build snapshots, release issues, and go/no-go signals for upcoming releases.",
    version=API_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://localhost:5173", "http://127.0.0.1"],
    allow_methods=["GET"],
    allow_headers=["Content-Type"],
    max_age=3600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(snapshots_router, prefix="/api/v1", tags=["Snapshots"])
app.include_router(releases_router, prefix="/api/v1", tags=["Releases"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump().
    A dict detail is used as the error field as-is.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Liveness plus a database ping. 503 when the store does not answer."""
    ctx = request.app.state.sync
    db_ok = ctx.store.ping()
    body = HealthResponse(
        status="healthy" if db_ok else "unhealthy",
        version=API_VERSION,
        components={
            "app": "ok",
            "database": "ok" if db_ok else "error",
            "snapshot_sync": "enabled" if ctx.snapshot_syncer is not None else "disabled",
            "tracker_sync": "enabled" if ctx.tracker_syncer is not None else "disabled",
        },
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
