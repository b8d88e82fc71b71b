"""FastAPI server for the Lumo assistant.

Run with:
    uvicorn lumo.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from lumo.api.routes import admin_router, router, webhook_router
from lumo.config import (
    ADMIN_SECRET,
    CORS_ORIGINS,
    RATE_LIMIT_MAX,
    RATE_LIMIT_WINDOW_SECONDS,
    SERVER_HOST,
    SERVER_PORT,
)
from lumo.pipeline import create_message_pipeline
from lumo.services.abuse import WindowCounter
from lumo.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the message pipeline once and store it in app state.

    Shutdown: close the delivery HTTP client and push buffered metrics.
    """
    logger.info("Building message pipeline…")
    pipeline = create_message_pipeline()
    application.state.pipeline = pipeline
    logger.info("Assistant ready.")
    yield
    application.state.pipeline = None
    await pipeline.delivery.aclose()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Lumo Assistant",
    description=(
        "Conversational assistant backend: web chat, messaging webhook "
        "and appointment booking."
    ),
    version="1.0.0",
    lifespan=lifespan,
)
app.state.pipeline = None
app.state.admin_secret = ADMIN_SECRET
app.state.chat_rate_limiter = WindowCounter(RATE_LIMIT_MAX, RATE_LIMIT_WINDOW_SECONDS)

# ── CORS (web chat frontend) ────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID to every request for log correlation.

    A client-supplied ``X-Request-ID`` is echoed back; otherwise a new one
    is generated.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")
app.include_router(webhook_router)
app.include_router(admin_router, prefix="/admin")


@app.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "Lumo Assistant",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting Lumo server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "lumo.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
