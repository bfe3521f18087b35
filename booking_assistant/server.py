"""FastAPI server for the booking assistant.

Run with:
    uv run uvicorn booking_assistant.server:app --reload --host 0.0.0.0 --port 3001
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from booking_assistant.agent import AnthropicModelClient
from booking_assistant.api.routes import router, ws_router
from booking_assistant.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from booking_assistant.platforms.registry import default_adapters
from booking_assistant.services.calendly_client import close_calendly_client
from booking_assistant.services.registry import ConnectionRegistry

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the connection registry once and start its sweep.

    On shutdown every live connection is torn down so no browser
    outlives the process.
    """
    registry = ConnectionRegistry(AnthropicModelClient(), default_adapters())
    registry.start()
    application.state.registry = registry
    logger.info("Booking assistant ready.")
    yield
    logger.info("Shutting down: releasing %d connection(s)", registry.status()["connections"])
    await registry.close()
    await close_calendly_client()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Booking Assistant",
    description=(
        "Conversational booking across Calendly, Housecall Pro and OpenTable, "
        "driven by a language model and browser automation."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (needed for the React chat client) ──────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every HTTP request for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")
app.include_router(ws_router)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Booking Assistant",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
        "websocket": "/ws",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting booking assistant on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "booking_assistant.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
