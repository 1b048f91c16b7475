"""FastAPI server for the AgentDesk booking agent.

Run with:
    uvicorn agentdesk.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from agentdesk.api.routes import router
from agentdesk.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from agentdesk.runtime import build_runtime

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the runtime (stores, clients, orchestrator, call lifecycle)
    once and keep it in app state.
    """
    logger.info("Building agent runtime…")
    application.state.runtime = build_runtime()
    logger.info("Agent ready.")
    yield
    application.state.runtime = None


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="AgentDesk",
    description=(
        "Conversational booking agent: chat and phone conversations that "
        "check calendar availability and book appointments."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

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
    """Attach a unique request ID to every request for log correlation.

    Twilio retries deliveries with the same ``I-Twilio-Idempotency-Token``,
    which is used as the request ID when present.
    """
    request_id = (
        request.headers.get("X-Request-ID")
        or request.headers.get("I-Twilio-Idempotency-Token")
        or str(uuid.uuid4())
    )
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "AgentDesk",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting AgentDesk API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "agentdesk.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
