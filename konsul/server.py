"""FastAPI server for the Konsul reply engine.

Run with:
    KONSUL_SEED_FILE=seed.json uvicorn konsul.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from konsul.agent import Orchestrator
from konsul.api.routes import router
from konsul.config import CORS_ORIGINS, SEED_FILE, SERVER_HOST, SERVER_PORT
from konsul.services.metrics import metrics
from konsul.services.store import InMemoryStore

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _build_store() -> InMemoryStore:
    if SEED_FILE:
        return InMemoryStore.from_json(SEED_FILE)
    logger.warning("KONSUL_SEED_FILE not set; starting with an empty store")
    return InMemoryStore()


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the orchestrator once and keep it in app state."""
    logger.info("Building reply orchestrator…")
    application.state.orchestrator = Orchestrator(_build_store())
    logger.info("Orchestrator ready.")
    yield
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Konsul Reply Engine",
    description="Multi-tenant conversational agent orchestration: retrieval, tools and handoff.",
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
    """Attach a request ID (``X-Request-ID``) for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
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
        "service": "Konsul Reply Engine",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting Konsul API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run("konsul.server:app", host=SERVER_HOST, port=SERVER_PORT)
