"""FastAPI server for the CareBot WhatsApp webhook.

Run with:
    uv run uvicorn carebot.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from carebot.api.admin import admin_router
from carebot.api.routes import health_payload, router, webhook_router
from carebot.bootstrap import create_services
from carebot.config import CORS_ORIGINS, SEED_FILE, SERVER_HOST, SERVER_PORT
from carebot.services.store import load_fixtures

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the service graph once and keep it in app state."""
    services = create_services()
    if SEED_FILE:
        await load_fixtures(services.store, Path(SEED_FILE))
    application.state.services = services
    logger.info("Webhook ready.")
    yield
    await services.aclose()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="CareBot WhatsApp Webhook",
    description="Multi-tenant WhatsApp assistant for healthcare providers.",
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
    """Tag every request with an ID, echoed back as ``X-Request-ID``."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
    request.state.request_id = request_id
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "[%s] %s %s -> %d (%.0fms)",
        request_id, request.method, request.url.path, response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")
app.include_router(webhook_router)
app.include_router(admin_router)


@app.get("/")
async def root(request: Request):
    """Service info plus cache counters."""
    health = health_payload(request)
    return {
        "service": "CareBot WhatsApp Webhook",
        "version": "1.0.0",
        "status": health.status,
        "cached_tenants": health.cached_tenants,
        "cached_knowledge": health.cached_knowledge,
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting CareBot webhook on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run("carebot.server:app", host=SERVER_HOST, port=SERVER_PORT)
