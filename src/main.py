"""Ringlink API: FastAPI application entry point.

Run locally:
    uvicorn src.main:app --reload --port 8000
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.config import get_settings
from src.middleware.feature_flag import OuraFeatureFlagMiddleware
from src.middleware.rate_limit import RateLimitMiddleware
from src.middleware.security import SecurityHeadersMiddleware
from src.oura.config_loader import get_sync_config
from src.oura.sync.maintenance import maintenance_loop
from src.oura.sync.queue import InMemorySyncQueue
from src.routers import device, health, oura, webhooks
from src.services.engine import build_services
from src.services.postgres import PostgresEngineStore, close_pool, init_pool
from src.services.r2 import R2SnapshotStore

# ---------- Logging ----------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logging.getLogger("ringlink").setLevel(get_settings().log_level.upper())
logger = logging.getLogger("ringlink")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    config = get_sync_config()
    logger.info(
        "Starting Ringlink API v%s [%s]",
        settings.app_version,
        settings.environment,
    )

    pool = await init_pool(settings)
    http_client = httpx.AsyncClient(timeout=httpx.Timeout(30.0))
    services = build_services(
        settings,
        config,
        PostgresEngineStore(pool),
        R2SnapshotStore.from_settings(settings),
        http_client=http_client,
    )
    app.state.services = services

    if isinstance(services.queue, InMemorySyncQueue):
        services.queue.start()
    maintenance = asyncio.create_task(
        maintenance_loop(services.reconciler, services.store, config),
        name="ringlink-maintenance",
    )

    yield

    maintenance.cancel()
    try:
        await maintenance
    except asyncio.CancelledError:
        pass
    if isinstance(services.queue, InMemorySyncQueue):
        await services.queue.stop()
    await http_client.aclose()
    await close_pool()
    logger.info("Ringlink API shut down")


# ---------- Error handling ----------

async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Ringlink API",
        description="Oura Ring sync service: OAuth connection, webhook ingestion, daily scores.",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_exception_handler(Exception, unhandled_exception_handler)

    # ---------- Middleware (the last one added runs outermost) ----------

    # Oura kill switch
    app.add_middleware(OuraFeatureFlagMiddleware, settings=settings)

    # Rate limiting
    app.add_middleware(RateLimitMiddleware, settings=settings)

    # Security headers on every response, 429 and 503 included
    app.add_middleware(SecurityHeadersMiddleware)

    # CORS, outermost so it can answer preflight
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "Retry-After"],
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/v1"

    app.include_router(device.router, prefix=v1_prefix)
    app.include_router(oura.router, prefix=v1_prefix)
    app.include_router(webhooks.router, prefix=v1_prefix)

    return app


app = create_app()
