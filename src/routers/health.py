"""Health check endpoint, public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from src.config import get_settings
from src.models.oura import HealthResponse

router = APIRouter(tags=["system"])
logger = logging.getLogger("ringlink.health")


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight DB connectivity check.
    """
    settings = get_settings()
    services = getattr(request.app.state, "services", None)
    db_ok = False
    if services is not None:
        try:
            db_ok = await services.store.ping()
        except Exception as exc:
            logger.warning("Health check DB probe failed: %s", exc)

    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=settings.app_version,
        environment=settings.environment,
        database="connected" if db_ok else "unreachable",
        timestamp=datetime.now(timezone.utc),
    )
