"""Kill switch for the Oura integration.

With ``FEATURE_OURA_ENABLED=false`` every ``/v1`` route except device
registration answers 503, webhook deliveries included.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.config import Settings, get_settings

ALWAYS_ENABLED_PATHS: frozenset[str] = frozenset({"/v1/device/register"})


class OuraFeatureFlagMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        self._settings = settings or get_settings()

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if (
            not self._settings.feature_oura_enabled
            and path.startswith("/v1/")
            and path not in ALWAYS_ENABLED_PATHS
        ):
            return Response(
                content='{"detail":"Oura integration disabled"}',
                status_code=503,
                media_type="application/json",
            )
        return await call_next(request)
