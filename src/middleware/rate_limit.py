"""Simple in-memory sliding-window rate limiter.

Requests are keyed by client IP.  Bearer tokens are not trusted here: the
limiter runs before authentication, so a rotating junk token must not buy a
fresh window.  Oura webhook deliveries and the health check are never
limited: Oura retries throttled deliveries and bursts after outages.
"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.config import Settings, get_settings

EXEMPT_PATHS: frozenset[str] = frozenset({"/health", "/v1/webhooks/oura"})


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP sliding window rate limiter."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        s = settings or get_settings()
        self._max_requests = s.rate_limit_per_minute
        self._window_seconds = 60
        # client IP -> request timestamps inside the window
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._last_sweep = time.monotonic()

    def _client_key(self, request: Request) -> str:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def _cleanup(self, key: str, now: float) -> None:
        cutoff = now - self._window_seconds
        recent = [t for t in self._requests[key] if t > cutoff]
        if recent:
            self._requests[key] = recent
        else:
            self._requests.pop(key, None)

    def _sweep(self, now: float) -> None:
        """Drop every client whose newest request has left the window."""
        if now - self._last_sweep < self._window_seconds:
            return
        self._last_sweep = now
        cutoff = now - self._window_seconds
        for key in [k for k, ts in self._requests.items() if not ts or ts[-1] <= cutoff]:
            del self._requests[key]

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        key = self._client_key(request)
        now = time.monotonic()
        self._sweep(now)
        self._cleanup(key, now)
        window = self._requests[key]

        if len(window) >= self._max_requests:
            retry_after = int(self._window_seconds - (now - window[0]))
            return Response(
                content='{"detail":"Rate limit exceeded"}',
                status_code=429,
                media_type="application/json",
                headers={"Retry-After": str(max(retry_after, 1))},
            )

        window.append(now)
        response = await call_next(request)

        remaining = self._max_requests - len(window)
        response.headers["X-RateLimit-Limit"] = str(self._max_requests)
        response.headers["X-RateLimit-Remaining"] = str(max(remaining, 0))
        return response
