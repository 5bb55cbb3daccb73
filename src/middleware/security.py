"""Security headers middleware.

Adds strict transport security, content-type options, frame options, etc.
to every response.  The OAuth callback page is the one HTML response the
service serves; it redirects with an inline script, so it gets its own
content security policy.
"""

from __future__ import annotations

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "0",  # modern browsers, CSP is preferred
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains; preload",
    "Cache-Control": "no-store",
}

API_CSP = "default-src 'none'; frame-ancestors 'none'"
CALLBACK_PAGE_CSP = "default-src 'none'; script-src 'unsafe-inline'; frame-ancestors 'none'"

OAUTH_CALLBACK_PATH = "/v1/oura/oauth/callback"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        csp = CALLBACK_PAGE_CSP if request.url.path == OAUTH_CALLBACK_PATH else API_CSP
        response.headers.setdefault("Content-Security-Policy", csp)
        return response
