"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from src.oura.auth import AuthContext
from src.oura.errors import AuthError
from src.services.engine import EngineServices


def get_services(request: Request) -> EngineServices:
    """Return the engine built by the app lifespan (``app.state.services``)."""
    services: EngineServices | None = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Engine services not initialized")
    return services


async def get_current_install(
    request: Request,
    services: Annotated[EngineServices, Depends(get_services)],
) -> AuthContext:
    """Authenticate the request's install token.

    Every failure answers with the same 401 detail.
    """
    try:
        return await services.authenticator.authenticate(request.headers.get("Authorization"))
    except AuthError as exc:
        raise HTTPException(
            status_code=401,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


# Annotated shortcuts for route signatures
Services = Annotated[EngineServices, Depends(get_services)]
CurrentInstall = Annotated[AuthContext, Depends(get_current_install)]
