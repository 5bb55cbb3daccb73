"""Device registration: the only public, always-enabled route."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from src.dependencies import Services
from src.models.oura import RegisterResponse
from src.oura.auth import register_installation

router = APIRouter(prefix="/device", tags=["device"])


@router.post("/register", response_model=RegisterResponse, status_code=201)
async def register_device(services: Services) -> Any:
    """Issue a new installation id and install token.

    The token is shown only in this response; the app must keep it.
    """
    install_id, install_token = await register_installation(services.store)
    return RegisterResponse(install_id=install_id, install_token=install_token)
