"""Oura webhook endpoints: verification handshake and signed deliveries.

Oura calls ``GET /v1/webhooks/oura`` once per subscription to verify the
callback, then ``POST``s each notification signed with HMAC-SHA256 over
``x-oura-timestamp + body``.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from src.dependencies import Services
from src.models.oura import ChallengeResponse
from src.oura.errors import AuthError, ValidationError
from src.oura.webhooks import SIGNATURE_HEADER, TIMESTAMP_HEADER

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("ringlink.webhooks")


@router.get("/oura", response_model=ChallengeResponse)
async def verify_oura_webhook(
    services: Services,
    verification_token: str | None = Query(default=None),
    challenge: str | None = Query(default=None),
) -> ChallengeResponse:
    try:
        echoed = services.ingestor.verify(verification_token, challenge)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return ChallengeResponse(challenge=echoed)


@router.post("/oura")
async def receive_oura_webhook(
    request: Request,
    services: Services,
    timestamp: str | None = Header(default=None, alias=TIMESTAMP_HEADER),
    signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
) -> PlainTextResponse:
    """Acknowledge a delivery: 200 once enqueued, 202 for an unknown user."""
    body = await request.body()
    try:
        outcome = await services.ingestor.ingest(timestamp, signature, body)
    except AuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    return PlainTextResponse("OK", status_code=outcome.status_code)
