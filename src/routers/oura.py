"""Oura connection endpoints: OAuth connect flow, status, scores, manual sync, disconnect."""

from __future__ import annotations

import json
import logging
from datetime import date, timedelta
from typing import Any

import httpx
from fastapi import APIRouter, Body, HTTPException, Query, Response
from fastapi.responses import HTMLResponse

from src.dependencies import CurrentInstall, Services
from src.models.base import ErrorDetail
from src.models.oura import (
    ConnectionStatus,
    ConnectUrlResponse,
    DailyScoreRead,
    ScoresResponse,
    SyncAccepted,
    SyncRequest,
)
from src.oura.base import InstallStatus, SyncMode, new_id, utc_now
from src.oura.errors import describe_error
from src.oura.store import snapshot_prefix
from src.oura.sync.queue import SyncRangeMessage

router = APIRouter(prefix="/oura", tags=["oura"], responses={401: {"model": ErrorDetail}})
logger = logging.getLogger("ringlink.oura.routes")

_CALLBACK_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8" /><meta name="viewport" content="width=device-width, initial-scale=1" /></head>
<body>
  <p>Returning to app&hellip;</p>
  <script>window.location.href = {target};</script>
</body>
</html>"""


def _callback_redirect(base_url: str, **params: str) -> HTMLResponse:
    """HTML page that sends the browser back to the app with ``params``."""
    url = str(httpx.URL(base_url).copy_merge_params(params))
    # Keep the URL inert inside the inline script
    target = json.dumps(url).replace("<", "\\u003c")
    return HTMLResponse(_CALLBACK_PAGE.format(target=target))


def _default_range(services: Services) -> tuple[date, date]:
    today = utc_now().date()
    return today - timedelta(days=services.config.default_window_days), today


# ---------- OAuth ----------

@router.get("/connect-url", response_model=ConnectUrlResponse)
async def get_connect_url(auth: CurrentInstall, services: Services) -> Any:
    """Start the OAuth flow: store a fresh state nonce and return the authorize URL."""
    state = new_id("state")
    expires_at = utc_now() + timedelta(minutes=services.config.oauth.state_ttl_minutes)
    await services.store.update_installation(
        auth.install_id,
        {
            "oauth_state": state,
            "oauth_state_expires_at": expires_at,
            "status": InstallStatus.CONNECTING,
            "last_error": None,
        },
    )
    url = services.app_client.build_authorize_url(
        state, services.settings.oauth_redirect_uri, services.config.oauth.scopes
    )
    return ConnectUrlResponse(url=url, state=state)


@router.get("/oauth/callback", response_class=HTMLResponse)
async def oauth_callback(
    services: Services,
    state: str | None = Query(default=None),
    code: str | None = Query(default=None),
    error: str | None = Query(default=None),
) -> HTMLResponse:
    """Finish the OAuth flow and bounce the browser back to the app."""
    store = services.store
    app_url = services.settings.app_callback_url

    if not state:
        return _callback_redirect(app_url, status="error", reason="missing_state")

    installation = await store.get_installation_by_oauth_state(state)
    if installation is None:
        return _callback_redirect(app_url, status="error", reason="unknown_state")

    cleared = {"oauth_state": None, "oauth_state_expires_at": None}
    expires_at = installation.oauth_state_expires_at
    if expires_at is None or expires_at < utc_now():
        await store.update_installation(
            installation.id,
            {**cleared, "status": InstallStatus.ERROR, "last_error": "OAuth state expired"},
        )
        return _callback_redirect(app_url, status="error", reason="state_expired")

    if error:
        await store.update_installation(
            installation.id,
            {**cleared, "status": InstallStatus.ERROR, "last_error": f"OAuth error: {error}"},
        )
        return _callback_redirect(app_url, status="error", reason=error)

    if not code:
        return _callback_redirect(app_url, status="error", reason="missing_code")

    try:
        tokens = await services.app_client.exchange_code(code, services.settings.oauth_redirect_uri)
        oura_user_id = await services.app_client.fetch_profile(tokens.access_token)
        await services.connections.upsert(installation.id, oura_user_id, tokens)
        await store.update_installation(
            installation.id,
            {
                **cleared,
                "status": InstallStatus.CONNECTED,
                "last_error": None,
                "last_seen_at": utc_now(),
            },
        )

        try:
            report = await services.reconciler.ensure()
            if not report.ok:
                logger.warning("Webhook ensure after connect had errors: %s", report.errors)
        except Exception:
            logger.exception("Webhook ensure after connect failed")

        await services.queue.send(
            SyncRangeMessage(
                install_id=installation.id,
                start_date=services.config.backfill_start,
                end_date=utc_now().date(),
                mode=SyncMode.BACKFILL,
            )
        )
    except Exception as exc:
        logger.error("OAuth callback failed for install %s: %s", installation.id, exc)
        await store.update_installation(
            installation.id,
            {**cleared, "status": InstallStatus.ERROR, "last_error": describe_error(exc)},
        )
        return _callback_redirect(app_url, status="error", reason="oauth_exchange_failed")

    logger.info("Install %s connected to Oura, backfill enqueued", installation.id)
    return _callback_redirect(app_url, status="success", install_id=installation.id)


# ---------- Status / scores ----------

@router.get("/status", response_model=ConnectionStatus)
async def get_status(auth: CurrentInstall, services: Services) -> Any:
    installation = auth.installation
    connection = await services.store.get_connection(auth.install_id)

    connected = connection is not None
    stale = bool(connection and connection.stale)
    if not connected:
        status = "not_connected"
    else:
        status = "error" if stale else "connected"

    return ConnectionStatus(
        connected=connected,
        stale=stale,
        status=status,
        connected_at=connection.connected_at if connection else None,
        last_sync_at=installation.last_sync_at,
        last_error=installation.last_error,
    )


@router.get("/scores", response_model=ScoresResponse)
async def get_scores(
    auth: CurrentInstall,
    services: Services,
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
) -> Any:
    """Daily scores for ``start_date..end_date`` (default: the last 30 days)."""
    default_start, default_end = _default_range(services)
    start = start_date or default_start
    end = end_date or default_end
    if start > end:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")

    rows = await services.store.list_daily_scores(auth.install_id, start, end)
    return ScoresResponse(data=[DailyScoreRead.from_score(row) for row in rows])


# ---------- Manual sync ----------

@router.post("/sync", response_model=SyncAccepted, status_code=202)
async def trigger_sync(
    auth: CurrentInstall,
    services: Services,
    body: SyncRequest | None = Body(default=None),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
) -> Any:
    """Enqueue a delta sync; body fields win over query parameters."""
    default_start, default_end = _default_range(services)
    start = (body.start_date if body else None) or start_date or default_start
    end = (body.end_date if body else None) or end_date or default_end
    if start > end:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")

    await services.queue.send(
        SyncRangeMessage(
            install_id=auth.install_id,
            start_date=start,
            end_date=end,
            mode=SyncMode.DELTA,
        )
    )
    logger.info("Manual sync enqueued for install %s (%s..%s)", auth.install_id, start, end)
    return SyncAccepted(start_date=start, end_date=end)


# ---------- Disconnect ----------

@router.delete("/connection", status_code=204)
async def delete_connection(auth: CurrentInstall, services: Services) -> Response:
    """Forget the Oura connection and everything synced through it."""
    store = services.store
    install_id = auth.install_id

    await store.delete_connection(install_id)
    await store.delete_daily_scores(install_id)
    await store.delete_sync_runs(install_id)
    await store.update_installation(
        install_id,
        {
            "status": InstallStatus.REGISTERED,
            "oauth_state": None,
            "oauth_state_expires_at": None,
            "last_error": None,
            "last_sync_at": None,
        },
    )
    await services.snapshots.delete_prefix(snapshot_prefix(install_id))

    if await store.count_connections() == 0:
        try:
            await services.reconciler.delete_all()
        except Exception:
            # Subscriptions stay mirrored; maintenance keeps them consistent
            logger.exception("Webhook subscription teardown failed")

    logger.info("Install %s disconnected from Oura", install_id)
    return Response(status_code=204)
