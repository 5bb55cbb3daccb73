"""Oura API v2 client.

Two clients share one transport:

``OuraAppClient``
    Calls authenticated as the application itself: the OAuth token endpoint
    (authorization-code and refresh-token grants), the personal-info lookup
    made right after the code exchange, and webhook subscription CRUD (which
    uses the ``x-client-id`` / ``x-client-secret`` header pair).

``OuraClient``
    Calls on behalf of one installation with its bearer token.  Every request
    goes through :meth:`OuraClient.request_json`, which refreshes the token
    once on a 401 and backs off on 429 / 5xx.

API base: https://api.ouraring.com

Endpoints used:
    /oauth/token                          token exchange and refresh
    /v2/usercollection/personal_info      Oura user id
    /v2/usercollection/{data_type}        paginated daily collections
    /v2/usercollection/{data_type}/{id}   single document
    /v2/webhook/subscription[/{id}]       webhook subscriptions
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence
from urllib.parse import quote, urlencode

import httpx

from src.oura.base import TokenResponse, WebhookSubscription
from src.oura.config_loader import RetryPolicy
from src.oura.errors import OuraHttpError, ValidationError

if TYPE_CHECKING:
    from src.oura.tokens import ConnectionStore

logger = logging.getLogger("ringlink.oura.client")

OURA_API_BASE = "https://api.ouraring.com"
OURA_AUTH_BASE = "https://cloud.ouraring.com"

_DEFAULT_TIMEOUT = httpx.Timeout(30.0)

Sleep = Callable[[float], Awaitable[Any]]


def _is_transient(status: int) -> bool:
    return status == 429 or status >= 500


async def _send(
    http_client: httpx.AsyncClient | None,
    method: str,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """Issue one request on the injected client, or on a short-lived one."""
    if http_client is not None:
        return await http_client.request(method, url, **kwargs)
    async with httpx.AsyncClient(timeout=_DEFAULT_TIMEOUT) as client:
        return await client.request(method, url, **kwargs)


def _decode_json(response: httpx.Response, what: str) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise ValidationError(f"{what} returned invalid JSON") from exc


def _raise_for_status(response: httpx.Response, message: str, *, token_refresh: bool = False) -> None:
    if response.is_success:
        return
    exc = OuraHttpError(message, response.status_code, response.text, token_refresh=token_refresh)
    logger.warning("%s: HTTP %d %s", message, exc.status, exc.body_excerpt)
    raise exc


class OuraAppClient:
    """Application-level Oura calls (client id / secret authenticated).

    Args:
        client_id:     OAuth2 client ID.
        client_secret: OAuth2 client secret; also keys webhook signatures.
        http_client:   Optional shared httpx client (tests pass a MockTransport).
        api_base:      API origin, overridable for tests.
        auth_base:     Origin of the user-facing authorize page.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        *,
        api_base: str = OURA_API_BASE,
        auth_base: str = OURA_AUTH_BASE,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client
        self._api_base = api_base.rstrip("/")
        self._auth_base = auth_base.rstrip("/")

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def build_authorize_url(
        self, state: str, redirect_uri: str, scopes: Sequence[str] = ("daily", "personal")
    ) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes),
            "state": state,
        }
        return f"{self._auth_base}/oauth/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        """Exchange an authorization code for an access / refresh token pair."""
        data = await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            "Failed to exchange authorization code",
        )
        return TokenResponse.from_json(data)

    async def refresh(self, refresh_token: str) -> TokenResponse:
        """Run the refresh-token grant.

        Failures are raised with ``token_refresh=True`` so that a rejected
        grant (``invalid_grant`` comes back as 400) is classified as an auth
        failure rather than a transient error.  If the provider does not
        rotate the refresh token, the current one is kept.
        """
        data = await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "Failed to refresh access token",
            token_refresh=True,
        )
        return TokenResponse.from_json(data, fallback_refresh_token=refresh_token)

    async def fetch_profile(self, access_token: str) -> str:
        """Return the Oura user id for ``access_token``."""
        response = await _send(
            self._http_client,
            "GET",
            f"{self._api_base}/v2/usercollection/personal_info",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        _raise_for_status(response, "Failed to fetch personal info")
        payload = _decode_json(response, "personal_info")
        user_id = None
        if isinstance(payload, dict):
            user_id = payload.get("id")
            nested = payload.get("data")
            if not user_id and isinstance(nested, dict):
                user_id = nested.get("id")
        if not user_id:
            raise ValidationError("Personal info response did not include id")
        return str(user_id)

    async def _token_request(
        self, form: dict[str, str], message: str, *, token_refresh: bool = False
    ) -> dict[str, Any]:
        response = await _send(
            self._http_client,
            "POST",
            f"{self._api_base}/oauth/token",
            data={**form, "client_id": self._client_id, "client_secret": self._client_secret},
        )
        _raise_for_status(response, message, token_refresh=token_refresh)
        payload = _decode_json(response, "Token endpoint")
        if not isinstance(payload, dict):
            raise ValidationError("Token endpoint returned a non-object body")
        return payload

    # ------------------------------------------------------------------
    # Webhook subscriptions
    # ------------------------------------------------------------------

    def _client_headers(self) -> dict[str, str]:
        return {"x-client-id": self._client_id, "x-client-secret": self._client_secret}

    def _subscription_url(self, subscription_id: str | None = None) -> str:
        url = f"{self._api_base}/v2/webhook/subscription"
        if subscription_id is not None:
            url += "/" + quote(subscription_id, safe="")
        return url

    async def list_subscriptions(self) -> list[WebhookSubscription]:
        response = await _send(
            self._http_client, "GET", self._subscription_url(), headers=self._client_headers()
        )
        _raise_for_status(response, "Failed to list webhook subscriptions")
        payload = _decode_json(response, "Webhook subscription list")
        if not isinstance(payload, list):
            return []

        subscriptions: list[WebhookSubscription] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            try:
                subscriptions.append(WebhookSubscription.from_json(item))
            except ValidationError as exc:
                logger.warning("Skipping malformed webhook subscription: %s", exc)
        return subscriptions

    async def create_subscription(
        self, event_type: str, data_type: str, callback_url: str, verification_token: str
    ) -> WebhookSubscription:
        response = await _send(
            self._http_client,
            "POST",
            self._subscription_url(),
            headers=self._client_headers(),
            json={
                "callback_url": callback_url,
                "verification_token": verification_token,
                "event_type": event_type,
                "data_type": data_type,
            },
        )
        _raise_for_status(response, "Failed to create webhook subscription")
        return self._subscription_from(response)

    async def update_subscription(
        self,
        subscription_id: str,
        event_type: str,
        data_type: str,
        callback_url: str,
        verification_token: str,
    ) -> WebhookSubscription:
        """PUT an existing subscription; Oura treats this as a renewal."""
        response = await _send(
            self._http_client,
            "PUT",
            self._subscription_url(subscription_id),
            headers=self._client_headers(),
            json={
                "callback_url": callback_url,
                "verification_token": verification_token,
                "event_type": event_type,
                "data_type": data_type,
            },
        )
        _raise_for_status(response, "Failed to update webhook subscription")
        return self._subscription_from(response)

    async def delete_subscription(self, subscription_id: str) -> None:
        """Delete a subscription; a 404 means it is already gone."""
        response = await _send(
            self._http_client,
            "DELETE",
            self._subscription_url(subscription_id),
            headers=self._client_headers(),
        )
        if response.status_code == 404:
            logger.info("Webhook subscription %s already deleted", subscription_id)
            return
        _raise_for_status(response, "Failed to delete webhook subscription")

    @staticmethod
    def _subscription_from(response: httpx.Response) -> WebhookSubscription:
        payload = _decode_json(response, "Webhook subscription")
        if not isinstance(payload, dict):
            raise ValidationError("Webhook subscription response is not an object")
        return WebhookSubscription.from_json(payload)


class OuraClient:
    """Per-installation Oura client with token refresh and backoff.

    Args:
        install_id:    Installation whose tokens are in use.
        access_token:  Current bearer token.
        refresh_token: Current refresh token.
        app_client:    Used for the refresh grant.
        connections:   Where a refreshed token pair is persisted.
        retry:         Backoff policy for 429 / 5xx.
        http_client:   Optional shared httpx client.
        sleep:         Awaitable delay in seconds; tests inject a no-op.
        api_base:      API origin, overridable for tests.
    """

    def __init__(
        self,
        install_id: str,
        access_token: str,
        refresh_token: str,
        app_client: OuraAppClient,
        connections: ConnectionStore,
        retry: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
        *,
        api_base: str = OURA_API_BASE,
    ) -> None:
        self._install_id = install_id
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._app_client = app_client
        self._connections = connections
        self._retry = retry or RetryPolicy()
        self._http_client = http_client
        self._sleep = sleep
        self._api_base = api_base.rstrip("/")

    async def request_json(
        self,
        path: str,
        method: str = "GET",
        params: dict[str, str] | None = None,
        body: Any = None,
    ) -> Any:
        """Send one logical request and return its decoded JSON body.

        The first 401 triggers a token refresh and one more attempt; a second
        401 is terminal.  429 and 5xx are retried up to ``retry.max_retries``
        extra times.  The two budgets are independent.

        Raises:
            OuraHttpError: On any terminal non-2xx response.
            ValidationError: If a 2xx body is not JSON.
        """
        attempt = 0
        has_refreshed = False
        url = f"{self._api_base}{path}"

        while True:
            headers = {"Authorization": f"Bearer {self._access_token}"}
            kwargs: dict[str, Any] = {"headers": headers, "params": params}
            if body is not None:
                kwargs["json"] = body

            response = await _send(self._http_client, method, url, **kwargs)
            status = response.status_code

            if status == 401 and not has_refreshed:
                logger.info("Oura returned 401 for install %s, refreshing token", self._install_id)
                await self._refresh_tokens()
                has_refreshed = True
                continue

            if _is_transient(status) and attempt < self._retry.max_retries:
                delay_ms = self._retry.backoff_ms(attempt)
                logger.warning(
                    "Oura %s %s returned %d, retry %d/%d in %dms",
                    method,
                    path,
                    status,
                    attempt + 1,
                    self._retry.max_retries,
                    delay_ms,
                )
                await self._sleep(delay_ms / 1000)
                attempt += 1
                continue

            _raise_for_status(response, f"Oura request failed: {path}")
            return _decode_json(response, path)

    async def _refresh_tokens(self) -> None:
        tokens = await self._app_client.refresh(self._refresh_token)
        # Persist before the retried call goes out.
        await self._connections.update_tokens(self._install_id, tokens)
        self._access_token = tokens.access_token
        self._refresh_token = tokens.refresh_token

    async def list_daily_collection(
        self, data_type: str, start: date, end: date
    ) -> list[dict[str, Any]]:
        """All documents of ``data_type`` with ``start <= day <= end``.

        Follows ``next_token`` until the provider stops returning one.  A page
        that is not an object, or whose ``data`` is not a list, contributes
        nothing.
        """
        results: list[dict[str, Any]] = []
        seen_tokens: set[str] = set()
        next_token: str | None = None

        while True:
            params = {"start_date": start.isoformat(), "end_date": end.isoformat()}
            if next_token:
                params["next_token"] = next_token

            page = await self.request_json(f"/v2/usercollection/{data_type}", params=params)
            if not isinstance(page, dict):
                logger.warning("Malformed %s page for install %s", data_type, self._install_id)
                break

            data = page.get("data")
            if isinstance(data, list):
                results.extend(doc for doc in data if isinstance(doc, dict))

            token = page.get("next_token")
            if not isinstance(token, str) or not token:
                break
            if token in seen_tokens:
                logger.warning("Oura repeated next_token for %s, stopping pagination", data_type)
                break
            seen_tokens.add(token)
            next_token = token

        logger.debug(
            "Fetched %d %s documents for install %s", len(results), data_type, self._install_id
        )
        return results

    async def fetch_one(self, data_type: str, object_id: str) -> dict[str, Any]:
        doc = await self.request_json(
            f"/v2/usercollection/{data_type}/{quote(object_id, safe='')}"
        )
        if not isinstance(doc, dict):
            raise ValidationError(f"Oura {data_type} document {object_id} is not an object")
        return doc
