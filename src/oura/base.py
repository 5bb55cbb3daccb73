"""Domain records for the Ringlink sync engine.

These dataclasses are the shapes passed between the API client, the
connection store, the orchestrator, and the storage layer.  Storage
implementations translate them to and from rows; HTTP schemas live in
``src.models.oura``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Literal

from src.oura.errors import ValidationError

EventType = Literal["create", "update", "delete"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Opaque identifier such as ``install_3f0c...`` or ``sync_91ab...``."""
    return f"{prefix}_{uuid.uuid4()}"


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp from the provider; None if absent or invalid."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class InstallStatus(str, Enum):
    REGISTERED = "registered"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class SyncMode(str, Enum):
    BACKFILL = "backfill"
    DELTA = "delta"
    WEBHOOK = "webhook"


class SyncStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Installations and connections
# ---------------------------------------------------------------------------


@dataclass
class Installation:
    """A registered client app instance, authenticated by a hashed bearer token.

    Attributes:
        id:                     Opaque install id (``install_<uuid>``).
        token_hash:             SHA-256 hex of the install token.
        status:                 Lifecycle status.
        created_at:             Registration time.
        last_seen_at:           Last authenticated request.
        oauth_state:            Pending OAuth ``state`` nonce.
        oauth_state_expires_at: Expiry of that nonce.
        last_error:             Last error shown to the user.
        last_sync_at:           Last successful sync.
    """

    id: str
    token_hash: str
    status: InstallStatus
    created_at: datetime
    last_seen_at: datetime
    oauth_state: str | None = None
    oauth_state_expires_at: datetime | None = None
    last_error: str | None = None
    last_sync_at: datetime | None = None


# Columns routes and engine code may change through EngineStore.update_installation
INSTALLATION_MUTABLE_FIELDS = frozenset(
    {
        "status",
        "oauth_state",
        "oauth_state_expires_at",
        "last_error",
        "last_sync_at",
        "last_seen_at",
    }
)


@dataclass
class ConnectionRecord:
    """Stored OAuth connection; token fields hold ``nonce:ciphertext`` envelopes."""

    install_id: str
    oura_user_id: str
    access_token_encrypted: str = field(repr=False)
    refresh_token_encrypted: str = field(repr=False)
    connected_at: datetime
    scopes: str | None = None
    token_expires_at: datetime | None = None
    stale: bool = False


@dataclass(frozen=True)
class DecryptedConnection:
    """A connection with plaintext tokens, only ever held in memory."""

    install_id: str
    oura_user_id: str
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    scopes: str | None = None
    token_expires_at: datetime | None = None
    stale: bool = False


@dataclass
class TokenResponse:
    """Body of a successful ``/oauth/token`` call (code exchange or refresh)."""

    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_in: int | None = None
    token_type: str = "Bearer"
    scope: str | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any], fallback_refresh_token: str | None = None) -> TokenResponse:
        access = data.get("access_token")
        refresh = data.get("refresh_token") or fallback_refresh_token
        if not isinstance(access, str) or not access or not isinstance(refresh, str) or not refresh:
            raise ValidationError("Token response is missing access_token or refresh_token")
        expires_in = data.get("expires_in")
        return cls(
            access_token=access,
            refresh_token=refresh,
            expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else None,
            token_type=str(data.get("token_type") or "Bearer"),
            scope=data.get("scope") if isinstance(data.get("scope"), str) else None,
        )

    def expires_at(self, now: datetime | None = None) -> datetime | None:
        if not self.expires_in:
            return None
        return (now or utc_now()) + timedelta(seconds=self.expires_in)


# ---------------------------------------------------------------------------
# Sync runs and scores
# ---------------------------------------------------------------------------


@dataclass
class SyncRun:
    """Audit record of one orchestration call."""

    id: str
    install_id: str
    mode: SyncMode
    status: SyncStatus
    started_at: datetime
    finished_at: datetime | None = None
    records_written: int = 0
    error_summary: str | None = None


@dataclass
class DailyScore:
    """One ``oura_daily_scores`` row: three independently-nullable families."""

    install_id: str
    day: date
    updated_at: datetime
    sleep_score: float | None = None
    sleep_contributors_json: str | None = None
    sleep_timestamp: str | None = None
    readiness_score: float | None = None
    readiness_contributors_json: str | None = None
    readiness_timestamp: str | None = None
    activity_score: float | None = None
    activity_contributors_json: str | None = None
    activity_timestamp: str | None = None


# ---------------------------------------------------------------------------
# Webhook subscriptions
# ---------------------------------------------------------------------------


@dataclass
class WebhookSubscription:
    """A remote Oura webhook subscription, mirrored locally by the reconciler."""

    id: str
    event_type: str
    data_type: str
    callback_url: str
    expiration_time: datetime | None = None
    active: bool = True

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> WebhookSubscription:
        try:
            return cls(
                id=str(data["id"]),
                event_type=str(data["event_type"]),
                data_type=str(data["data_type"]),
                callback_url=str(data.get("callback_url") or ""),
                expiration_time=parse_timestamp(data.get("expiration_time")),
            )
        except (KeyError, TypeError) as exc:
            raise ValidationError(f"Malformed webhook subscription: {exc}") from exc
