"""Pydantic request/response schemas for the device, Oura, and health routes."""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any, Literal

from pydantic import Field

from src.models.base import RinglinkBase
from src.oura.base import DailyScore

logger = logging.getLogger("ringlink.models")


# ---------- Device ----------

class RegisterResponse(RinglinkBase):
    install_id: str
    install_token: str


# ---------- OAuth / connection ----------

class ConnectUrlResponse(RinglinkBase):
    url: str
    state: str


class ConnectionStatus(RinglinkBase):
    connected: bool
    stale: bool
    status: Literal["connected", "error", "not_connected"]
    connected_at: datetime | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None


# ---------- Scores ----------

def _parse_contributors(value: str | None) -> dict[str, Any] | None:
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except ValueError:
        logger.warning("Stored contributors JSON is not decodable")
        return None
    return parsed if isinstance(parsed, dict) else None


class DailyScoreRead(RinglinkBase):
    day: date
    sleep_score: float | None = None
    readiness_score: float | None = None
    activity_score: float | None = None
    sleep_contributors: dict[str, Any] | None = None
    readiness_contributors: dict[str, Any] | None = None
    activity_contributors: dict[str, Any] | None = None
    sleep_timestamp: str | None = None
    readiness_timestamp: str | None = None
    activity_timestamp: str | None = None
    updated_at: datetime

    @classmethod
    def from_score(cls, row: DailyScore) -> DailyScoreRead:
        return cls(
            day=row.day,
            sleep_score=row.sleep_score,
            readiness_score=row.readiness_score,
            activity_score=row.activity_score,
            sleep_contributors=_parse_contributors(row.sleep_contributors_json),
            readiness_contributors=_parse_contributors(row.readiness_contributors_json),
            activity_contributors=_parse_contributors(row.activity_contributors_json),
            sleep_timestamp=row.sleep_timestamp,
            readiness_timestamp=row.readiness_timestamp,
            activity_timestamp=row.activity_timestamp,
            updated_at=row.updated_at,
        )


class ScoresResponse(RinglinkBase):
    data: list[DailyScoreRead] = Field(default_factory=list)


# ---------- Manual sync ----------

class SyncRequest(RinglinkBase):
    start_date: date | None = None
    end_date: date | None = None


class SyncAccepted(RinglinkBase):
    accepted: bool = True
    start_date: date
    end_date: date


# ---------- Webhooks ----------

class ChallengeResponse(RinglinkBase):
    challenge: str


# ---------- Health ----------

class HealthResponse(RinglinkBase):
    status: Literal["healthy", "degraded"]
    version: str
    environment: str
    database: Literal["connected", "unreachable"]
    timestamp: datetime
