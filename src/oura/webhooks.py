"""Webhook ingestor: Oura verification handshake and signed deliveries.

Deliveries are acknowledged quickly: the ingestor only authenticates the
request, resolves the installation, and enqueues a ``WebhookEventMessage``.
The orchestrator does the fetching later from the queue.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from src.oura.crypto import verify_webhook_signature
from src.oura.errors import AuthError, ValidationError
from src.oura.store import EngineStore
from src.oura.sync.queue import SyncQueue, WebhookEventMessage

logger = logging.getLogger("ringlink.webhooks")

TIMESTAMP_HEADER = "x-oura-timestamp"
SIGNATURE_HEADER = "x-oura-signature"


class IncomingWebhook(BaseModel):
    """Body of an Oura webhook delivery."""

    model_config = ConfigDict(coerce_numbers_to_str=True, extra="ignore")

    event_type: Literal["create", "update", "delete"]
    data_type: str = Field(min_length=1)
    object_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    event_time: str | None = None


@dataclass(frozen=True)
class IngestOutcome:
    """What happened to an authenticated delivery."""

    status: Literal["enqueued", "unknown_user"]
    install_id: str | None = None

    @property
    def status_code(self) -> int:
        return 200 if self.status == "enqueued" else 202


class WebhookIngestor:
    def __init__(
        self,
        store: EngineStore,
        queue: SyncQueue,
        client_secret: str,
        verification_token: str,
    ) -> None:
        self._store = store
        self._queue = queue
        self._client_secret = client_secret
        self._verification_token = verification_token

    def verify(self, verification_token: str | None, challenge: str | None) -> str:
        """Answer the subscription handshake by echoing ``challenge``.

        Raises:
            AuthError: Token mismatch or missing challenge.
        """
        if (
            not verification_token
            or not challenge
            or verification_token != self._verification_token
        ):
            raise AuthError("Invalid verification request")
        return challenge

    async def ingest(
        self, timestamp: str | None, signature: str | None, raw_body: bytes
    ) -> IngestOutcome:
        """Authenticate, decode, and enqueue one delivery.

        The signature is checked over the exact raw bytes before any parsing.

        Raises:
            AuthError: Missing signature headers or bad signature (401).
            ValidationError: Invalid JSON (``status_code`` 400) or missing
                required fields (``status_code`` 422).
        """
        if not timestamp or not signature:
            raise AuthError("Missing signature headers")
        if not verify_webhook_signature(signature, self._client_secret, timestamp, raw_body):
            logger.warning("Rejected Oura webhook with invalid signature")
            raise AuthError("Invalid webhook signature")

        try:
            body = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise ValidationError("Invalid webhook JSON", status_code=400) from exc

        try:
            payload = IncomingWebhook.model_validate(body)
        except PydanticValidationError as exc:
            raise ValidationError("Webhook payload missing required fields") from exc

        connection = await self._store.get_connection_by_oura_user(payload.user_id)
        if connection is None:
            logger.info(
                "Oura webhook %s/%s for unknown user, not enqueued",
                payload.event_type,
                payload.data_type,
            )
            return IngestOutcome(status="unknown_user")

        await self._queue.send(
            WebhookEventMessage(
                install_id=connection.install_id,
                event_type=payload.event_type,
                data_type=payload.data_type,
                object_id=payload.object_id,
                event_time=payload.event_time,
            )
        )
        logger.info(
            "Enqueued Oura webhook %s/%s for install %s",
            payload.event_type,
            payload.data_type,
            connection.install_id,
        )
        return IngestOutcome(status="enqueued", install_id=connection.install_id)
