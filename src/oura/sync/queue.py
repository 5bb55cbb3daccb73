"""Sync work queue: message shapes, dispatch, and an in-process channel.

Two message shapes travel on the queue.  ``SyncRangeMessage`` asks for a
range sync; ``WebhookEventMessage`` carries one webhook notification.  The
queue is at-least-once: a consumer acknowledges by returning normally and
any exception requests redelivery.

``InMemorySyncQueue`` is the channel the API process runs with: an
``asyncio.Queue`` drained by one consumer task, redelivering a failed message
up to ``max_attempts`` times before dropping it with an error log.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from src.oura.base import SyncMode
from src.oura.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger("ringlink.oura.queue")


class SyncRangeMessage(BaseModel):
    type: Literal["sync_range"] = "sync_range"
    install_id: str
    start_date: date
    end_date: date
    mode: SyncMode
    sync_run_id: str | None = None


class WebhookEventMessage(BaseModel):
    type: Literal["webhook_event"] = "webhook_event"
    install_id: str
    event_type: Literal["create", "update", "delete"]
    data_type: str
    object_id: str
    event_time: str | None = None


QueueMessage = Annotated[
    Union[SyncRangeMessage, WebhookEventMessage], Field(discriminator="type")
]

_message_adapter: TypeAdapter[QueueMessage] = TypeAdapter(QueueMessage)


def parse_message(payload: dict | str | bytes) -> SyncRangeMessage | WebhookEventMessage:
    """Decode a serialized message; raises ``pydantic.ValidationError``."""
    if isinstance(payload, (str, bytes)):
        return _message_adapter.validate_json(payload)
    return _message_adapter.validate_python(payload)


async def dispatch_message(
    orchestrator: SyncOrchestrator, message: SyncRangeMessage | WebhookEventMessage
) -> None:
    """Route one message to the orchestrator; exceptions propagate for redelivery."""
    if isinstance(message, SyncRangeMessage):
        await orchestrator.sync_range(
            message.install_id,
            message.start_date,
            message.end_date,
            message.mode,
            run_id=message.sync_run_id,
        )
    else:
        await orchestrator.process_webhook_event(
            message.install_id,
            message.event_type,
            message.data_type,
            message.object_id,
        )


class SyncQueue(ABC):
    """Producer side of the sync work queue."""

    @abstractmethod
    async def send(self, message: SyncRangeMessage | WebhookEventMessage) -> None: ...


class InMemorySyncQueue(SyncQueue):
    """At-least-once asyncio channel with bounded redelivery.

    Usage::

        queue = InMemorySyncQueue(orchestrator)
        queue.start()
        await queue.send(SyncRangeMessage(...))
        ...
        await queue.stop()
    """

    def __init__(self, orchestrator: SyncOrchestrator, max_attempts: int = 3) -> None:
        self._orchestrator = orchestrator
        self._max_attempts = max_attempts
        self._queue: asyncio.Queue[tuple[SyncRangeMessage | WebhookEventMessage, int]] = (
            asyncio.Queue()
        )
        self._consumer: asyncio.Task | None = None

    async def send(self, message: SyncRangeMessage | WebhookEventMessage) -> None:
        await self._queue.put((message, 1))
        logger.debug("Enqueued %s for install %s", message.type, message.install_id)

    def start(self) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="ringlink-sync-consumer")

    async def stop(self) -> None:
        if self._consumer is None:
            return
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None

    async def drain(self) -> None:
        """Wait until every queued message (and its redeliveries) is handled."""
        await self._queue.join()

    async def _consume(self) -> None:
        while True:
            message, attempt = await self._queue.get()
            try:
                await self._handle(message, attempt)
            finally:
                self._queue.task_done()

    async def _handle(self, message: SyncRangeMessage | WebhookEventMessage, attempt: int) -> None:
        try:
            await dispatch_message(self._orchestrator, message)
        except Exception:
            if attempt < self._max_attempts:
                logger.warning(
                    "Queue message %s for install %s failed (attempt %d/%d), redelivering",
                    message.type,
                    message.install_id,
                    attempt,
                    self._max_attempts,
                    exc_info=True,
                )
                self._queue.put_nowait((message, attempt + 1))
            else:
                logger.error(
                    "Queue message %s for install %s failed after %d attempts, dropping",
                    message.type,
                    message.install_id,
                    attempt,
                    exc_info=True,
                )
