"""Cloudflare R2 (S3-compatible) store for raw Oura snapshots."""

from __future__ import annotations

import asyncio
import logging

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from src.config import Settings, get_settings
from src.oura.errors import StorageError
from src.oura.store import SnapshotStore

logger = logging.getLogger("ringlink.r2")

# S3 DeleteObjects accepts at most 1000 keys per call
_DELETE_BATCH = 1000

# Reusable client, created lazily
_client: "boto3.client" | None = None


def _get_client(settings: Settings | None = None) -> "boto3.client":
    global _client
    if _client is not None:
        return _client

    s = settings or get_settings()
    _client = boto3.client(
        "s3",
        endpoint_url=f"https://{s.r2_account_id}.r2.cloudflarestorage.com",
        aws_access_key_id=s.r2_access_key_id,
        aws_secret_access_key=s.r2_secret_access_key,
        config=BotoConfig(
            signature_version="s3v4",
            retries={"max_attempts": 3, "mode": "standard"},
        ),
        region_name="auto",
    )
    return _client


class R2SnapshotStore(SnapshotStore):
    """``SnapshotStore`` over an R2 bucket.

    boto3 is synchronous, so every call runs in a worker thread.
    """

    def __init__(self, client: "boto3.client", bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> R2SnapshotStore:
        s = settings or get_settings()
        return cls(_get_client(s), s.r2_bucket_name)

    async def put(self, key: str, body: bytes, content_type: str = "application/json") -> None:
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("R2 put failed for key=%s: %s", key, exc)
            raise StorageError(f"Snapshot write failed: {key}") from exc

    async def delete_prefix(self, prefix: str) -> int:
        try:
            return await asyncio.to_thread(self._delete_prefix_sync, prefix)
        except (BotoCoreError, ClientError) as exc:
            logger.error("R2 delete failed for prefix=%s: %s", prefix, exc)
            raise StorageError(f"Snapshot delete failed: {prefix}") from exc

    def _delete_prefix_sync(self, prefix: str) -> int:
        paginator = self._client.get_paginator("list_objects_v2")
        deleted = 0
        batch: list[dict[str, str]] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                batch.append({"Key": obj["Key"]})
                if len(batch) == _DELETE_BATCH:
                    deleted += self._delete_batch(batch)
                    batch = []
        if batch:
            deleted += self._delete_batch(batch)
        logger.info("Deleted %d R2 objects under prefix=%s", deleted, prefix)
        return deleted

    def _delete_batch(self, batch: list[dict[str, str]]) -> int:
        self._client.delete_objects(
            Bucket=self._bucket, Delete={"Objects": batch, "Quiet": True}
        )
        return len(batch)
