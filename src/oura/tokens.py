"""Connection store: per-installation OAuth state with tokens sealed at rest.

Callers only ever see :class:`DecryptedConnection`; ciphertext never leaves
this module, and plaintext never reaches the database or the logs.
"""

from __future__ import annotations

import logging

from src.oura.base import (
    ConnectionRecord,
    DecryptedConnection,
    InstallStatus,
    TokenResponse,
    utc_now,
)
from src.oura.crypto import decrypt_secret, encrypt_secret
from src.oura.store import EngineStore

logger = logging.getLogger("ringlink.oura.tokens")


class ConnectionStore:
    """CRUD over ``oura_connections`` built on the secret codec.

    Args:
        store: Relational store.
        key:   Decoded 32-byte token encryption key (see ``crypto.load_key``).
    """

    def __init__(self, store: EngineStore, key: bytes) -> None:
        self._store = store
        self._key = key

    async def get(self, install_id: str) -> DecryptedConnection | None:
        record = await self._store.get_connection(install_id)
        if record is None:
            return None
        return DecryptedConnection(
            install_id=record.install_id,
            oura_user_id=record.oura_user_id,
            access_token=decrypt_secret(record.access_token_encrypted, self._key),
            refresh_token=decrypt_secret(record.refresh_token_encrypted, self._key),
            scopes=record.scopes,
            token_expires_at=record.token_expires_at,
            stale=record.stale,
        )

    async def upsert(self, install_id: str, oura_user_id: str, tokens: TokenResponse) -> None:
        """Insert or replace the connection and mark the installation connected."""
        now = utc_now()
        await self._store.upsert_connection(
            ConnectionRecord(
                install_id=install_id,
                oura_user_id=oura_user_id,
                access_token_encrypted=encrypt_secret(tokens.access_token, self._key),
                refresh_token_encrypted=encrypt_secret(tokens.refresh_token, self._key),
                connected_at=now,
                scopes=tokens.scope,
                token_expires_at=tokens.expires_at(now),
                stale=False,
            )
        )
        await self._store.update_installation(
            install_id, {"status": InstallStatus.CONNECTED, "last_error": None}
        )
        logger.info("Stored Oura connection for install %s (oura user %s)", install_id, oura_user_id)

    async def update_tokens(self, install_id: str, tokens: TokenResponse) -> None:
        """Persist a refreshed token pair; clears the stale flag."""
        await self._store.update_connection_tokens(
            install_id,
            access_token_encrypted=encrypt_secret(tokens.access_token, self._key),
            refresh_token_encrypted=encrypt_secret(tokens.refresh_token, self._key),
            token_expires_at=tokens.expires_at(),
            scopes=tokens.scope,
        )
        logger.info("Rotated Oura tokens for install %s", install_id)

    async def mark_stale(self, install_id: str, reason: str) -> None:
        """Flag the grant as rejected and surface ``reason`` to the user."""
        await self._store.set_connection_stale(install_id)
        await self._store.update_installation(
            install_id, {"status": InstallStatus.ERROR, "last_error": reason}
        )
        logger.warning("Marked Oura connection stale for install %s", install_id)

    async def touch_sync_success(self, install_id: str) -> None:
        await self._store.update_installation(
            install_id,
            {
                "status": InstallStatus.CONNECTED,
                "last_sync_at": utc_now(),
                "last_error": None,
            },
        )
