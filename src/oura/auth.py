"""Installation auth: bearer install tokens mapped to installation records.

Install tokens are issued once at device registration and only their SHA-256
hash is stored.  Every failure path raises the same ``AuthError`` message so
a caller cannot tell a malformed token from an unknown one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from src.oura.base import Installation, InstallStatus, new_id, utc_now
from src.oura.crypto import generate_install_token, hash_install_token
from src.oura.errors import AuthError
from src.oura.store import EngineStore

logger = logging.getLogger("ringlink.auth")

INVALID_TOKEN_DETAIL = "Missing or invalid bearer token"


@dataclass(frozen=True)
class AuthContext:
    """The installation a request was authenticated as."""

    installation: Installation

    @property
    def install_id(self) -> str:
        return self.installation.id


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class InstallationAuthenticator:
    def __init__(self, store: EngineStore) -> None:
        self._store = store

    async def authenticate(self, authorization: str | None) -> AuthContext:
        """Resolve an ``Authorization`` header to its installation.

        Raises:
            AuthError: For a missing or malformed header or an unknown token.
        """
        token = extract_bearer_token(authorization)
        if token is None:
            raise AuthError(INVALID_TOKEN_DETAIL)

        installation = await self._store.get_installation_by_token_hash(hash_install_token(token))
        if installation is None:
            logger.info("Rejected request with unknown install token")
            raise AuthError(INVALID_TOKEN_DETAIL)

        now = utc_now()
        await self._store.update_installation(installation.id, {"last_seen_at": now})
        installation.last_seen_at = now
        return AuthContext(installation=installation)


async def register_installation(store: EngineStore) -> tuple[str, str]:
    """Create a new installation and return ``(install_id, install_token)``.

    The plaintext token is returned exactly once; only its hash is persisted.
    """
    token = generate_install_token()
    now = utc_now()
    installation = Installation(
        id=new_id("install"),
        token_hash=hash_install_token(token),
        status=InstallStatus.REGISTERED,
        created_at=now,
        last_seen_at=now,
    )
    await store.create_installation(installation)
    logger.info("Registered installation %s", installation.id)
    return installation.id, token
