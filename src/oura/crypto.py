"""Secret codec: token encryption at rest and webhook signature checks.

Tokens are sealed with AES-256-GCM under a pre-shared 32-byte key.  Each call
draws a fresh 96-bit nonce; the stored form is ``b64(nonce):b64(ciphertext)``
so decryption needs nothing but the key.

Webhook deliveries are signed by Oura with HMAC-SHA256 over
``timestamp + raw_body`` using the app's client secret, sent as uppercase hex.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.oura.errors import DecryptionFailed, InvalidKeyLength

logger = logging.getLogger("ringlink.oura.crypto")

KEY_BYTES = 32
NONCE_BYTES = 12


@dataclass(frozen=True)
class SecretEnvelope:
    """An encrypted secret: nonce plus AES-GCM ciphertext (tag appended)."""

    nonce: bytes
    ciphertext: bytes

    def encode(self) -> str:
        return (
            base64.b64encode(self.nonce).decode("ascii")
            + ":"
            + base64.b64encode(self.ciphertext).decode("ascii")
        )

    @classmethod
    def decode(cls, value: str) -> SecretEnvelope:
        nonce_b64, sep, cipher_b64 = (value or "").partition(":")
        if not sep or not nonce_b64 or not cipher_b64:
            raise DecryptionFailed("Invalid encrypted secret format")
        try:
            nonce = base64.b64decode(nonce_b64, validate=True)
            ciphertext = base64.b64decode(cipher_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionFailed("Invalid base64 in encrypted secret") from exc
        if len(nonce) != NONCE_BYTES:
            raise DecryptionFailed("Invalid nonce length in encrypted secret")
        return cls(nonce=nonce, ciphertext=ciphertext)


def load_key(base64_key: str) -> bytes:
    """Decode the configured key.

    Raises:
        InvalidKeyLength: If the value is not base64 of exactly 32 bytes.
    """
    try:
        key = base64.b64decode(base64_key or "", validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidKeyLength("TOKEN_ENCRYPTION_KEY must be base64 encoded 32-byte key") from exc
    if len(key) != KEY_BYTES:
        raise InvalidKeyLength(
            f"TOKEN_ENCRYPTION_KEY must be base64 encoded 32-byte key, got {len(key)} bytes"
        )
    return key


def generate_key() -> str:
    """Return a new base64-encoded 32-byte key for TOKEN_ENCRYPTION_KEY."""
    return base64.b64encode(secrets.token_bytes(KEY_BYTES)).decode("ascii")


def encrypt_secret(secret: str, key: bytes) -> str:
    """Seal ``secret`` and return the ``nonce:ciphertext`` envelope string."""
    if len(key) != KEY_BYTES:
        raise InvalidKeyLength(f"Encryption key must be {KEY_BYTES} bytes, got {len(key)}")
    nonce = secrets.token_bytes(NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(nonce, secret.encode("utf-8"), None)
    return SecretEnvelope(nonce=nonce, ciphertext=ciphertext).encode()


def decrypt_secret(envelope: str | SecretEnvelope, key: bytes) -> str:
    """Open an envelope produced by :func:`encrypt_secret`.

    Raises:
        DecryptionFailed: Malformed envelope, wrong key, or tampered ciphertext.
        InvalidKeyLength: Key is not 32 bytes.
    """
    if len(key) != KEY_BYTES:
        raise InvalidKeyLength(f"Encryption key must be {KEY_BYTES} bytes, got {len(key)}")
    sealed = envelope if isinstance(envelope, SecretEnvelope) else SecretEnvelope.decode(envelope)
    try:
        plaintext = AESGCM(key).decrypt(sealed.nonce, sealed.ciphertext, None)
    except InvalidTag as exc:
        logger.error("Token decryption failed: authentication tag mismatch")
        raise DecryptionFailed("Decryption failed: wrong key or tampered data") from exc
    return plaintext.decode("utf-8")


# ---------------------------------------------------------------------------
# Webhook signatures
# ---------------------------------------------------------------------------


def compute_webhook_signature(client_secret: str, timestamp: str, raw_body: bytes) -> str:
    """Uppercase hex HMAC-SHA256 of ``timestamp + raw_body``."""
    digest = hmac.new(
        client_secret.encode("utf-8"),
        timestamp.encode("utf-8") + raw_body,
        hashlib.sha256,
    ).hexdigest()
    return digest.upper()


def verify_webhook_signature(
    signature: str, client_secret: str, timestamp: str, raw_body: bytes
) -> bool:
    """Case-sensitive, constant-time comparison against the expected signature."""
    expected = compute_webhook_signature(client_secret, timestamp, raw_body)
    return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))


# ---------------------------------------------------------------------------
# Install tokens
# ---------------------------------------------------------------------------


def hash_install_token(token: str) -> str:
    """SHA-256 hex digest; the only form in which install tokens are stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_install_token(nbytes: int = 48) -> str:
    """URL-safe random bearer token handed to the app once at registration."""
    return secrets.token_urlsafe(nbytes)
