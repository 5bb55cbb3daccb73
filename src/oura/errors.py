"""Exception taxonomy for the Ringlink sync engine.

    RinglinkError
    ├── AuthError          bearer token / OAuth state problems, never retried
    ├── OuraHttpError      non-2xx from the Oura API (status + raw body)
    ├── ValidationError    malformed provider document or webhook payload
    ├── StorageError       relational or blob store failure
    ├── InvalidKeyLength   token encryption key is not 32 bytes
    └── DecryptionFailed   malformed envelope or wrong key
"""

from __future__ import annotations

# Provider bodies are only ever logged through this excerpt.
LOG_BODY_EXCERPT = 200


class RinglinkError(Exception):
    """Base class for all engine errors."""


class AuthError(RinglinkError):
    """The caller could not be authenticated."""


class ValidationError(RinglinkError):
    """Input data failed validation.

    ``status_code`` is the HTTP status a route should answer with when the
    invalid data came straight from a request.
    """

    def __init__(self, message: str, status_code: int = 422) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(RinglinkError):
    """The relational or blob store failed."""


class InvalidKeyLength(RinglinkError):
    """The configured encryption key does not decode to 32 bytes."""


class DecryptionFailed(RinglinkError):
    """A stored secret could not be decrypted."""


class OuraHttpError(RinglinkError):
    """A terminal non-2xx response from the Oura API.

    Attributes:
        status:        HTTP status code.
        response_body: Raw response text (never contains our own tokens).
        token_refresh: True if the failure came from the refresh-token grant.
    """

    def __init__(
        self,
        message: str,
        status: int,
        response_body: str = "",
        *,
        token_refresh: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.response_body = response_body
        self.token_refresh = token_refresh

    @property
    def is_auth_failure(self) -> bool:
        """True when the grant itself was rejected and the user must reconnect."""
        if self.status in (401, 403):
            return True
        # invalid_grant and friends come back as 400 from the token endpoint
        return self.token_refresh and 400 <= self.status < 500 and self.status != 429

    @property
    def body_excerpt(self) -> str:
        return self.response_body[:LOG_BODY_EXCERPT]

    def summary(self) -> str:
        body = f" ({self.response_body})" if self.response_body else ""
        return f"{self.message}: HTTP {self.status}{body}"

    def __str__(self) -> str:
        return f"{self.message}: HTTP {self.status}"


def describe_error(exc: BaseException) -> str:
    """Human-readable summary stored on sync runs and installations."""
    if isinstance(exc, OuraHttpError):
        return exc.summary()
    return str(exc) or exc.__class__.__name__
