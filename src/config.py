"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Ringlink"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Postgres ---
    database_url: str  # asyncpg DSN
    db_pool_min_size: int = 2
    db_pool_max_size: int = 20

    # --- Cloudflare R2 (raw Oura snapshots) ---
    r2_account_id: str
    r2_access_key_id: str
    r2_secret_access_key: str
    r2_bucket_name: str = "ringlink-oura-raw"

    # --- Oura ---
    oura_client_id: str
    oura_client_secret: str  # also keys webhook signatures
    oura_verification_token: str
    token_encryption_key: str  # base64 of exactly 32 bytes
    feature_oura_enabled: bool = True

    # --- Public URLs ---
    public_base_url: str  # where Oura reaches this service
    app_callback_url: str  # deep link the OAuth callback page redirects to

    # --- Rate Limiting ---
    rate_limit_per_minute: int = 60

    # --- Sync queue ---
    queue_max_attempts: int = 3

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def webhook_callback_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/v1/webhooks/oura"

    @property
    def oauth_redirect_uri(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/v1/oura/oauth/callback"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
