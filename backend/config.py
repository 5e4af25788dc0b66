import logging
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

SANDBOX_AUTH_URL = "https://auth.truelayer-sandbox.com"
SANDBOX_DATA_URL = "https://api.truelayer-sandbox.com"
PROD_AUTH_URL = "https://auth.truelayer.com"
PROD_DATA_URL = "https://api.truelayer.com"


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./bank_sync.db"
    secret_key: str = "change-me"
    algorithm: str = "HS256"
    log_level: str = "info"

    # TrueLayer (Open Banking provider)
    truelayer_env: str = "sandbox"
    truelayer_client_id: str = ""
    truelayer_client_secret: str = ""
    truelayer_redirect_uri: str = "http://localhost:4000/api/banks/truelayer/callback"
    truelayer_scopes: str = "info accounts balance transactions"

    # Post-auth redirects
    frontend_url: str = "http://localhost:5173"
    frontend_redirect_path: str = "/wardeninsights"

    # Comma separated Fernet keys, newest first
    token_encryption_keys: str = ""

    # OAuth state store
    oauth_state_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    oauth_state_ttl_seconds: int = 600

    # Provider HTTP
    provider_timeout_seconds: float = 30.0
    max_transaction_pages: int = 50
    token_refresh_buffer_seconds: int = 60
    sync_timeout_seconds: float = 60.0

    # Storage retry
    db_retry_count: int = 2
    db_retry_delay_seconds: float = 0.5

    # Sync windows
    full_sync_days_back: int = 730
    quick_sync_limit: int = 30
    quick_sync_days_back: int = 60

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def is_sandbox(self) -> bool:
        return self.truelayer_env == "sandbox"

    @property
    def auth_base_url(self) -> str:
        return SANDBOX_AUTH_URL if self.is_sandbox else PROD_AUTH_URL

    @property
    def token_url(self) -> str:
        return f"{self.auth_base_url}/connect/token"

    @property
    def data_base_url(self) -> str:
        return SANDBOX_DATA_URL if self.is_sandbox else PROD_DATA_URL

    @property
    def frontend_redirect_url(self) -> str:
        return f"{self.frontend_url.rstrip('/')}{self.frontend_redirect_path}"

    @property
    def encryption_keys(self) -> List[str]:
        return [k.strip() for k in self.token_encryption_keys.split(",") if k.strip()]

    def missing_provider_settings(self) -> List[str]:
        missing = []
        if not self.truelayer_client_id:
            missing.append("TRUELAYER_CLIENT_ID")
        if not self.truelayer_client_secret:
            missing.append("TRUELAYER_CLIENT_SECRET")
        return missing

    @property
    def provider_configured(self) -> bool:
        missing = self.missing_provider_settings()
        if missing:
            logger.warning(
                f"TrueLayer config incomplete, bank connection features are disabled. "
                f"Missing: {', '.join(missing)}"
            )
            return False
        return True


@lru_cache()
def get_settings():
    return Settings()
