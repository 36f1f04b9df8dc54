"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. Provider clients never read
settings themselves: the wiring layer turns these values into
``PlatformConfig`` objects when a client is constructed.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Database - defaults to relative path for Docker, override via env for local dev
    database_url: str = "sqlite:///./data/deliverysync.db"
    # Log every SQL statement
    database_echo: bool = False
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True
    webhook_rate_limit: str = "600/minute"

    # ==========================================================================
    # Inbound webhooks
    # ==========================================================================
    # Public base URL the marketplaces call back into; webhook URLs stored on
    # integration records are derived from it.
    public_base_url: str = "http://localhost:8000"
    webhook_path_prefix: str = ""

    # ==========================================================================
    # Webhook processing queue
    # ==========================================================================
    webhook_max_retries: int = 5
    webhook_retry_base_seconds: int = 60
    webhook_retry_max_seconds: int = 3600  # 1 hour cap
    webhook_claim_lease_seconds: int = 300
    webhook_batch_size: int = 50
    webhook_retention_days: int = 7

    # ==========================================================================
    # Delivery platform APIs
    # ==========================================================================
    platform_request_timeout_seconds: float = 30.0

    uber_eats_auth_url: str = "https://login.uber.com/oauth/v2"
    uber_eats_api_url: str = "https://api.uber.com/v1/eats"

    deliveroo_auth_url: str = "https://api.deliveroo.com/oauth"
    deliveroo_api_url: str = "https://api.deliveroo.com/v1"
    deliveroo_currency: str = "GBP"

    just_eat_api_url: str = "https://partner-api.just-eat.co.uk/v1"

    # Reuse provider clients (and their OAuth tokens) across requests
    delivery_client_cache_enabled: bool = False

    # ==========================================================================
    # External jobs (connectivity test, batch menu sync)
    # ==========================================================================
    jobs_base_url: Optional[str] = None
    jobs_service_key: str = ""
    jobs_timeout_seconds: float = 60.0

    @field_validator("public_base_url", "jobs_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        return v.rstrip("/") if v else v

    @field_validator("webhook_max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("WEBHOOK_MAX_RETRIES must be at least 1")
        return v

    @property
    def webhook_base_url(self) -> str:
        """Base URL that ``/<provider>-webhook`` paths are appended to."""
        return f"{self.public_base_url}{self.webhook_path_prefix}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
