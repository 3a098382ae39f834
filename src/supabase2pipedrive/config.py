"""Configuration management using pydantic-settings."""

from functools import lru_cache

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from supabase2pipedrive.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Pipedrive configuration
    pipedrive_api_token: str = Field(alias="PIPEDRIVE_API_TOKEN")
    pipedrive_api_url: str = Field(
        default="https://api.pipedrive.com/v1", alias="PIPEDRIVE_API_URL"
    )

    # Supabase configuration
    supabase_url: str = Field(alias="SUPABASE_URL")
    supabase_service_key: str = Field(alias="SUPABASE_SERVICE_KEY")

    # Retry / pagination tuning
    max_attempts: int = Field(default=3, ge=1, alias="SYNC_MAX_ATTEMPTS")
    initial_backoff_ms: int = Field(default=2000, ge=0, alias="SYNC_INITIAL_BACKOFF_MS")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, alias="SYNC_BACKOFF_MULTIPLIER")
    page_size: int = Field(default=100, ge=1, le=500, alias="SYNC_PAGE_SIZE")

    # Timeouts (seconds)
    http_timeout: float = Field(default=30.0, gt=0, alias="HTTP_TIMEOUT")
    pass_timeout: float = Field(default=1800.0, gt=0, alias="SYNC_PASS_TIMEOUT")
    run_timeout: float = Field(default=7200.0, gt=0, alias="SYNC_RUN_TIMEOUT")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    try:
        return Settings()
    except ValidationError as e:
        missing = [str(error["loc"][0]) for error in e.errors() if error["type"] == "missing"]
        if missing:
            raise ConfigurationError(f"Missing environment variables: {', '.join(missing)}") from e
        raise ConfigurationError(str(e)) from e
