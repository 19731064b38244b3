"""
marketfeed - Configuration Settings
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    """Settings loaded from environment variables (or a .env file)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # =========================
    # Application Settings
    # =========================
    APP_NAME: str = "marketfeed"
    APP_ENV: str = "development"
    DEBUG: bool = False

    # =========================
    # Data Providers - API Keys
    # =========================
    FINNHUB_API_KEY: str = ""
    ALPHA_VANTAGE_API_KEY: str = ""

    # Seconds before an HTTP request to a provider is abandoned
    PROVIDER_TIMEOUT_SECONDS: float = 30.0

    # =========================
    # Resilient Call Wrapper
    # =========================
    CACHE_TTL_MS: int = 5 * 60 * 1000
    RETRY_BACKOFF_BASE_MS: int = 1000
    RETRY_BACKOFF_MAX_MS: int = 30000
    PROVIDER_COOLDOWN_MS: int = 60000
    DEFAULT_MAX_RETRIES: int = 3

    # =========================
    # Source Aggregator
    # =========================
    BATCH_SIZE: int = 10
    BATCH_DELAY_SECONDS: float = 1.0
    SEARCH_SOURCE_LIMIT: int = 3
    SEARCH_RESULT_LIMIT: int = 20
    HEALTH_CHECK_STALE_SECONDS: int = 300

    # =========================
    # Maintenance Jobs
    # =========================
    ENABLE_MAINTENANCE_JOBS: bool = True
    SWEEP_INTERVAL_SECONDS: int = 60
    HEALTH_PROBE_INTERVAL_SECONDS: int = 300
    TIMEZONE: str = "UTC"

    # =========================
    # Logging
    # =========================
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("BATCH_SIZE", "SEARCH_SOURCE_LIMIT", "SEARCH_RESULT_LIMIT")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


# Create global settings instance
settings = Settings()
