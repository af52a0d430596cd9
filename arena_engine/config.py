"""
Configuration management for the Arena engine.

Uses pydantic-settings for type-safe environment variable handling.
Backend keys are loaded from environment variables only - never from files in repo.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppEnvironment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All sensitive values use SecretStr to prevent accidental logging.
    """

    model_config = SettingsConfigDict(
        env_prefix="ARENA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    env: AppEnvironment = Field(
        default=AppEnvironment.DEVELOPMENT,
        description="Application environment",
    )

    # Server configuration
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8766, ge=1024, le=65535, description="Server port")

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_json: bool = Field(
        default=False,
        description="Emit JSON formatted log lines",
    )

    # Backend record store (PostgREST + edge functions)
    supabase_url: str = Field(
        default="",
        alias="SUPABASE_URL",
        description="Backend project URL (serves /rest/v1 and /functions/v1)",
    )
    supabase_key: SecretStr | None = Field(
        default=None,
        alias="SUPABASE_ANON_KEY",
        description="Backend API key",
    )
    user_id: str | None = Field(
        default=None,
        alias="ARENA_USER_ID",
        description="Ledger user whose accounts this engine serves",
    )
    backend_request_timeout: float = Field(
        default=10.0,
        alias="BACKEND_REQUEST_TIMEOUT_S",
        description="Backend request timeout in seconds",
        ge=1,
        le=120,
    )
    backend_max_retries: int = Field(
        default=2,
        alias="BACKEND_MAX_RETRIES",
        description="Maximum retry attempts for backend requests",
        ge=0,
        le=10,
    )
    backend_rate_limit_rps: float = Field(
        default=5.0,
        alias="BACKEND_RATE_LIMIT_RPS",
        description="Backend rate limit (requests per second)",
        gt=0,
        le=100,
    )
    backend_rate_limit_burst: int = Field(
        default=10,
        alias="BACKEND_RATE_LIMIT_BURST",
        description="Backend rate limit burst allowance",
        ge=1,
        le=100,
    )

    # Quote sources
    live_quote_url: str | None = Field(
        default=None,
        alias="LIVE_QUOTE_URL",
        description="Live crypto quote endpoint (CoinMarketCap-compatible quotes/latest)",
    )
    live_quote_api_key: SecretStr | None = Field(
        default=None,
        alias="LIVE_QUOTE_API_KEY",
        description="API key for the live quote endpoint",
    )
    live_quote_min_gap_s: float = Field(
        default=60.0,
        alias="LIVE_QUOTE_MIN_GAP_S",
        description="Minimum seconds between live quote fetches (provider rate limit)",
        ge=0,
        le=3600,
    )
    snapshot_min_gap_s: float = Field(
        default=1.0,
        alias="SNAPSHOT_MIN_GAP_S",
        description="Minimum seconds between backend price snapshot reads per symbol",
        ge=0,
        le=60,
    )
    quote_poll_interval_s: float = Field(
        default=1.0,
        alias="QUOTE_POLL_INTERVAL_S",
        description="Poll cadence for realtime bar and quote subscriptions",
        ge=0.1,
        le=60,
    )
    synthetic_seed: int | None = Field(
        default=None,
        alias="SYNTHETIC_SEED",
        description="Seed for the synthetic price generator (None = random)",
    )

    # History
    history_max_bars: int = Field(
        default=500,
        alias="HISTORY_MAX_BARS",
        description="Cap on synthetic fallback bars per history request",
        ge=1,
        le=5000,
    )
    history_store_limit: int = Field(
        default=1000,
        alias="HISTORY_STORE_LIMIT",
        description="Maximum rows read from the backend bar store per request",
        ge=1,
        le=10000,
    )

    # Account defaults
    default_balance: float = Field(
        default=100000.0,
        alias="DEFAULT_BALANCE",
        description="Balance reported when the backend account is unavailable",
        gt=0,
    )
    margin_level_sentinel: float = Field(
        default=100.0,
        alias="MARGIN_LEVEL_SENTINEL",
        description="Margin level reported when no margin is in use",
    )
    default_leverage: float = Field(
        default=1.0,
        alias="DEFAULT_LEVERAGE",
        description="Leverage used for margin when a position row has none",
        gt=0,
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @field_validator("supabase_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def has_backend_credentials(self) -> bool:
        """Check if the backend URL and key are configured."""
        return bool(self.supabase_url) and self.supabase_key is not None

    @property
    def has_live_quotes(self) -> bool:
        """Check if a live quote endpoint is configured."""
        return bool(self.live_quote_url)

    def get_redacted_config(self) -> dict[str, str | int | bool]:
        """
        Get configuration dict with sensitive values redacted.
        Safe for logging and API responses.
        """
        return {
            "env": self.env.value,
            "host": self.host,
            "port": self.port,
            "log_level": self.log_level,
            "backend_configured": self.has_backend_credentials,
            "backend_url": self.supabase_url,
            "live_quotes_configured": self.has_live_quotes,
            "user_configured": self.user_id is not None,
        }


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure single instance throughout application.
    """
    return Settings()


def get_settings_dep() -> Settings:
    """
    Dependency for FastAPI routes to get settings.
    Allows for easy dependency override in tests.
    """
    return get_settings()
