"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = Field(..., description="Async database URL (postgresql+asyncpg://...)")
    database_pool_size: int = Field(default=20, description="Database connection pool size")
    database_max_overflow: int = Field(default=50, description="Max database connection overflow")
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="commission-engine", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_workers: int = Field(default=4, description="Number of API workers")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="CORS allowed origins (comma-separated)"
    )

    # Security
    api_key_header: str = Field(default="X-API-Key", description="Gateway API key header name")
    gateway_api_key: SecretStr = Field(..., description="Shared secret for payment gateway callbacks")
    user_id_header: str = Field(
        default="X-User-Id", description="Header carrying the authenticated user id"
    )
    withdrawal_otp_code: SecretStr = Field(
        ..., description="Out-of-band verification code for privileged withdrawal actions"
    )
    admin_roles: str = Field(
        default="admin,super_admin,finance_admin",
        description="Roles allowed to run privileged actions (comma-separated)",
    )

    # Creator commission tiers
    creator_base_rate_bps: int = Field(default=800, description="Creator base rate (basis points)")
    creator_bonus_rate_bps: int = Field(default=1200, description="Creator bonus rate (basis points)")
    creator_bonus_threshold: int = Field(
        default=500, description="Lifetime paid users needed for the creator bonus rate"
    )

    # CMO commission
    cmo_base_rate_bps: int = Field(default=800, description="CMO base rate (basis points)")
    cmo_bonus_rate_bps: int = Field(default=500, description="CMO bonus rate (basis points)")
    cmo_bonus_threshold: int = Field(
        default=280, description="Year-to-date subordinate paid users needed for the CMO bonus"
    )

    # Withdrawals
    minimum_payout_cents: int = Field(
        default=1_000_000, description="Minimum withdrawal amount (LKR 10,000 in cents)"
    )
    withdrawal_fee_bps: int = Field(default=300, description="Withdrawal fee (basis points)")

    # Reconciliation
    reconciliation_hour: int = Field(default=2, description="Hour of day for scheduled reconciliation")

    # Notifications
    telegram_bot_token: SecretStr | None = Field(default=None, description="Alert bot token")
    telegram_chat_id: str | None = Field(default=None, description="Alert chat id")
    telegram_api_base: str = Field(
        default="https://api.telegram.org", description="Alert bot API base URL"
    )
    alert_timeout_seconds: float = Field(default=10.0, description="Alert delivery timeout")
    outbox_batch_size: int = Field(default=100, description="Outbox events per publish batch")
    outbox_poll_interval: float = Field(default=1.0, description="Outbox poll interval (seconds)")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator(
        "creator_base_rate_bps",
        "creator_bonus_rate_bps",
        "cmo_base_rate_bps",
        "cmo_bonus_rate_bps",
        "withdrawal_fee_bps",
    )
    @classmethod
    def validate_bps(cls, v: int) -> int:
        """Rates are basis points between 0 and 10000."""
        if not 0 <= v <= 10_000:
            raise ValueError("Rate must be between 0 and 10000 basis points")
        return v

    @field_validator("minimum_payout_cents")
    @classmethod
    def validate_minimum_payout(cls, v: int) -> int:
        """Minimum payout must be positive."""
        if v <= 0:
            raise ValueError("Minimum payout must be positive")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_admin_roles(self) -> frozenset[str]:
        """Parse privileged roles from comma-separated string."""
        return frozenset(role.strip() for role in self.admin_roles.split(",") if role.strip())

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def alerts_enabled(self) -> bool:
        """Check if the alert channel is configured."""
        return self.telegram_bot_token is not None and bool(self.telegram_chat_id)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
