"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # PayNecta Configuration
    paynecta_base_url: str = Field(
        default="https://paynecta.co.ke/api/v1", description="PayNecta API base URL"
    )
    paynecta_api_key: str = Field(..., description="PayNecta API key (X-API-Key header)")
    paynecta_email: str = Field(..., description="PayNecta account email (X-User-Email header)")
    paynecta_code: str = Field(..., description="PayNecta payment link code (PNT_...)")
    callback_url: str = Field(default="", description="Public URL of the /callback webhook")
    gateway_initiate_timeout: float = Field(
        default=30.0, description="Timeout for STK push initiation (seconds)"
    )
    gateway_status_timeout: float = Field(
        default=10.0, description="Timeout for payment status queries (seconds)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./swiftloan.db", description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="swiftloan-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=3000, description="API port")
    allowed_origins: str = Field(
        default="https://techspacefinance.onrender.com,http://localhost:5500,http://127.0.0.1:5500",
        description="CORS allowed origins (comma-separated)"
    )

    # Loan product
    reference_prefix: str = Field(default="ORDER", description="Prefix of service fee references")
    default_loan_amount: int = Field(
        default=50000, description="Loan credited when the request carries no loan amount (KES)"
    )
    minimum_withdrawal: int = Field(default=100, description="Smallest withdrawal allowed (KES)")

    # Settlement polling
    poll_interval_seconds: float = Field(
        default=15.0, description="Delay between gateway status polls (seconds)"
    )
    poll_max_attempts: int = Field(
        default=40, description="Status polls before a payment is marked timed_out"
    )
    poll_backoff_max_seconds: float = Field(
        default=300.0, description="Ceiling for the backoff after failed polls (seconds)"
    )

    # Loan release
    loan_release_delay_hours: float = Field(
        default=24.0, description="Hours between settlement and loan release"
    )
    release_check_interval_seconds: float = Field(
        default=300.0, description="How often the release worker looks for due loans"
    )
    enable_release_worker: bool = Field(
        default=True, description="Run the loan release loop inside the API process"
    )

    # Admin
    admin_token: str = Field(
        default="", description="Shared secret for /admin endpoints (X-Admin-Token); empty disables them"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("paynecta_code")
    @classmethod
    def validate_paynecta_code(cls, v: str) -> str:
        """Validate that the payment code looks like a PayNecta link code."""
        if not v.startswith("PNT_"):
            raise ValueError("Invalid PayNecta code format. Must start with 'PNT_'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("reference_prefix")
    @classmethod
    def validate_reference_prefix(cls, v: str) -> str:
        """References are split on the first dash, so the prefix cannot contain one."""
        if not v or "-" in v:
            raise ValueError("Reference prefix must be non-empty and contain no '-'")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
