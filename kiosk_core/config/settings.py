"""Kiosk settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Kiosk settings loaded from ``KIOSK_*`` environment variables."""

    # Backend Configuration
    backend_base_url: str = Field(..., description="Kiosk backend base URL (https://...)")
    backend_fallback_urls: str = Field(
        default="", description="Alternative backend base URLs (comma-separated)"
    )
    authorize_path: str = Field(default="/api/square/authorize", description="Authorize-URL endpoint")
    status_path: str = Field(default="/api/square/status", description="Status/poll endpoint")
    refresh_path: str = Field(default="/api/square/refresh", description="Token refresh endpoint")
    disconnect_path: str = Field(default="/api/square/disconnect", description="Disconnect endpoint")
    health_path: str = Field(default="/api/health", description="Backend health endpoint")
    config_path: str = Field(default="/api/config", description="Remote configuration endpoint")
    order_path: str = Field(default="/api/square/orders/create", description="Order creation endpoint")

    # Identity
    organization_id: str = Field(default="default", description="Base organization (tenant) id")
    enable_multi_device_mode: bool = Field(
        default=False, description="Scope the organization id to this device"
    )

    # HTTP Timeouts (seconds)
    authorize_timeout: float = Field(default=10.0, description="Authorize-URL request timeout")
    status_timeout: float = Field(default=10.0, description="Auth status request timeout")
    poll_timeout: float = Field(default=10.0, description="Authorization poll request timeout")
    refresh_timeout: float = Field(default=15.0, description="Token refresh request timeout")
    disconnect_timeout: float = Field(default=10.0, description="Disconnect request timeout")
    health_timeout: float = Field(default=5.0, description="Health probe timeout")
    config_timeout: float = Field(default=3.0, description="Remote config request timeout")
    order_timeout: float = Field(default=15.0, description="Order creation request timeout")

    # Authorization Flow
    poll_interval_seconds: float = Field(default=3.0, description="Authorization poll cadence")
    authorization_timeout_seconds: float = Field(
        default=300.0, description="Hard timeout for a pending authorization"
    )
    auth_check_max_retries: int = Field(default=2, description="Retries before the health probe")
    network_retry_delay_seconds: float = Field(default=2.0, description="Delay after a network error")
    server_retry_delay_seconds: float = Field(default=3.0, description="Delay after a 5xx response")
    outage_retry_delay_seconds: float = Field(
        default=10.0, description="Retry cadence while the backend looks down"
    )
    refresh_threshold_days: int = Field(
        default=7, description="Refresh proactively below this remaining token lifetime"
    )
    status_debounce_seconds: float = Field(
        default=2.0, description="Minimum interval between status refreshes"
    )
    location_recheck_delay_seconds: float = Field(
        default=2.0, description="Wait before retrying reader authorization after a location re-check"
    )
    default_token_lifetime_days: int = Field(
        default=30, description="Assumed lifetime when expires_at cannot be parsed"
    )

    # Idempotency Ledger
    idempotency_retention_hours: int = Field(default=24, description="Idempotency key retention")
    idempotency_prune_margin_hours: int = Field(default=1, description="Safety margin on pruning")
    idempotency_prune_interval_seconds: float = Field(
        default=86400.0, description="Ledger prune cadence"
    )

    # Payment Processing
    currency: str = Field(default="USD", description="Payment currency code")
    payment_reference_prefix: str = Field(default="donation", description="Reference id prefix")
    payment_note: str = Field(default="Payment via kiosk", description="Note attached to payments")
    payment_health_check_interval_seconds: float = Field(
        default=30.0, description="Payment-path consistency check cadence"
    )
    offline_check_interval_seconds: float = Field(
        default=60.0, description="Offline payment queue check cadence"
    )
    token_refresh_check_interval_seconds: float = Field(
        default=3600.0, description="Proactive token refresh check cadence"
    )
    processing_fee_enabled: bool = Field(default=False, description="Add a processing fee to orders")
    processing_fee_percentage: float = Field(default=2.9, description="Processing fee percentage")
    processing_fee_fixed_cents: int = Field(default=30, description="Processing fee fixed part")

    # Storage Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///kiosk.db", description="Local state database URL"
    )
    database_echo: bool = Field(default=False, description="Echo SQL queries (debug)")

    # Application Configuration
    app_name: str = Field(default="kiosk-core", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=True, description="Render logs as JSON")

    model_config = SettingsConfigDict(
        env_prefix="KIOSK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("backend_base_url")
    @classmethod
    def validate_backend_url(cls, v: str) -> str:
        """Require an absolute http(s) URL without a trailing slash."""
        if not v.startswith(("https://", "http://")):
            raise ValueError("Backend URL must start with 'https://' or 'http://'")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currency must be a 3-letter code."""
        if len(v) != 3:
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    def get_fallback_urls_list(self) -> List[str]:
        """Parse fallback backend URLs from comma-separated string."""
        return [url.strip().rstrip("/") for url in self.backend_fallback_urls.split(",") if url.strip()]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once. Intended for entry
    points; components receive their Settings through the constructor.
    """
    return Settings()
