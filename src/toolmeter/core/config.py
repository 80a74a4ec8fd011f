"""
Configuration management for toolmeter.

Supports environment variables, .env files, and YAML configuration.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from toolmeter.core.plans import BillingConfig, PerCallConfig

StorageBackend = Literal["memory", "sqlite", "postgresql", "mysql"]

DEFAULT_STORAGE_URLS: dict[str, str] = {
    "sqlite": "sqlite+aiosqlite:///./toolmeter.db",
    "postgresql": "postgresql+asyncpg://localhost:5432/toolmeter",
    "mysql": "mysql+aiomysql://localhost:3306/toolmeter",
}


class StorageSettings(BaseSettings):
    """Storage backend selection and connection pooling."""

    model_config = SettingsConfigDict(
        env_prefix="TOOLMETER_STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    backend: StorageBackend = "sqlite"
    url: str | None = None

    # Connection pool (server backends only)
    pool_size: int = Field(default=10, ge=1)
    max_overflow: int = Field(default=20, ge=0)
    pool_timeout: float = Field(default=30.0, gt=0)
    pool_recycle: int = 1800

    echo: bool = False
    run_migrations: bool = True

    @property
    def resolved_url(self) -> str | None:
        """Connection URL, falling back to the backend's default."""
        if self.backend == "memory":
            return None
        return self.url or DEFAULT_STORAGE_URLS[self.backend]


class StripeSettings(BaseSettings):
    """Payment provider credentials and webhook verification."""

    model_config = SettingsConfigDict(
        env_prefix="TOOLMETER_STRIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    secret_key: SecretStr | None = None
    webhook_secret: SecretStr | None = None
    webhook_tolerance: int = 300  # seconds
    verify_signatures: bool = True
    api_version: str | None = None

    @property
    def is_configured(self) -> bool:
        """Check if Stripe API calls can be made."""
        return self.secret_key is not None


class MeteringSettings(BaseSettings):
    """Runtime policy for the gate, recorder and background work."""

    model_config = SettingsConfigDict(
        env_prefix="TOOLMETER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    currency: str = "usd"

    # Reservations
    reservation_ttl_seconds: int = Field(default=900, gt=0)
    charge_failed_calls: bool = False

    # Gate behaviour
    fail_open_in_development: bool = False
    auto_provision_accounts: bool = True

    # Webhook retries
    webhook_max_retries: int = Field(default=5, ge=0)
    webhook_retry_base_delay: float = 30.0
    webhook_retry_max_delay: float = 3600.0

    # Background maintenance
    maintenance_enabled: bool = True
    maintenance_interval_seconds: float = Field(default=60.0, gt=0)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        v = v.lower()
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"Invalid currency code: {v}")
        return v


class LoggingSettings(BaseSettings):
    """Log level and output format."""

    model_config = SettingsConfigDict(
        env_prefix="TOOLMETER_LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    level: str = "INFO"
    format: Literal["json", "console"] = "json"

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v


class Settings(BaseSettings):
    """Combined toolmeter settings."""

    model_config = SettingsConfigDict(
        env_prefix="TOOLMETER_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    storage: StorageSettings = Field(default_factory=StorageSettings)
    stripe: StripeSettings = Field(default_factory=StripeSettings)
    metering: MeteringSettings = Field(default_factory=MeteringSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    # One active billing model
    billing: BillingConfig = Field(default_factory=lambda: PerCallConfig(default_price=0))

    # Environment
    environment: str = "development"
    debug: bool = False

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment.lower() == "development"

    @property
    def billing_unit(self) -> str:
        """Unit amounts are expressed in: ``credits`` or the currency code."""
        if self.billing.model == "credit-system":
            return "credits"
        return self.metering.currency

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path) as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}

        return cls(**data)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings."""
    return Settings()


def reload_settings() -> Settings:
    """Reload settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
