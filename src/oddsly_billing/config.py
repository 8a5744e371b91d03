"""
Typed configuration for the billing service.

All settings come from the environment (or a local ``.env`` file) and are
validated once. Required keys are enumerated in ``REQUIRED_SETTINGS``; if any
is absent or blank, ``get_settings()`` raises ``ConfigurationError`` naming
all of them instead of letting a ``None`` surface later at call time.
"""
from functools import lru_cache
from typing import Tuple

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from oddsly_billing.errors import ConfigurationError

REQUIRED_SETTINGS: Tuple[str, ...] = (
    "STRIPE_API_KEY",
    "STRIPE_ENDPOINT_SECRET",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Stripe
    stripe_api_key: SecretStr = Field(alias="STRIPE_API_KEY")
    stripe_endpoint_secret: SecretStr = Field(alias="STRIPE_ENDPOINT_SECRET")
    stripe_currency: str = Field(default="usd", alias="STRIPE_CURRENCY")

    # Gateway call policy
    gateway_timeout_seconds: float = Field(default=30.0, gt=0, alias="GATEWAY_TIMEOUT_SECONDS")
    gateway_max_retries: int = Field(default=3, ge=1, le=10, alias="GATEWAY_MAX_RETRIES")
    gateway_retry_delay: float = Field(default=1.0, ge=0, alias="GATEWAY_RETRY_DELAY")

    # Storage
    database_url: str = Field(default="sqlite:///./oddsly_billing.db", alias="DATABASE_URL")

    # API / logging
    api_prefix: str = Field(default="", alias="API_PREFIX")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="logs", alias="LOG_DIR")

    @field_validator("stripe_api_key", "stripe_endpoint_secret")
    @classmethod
    def reject_blank_secret(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("stripe_currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("api_prefix")
    @classmethod
    def validate_api_prefix(cls, value: str) -> str:
        """Allow an empty prefix; otherwise require a leading slash and no trailing one."""
        normalized = value.strip()
        if not normalized:
            return ""
        if not normalized.startswith("/"):
            raise ValueError("API_PREFIX must start with '/'.")
        return normalized.rstrip("/")


def load_settings(**overrides) -> Settings:
    """
    Build a ``Settings`` instance, translating validation failures.

    :param overrides: Values keyed by environment variable name, used in place of the environment.
    :return: The validated settings.
    :raises ConfigurationError: if a required key is missing/blank or any value is invalid.
    """
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        missing = set()
        invalid = []
        for error in exc.errors():
            name = str(error["loc"][0]) if error.get("loc") else "?"
            if name in REQUIRED_SETTINGS:
                missing.add(name)
            else:
                invalid.append(f"{name}: {error['msg']}")
        if invalid:
            raise ConfigurationError(missing, f"Invalid configuration: {'; '.join(invalid)}") from exc
        raise ConfigurationError(missing) from exc


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return load_settings()
