"""
Configuration Management Module

Provides centralized configuration using pydantic-settings. Every field can
be set from the environment with the LENDING_ prefix, e.g.
LENDING_DATABASE_PATH=lending.db or
LENDING_RATE_TIERS='{"<1000000": 18, ">=1000000": 14}'.
"""

from decimal import Decimal
from typing import Dict

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .rates import DEFAULT_RATE_TABLE, RatePolicy


class LendingConfig(BaseSettings):
    """Lending core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LENDING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage; ":memory:" selects the in-memory engine
    database_path: str = ":memory:"

    # Pricing and scheduling
    rate_tiers: Dict[str, Decimal] = {key: Decimal(str(value)) for key, value in DEFAULT_RATE_TABLE.items()}
    payment_interval_days: int = 30

    # Human-readable identifiers
    receipt_prefix: str = "REC"
    loan_prefix: str = "LN"
    application_prefix: str = "APP"
    borrower_prefix: str = "B"
    id_padding: int = 3

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Feature flags
    enable_audit_logging: bool = True

    @field_validator("rate_tiers")
    @classmethod
    def _check_rate_tiers(cls, value: Dict[str, Decimal]) -> Dict[str, Decimal]:
        try:
            RatePolicy.from_table(value)
        except ConfigurationError as e:
            raise ValueError(str(e))
        return value

    @field_validator("payment_interval_days", "id_padding")
    @classmethod
    def _check_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return value

    def rate_policy(self) -> RatePolicy:
        return RatePolicy.from_table(self.rate_tiers)


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
