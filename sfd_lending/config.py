"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based
configuration. Late-fee and default policies are deliberately external: when
unset, no late fee accrues and loans never move to defaulted automatically.
"""

from decimal import Decimal
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LendingConfig(BaseSettings):
    """SFD lending core configuration"""

    model_config = SettingsConfigDict(
        env_prefix="SFD_LENDING_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///sfd_lending.db"  # or "memory"
    storage_timeout_seconds: float = 10.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Money
    currency: str = "XOF"

    # Repayment policy (external configuration, no built-in defaults)
    late_fee_rate: Optional[Decimal] = None       # e.g. 0.05 = 5% of the installment amount
    late_fee_grace_days: int = 0
    default_threshold_days: Optional[int] = None  # Overdue days after which a loan defaults

    # Subsidy policy
    subsidy_low_balance_ratio: Decimal = Decimal("0.10")

    # Concurrency
    max_retry_attempts: int = 3
    retry_backoff_seconds: float = 0.05

    @field_validator("late_fee_rate", "subsidy_low_balance_ratio")
    @classmethod
    def _non_negative_rate(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        if value is not None and value < 0:
            raise ValueError("rates cannot be negative")
        return value

    @field_validator("default_threshold_days", "late_fee_grace_days")
    @classmethod
    def _non_negative_days(cls, value: Optional[int]) -> Optional[int]:
        if value is not None and value < 0:
            raise ValueError("day counts cannot be negative")
        return value

    @field_validator("max_retry_attempts")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_retry_attempts must be at least 1")
        return value


# Built on first use so importing the package never reads the environment
_config: Optional[LendingConfig] = None


def get_config() -> LendingConfig:
    """Shared configuration for services constructed without one"""
    global _config
    if _config is None:
        _config = LendingConfig()
    return _config


def reload_config() -> LendingConfig:
    """Rebuild the shared configuration from the environment"""
    global _config
    _config = LendingConfig()
    return _config
