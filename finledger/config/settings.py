"""
Configuration Management for finledger

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Every tunable of the ledger engine (currency, budget alert threshold,
compensation retry policy, journal location) is read from the
environment once and validated at startup.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Balance-consistency engine configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    currency: str = Field(
        default="BRL",
        min_length=3,
        max_length=3,
        description="ISO 4217 code all amounts are expressed in"
    )
    default_budget_alert_at: int = Field(
        default=80,
        ge=1,
        le=100,
        description="Budget WARNING threshold (percent) when none is given"
    )

    # Compensation retry policy
    compensation_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per compensating action before giving up"
    )
    compensation_retry_wait_seconds: float = Field(
        default=0.2,
        ge=0.0,
        description="Initial backoff between compensation attempts"
    )
    compensation_retry_max_wait_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Backoff ceiling between compensation attempts"
    )

    # Movement journal
    movement_journal_path: Optional[Path] = Field(
        default=None,
        description="JSONL file for the movement journal (in-memory when unset)"
    )

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator('movement_journal_path')
    @classmethod
    def validate_journal_dir(cls, v: Optional[Path]) -> Optional[Path]:
        """Warn if the journal directory doesn't exist (it may be mounted later)."""
        if v is not None and not v.parent.exists():
            import warnings
            warnings.warn(
                f"Movement journal directory not found at {v.parent}. "
                "Make sure it exists before running the application."
            )
        return v


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Minimum level for the structured log"
    )

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    try:
        _ = settings.ledger
        results["ledger"] = True
    except Exception as e:
        results["ledger"] = False
        results["ledger_error"] = str(e)

    try:
        _ = settings.app
        results["app"] = True
    except Exception as e:
        results["app"] = False
        results["app_error"] = str(e)

    return results
