"""
Configuration Management for budgetkeeper

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
The store, engine and scheduler receive their settings objects explicitly,
so nothing below reads the environment on its own.
"""

from functools import lru_cache
from decimal import Decimal
from pathlib import Path
from typing import Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from budgetkeeper.models.entities import MAX_AMOUNT


class StoreSettings(BaseSettings):
    """JSON collection store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BUDGET_STORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    data_dir: Path = Field(
        default=Path("data"),
        description="Root directory holding one sub-directory per user"
    )
    indent: int = Field(
        default=2,
        ge=0,
        le=8,
        description="Indentation used when writing collection documents"
    )

    @field_validator('data_dir')
    @classmethod
    def expand_data_dir(cls, v: Path) -> Path:
        """Expand ~ so the directory can be given relative to the home dir."""
        return v.expanduser()


class SchedulerSettings(BaseSettings):
    """Recurring transaction scheduler configuration."""

    model_config = SettingsConfigDict(
        env_prefix="BUDGET_SCHEDULER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    interval_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Seconds between two scheduled engine runs"
    )
    run_on_startup: bool = Field(
        default=True,
        description="Run the engine once as soon as the scheduler starts"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUDGET_",
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
        description="Minimum level for structured logs"
    )

    # Ledger rules
    enforce_category_type: bool = Field(
        default=True,
        description="Reject transactions/rules whose type differs from their category's"
    )
    max_amount: Decimal = Field(
        default=MAX_AMOUNT,
        gt=0,
        le=MAX_AMOUNT,
        description="Largest amount accepted for a transaction or recurring rule"
    )

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.strip().upper()
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
    def store(self) -> StoreSettings:
        return StoreSettings()

    @property
    def scheduler(self) -> SchedulerSettings:
        return SchedulerSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, Union[bool, str]]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus a
    "<name>_error" entry for every section that failed.
    """
    results = {}

    settings = get_settings()

    for name in ("store", "scheduler", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
