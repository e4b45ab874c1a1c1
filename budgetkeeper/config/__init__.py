"""Configuration package."""

from budgetkeeper.config.settings import (
    AppSettings,
    SchedulerSettings,
    Settings,
    StoreSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "SchedulerSettings",
    "Settings",
    "StoreSettings",
    "get_settings",
    "validate_all_settings",
]
