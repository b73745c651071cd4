"""Configuration package."""

from prismo.config.settings import (
    AppSettings,
    ChatSettings,
    DatabaseSettings,
    SecuritySettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "ChatSettings",
    "DatabaseSettings",
    "SecuritySettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
