"""Configuration module for the token refresh coordinator."""

from waygate.config.settings import (
    DEFAULT_BUFFER_MINUTES,
    RefreshSettings,
    normalize_database_url,
)

__all__ = [
    "DEFAULT_BUFFER_MINUTES",
    "RefreshSettings",
    "normalize_database_url",
]
