"""Configuration module for Swapify."""

from .settings import (
    DatabaseSettings,
    NotificationSettings,
    ObservabilitySettings,
    PollSettings,
    Settings,
    SpotifySettings,
    get_settings,
)

__all__ = [
    "DatabaseSettings",
    "NotificationSettings",
    "ObservabilitySettings",
    "PollSettings",
    "Settings",
    "SpotifySettings",
    "get_settings",
]
