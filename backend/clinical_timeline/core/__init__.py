"""Core application configuration."""

from clinical_timeline.core.config import Settings, settings

__all__ = [
    "Settings",
    "settings",
]
