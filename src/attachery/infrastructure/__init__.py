"""Infrastructure layer - storages, persistence, dispatch and configuration."""

from attachery.infrastructure.logging import configure_from_settings, configure_logging
from attachery.infrastructure.settings import Settings, get_settings

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    # Logging
    "configure_logging",
    "configure_from_settings",
]
