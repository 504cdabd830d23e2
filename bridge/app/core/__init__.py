"""Core utilities for the bridge application."""

from bridge.app.core.config import Settings, get_settings, reload_settings, settings
from bridge.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "Settings",
    "get_settings",
    "reload_settings",
    "settings",
    "get_log_context",
    "get_logger",
    "setup_logging",
]
