"""
Infrastructure module - settings, logging, storage and notifications.

storage and notifier depend on the platform client; import them from
their modules.
"""

from .settings import Settings, get_settings
from .logging_config import setup_logging

__all__ = [
    # settings
    "Settings",
    "get_settings",
    # logging
    "setup_logging",
]
