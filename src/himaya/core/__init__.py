"""
Himaya Core
Configuration, logging and encryption shared by the security services.
"""

from .config import Settings, get_settings, settings
from .logging import get_logger, LoggerMixin
from .encryption import VaultManager, EncryptionError

__all__ = [
    "Settings",
    "get_settings",
    "settings",
    "get_logger",
    "LoggerMixin",
    "VaultManager",
    "EncryptionError",
]
