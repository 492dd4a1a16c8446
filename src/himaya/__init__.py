"""
Himaya Auth - Authentication Security Core
MFA, session lifecycle, password policy and risk analytics for the Himaya CMS.
"""

__version__ = "0.1.0"
__author__ = "Himaya"

from himaya.core.config import settings, get_settings
from himaya.core.logging import get_logger

__all__ = ["settings", "get_settings", "get_logger", "__version__"]
