"""
Himaya Database Package
Declarative base, shared column types and session management
"""

from .models import Base, TimestampMixin, UTCDateTime, User, utcnow, new_id
from .session import create_db_engine, create_session_factory, init_db, session_scope

__all__ = [
    "Base",
    "TimestampMixin",
    "UTCDateTime",
    "User",
    "utcnow",
    "new_id",
    "create_db_engine",
    "create_session_factory",
    "init_db",
    "session_scope",
]
