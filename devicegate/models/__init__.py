"""
Models package — import every model so SQLAlchemy's Base.metadata
knows about all tables (critical for `create_all` / Alembic).
"""

from devicegate.models.app_settings import AppSettings
from devicegate.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from devicegate.models.session import (
    Active,
    DeviceAttributes,
    RevocationReason,
    Revoked,
    SessionState,
    SessionStatus,
    UserSession,
)
from devicegate.models.user import User

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "User",
    "UserSession",
    "SessionStatus",
    "SessionState",
    "Active",
    "Revoked",
    "RevocationReason",
    "DeviceAttributes",
    "AppSettings",
]
