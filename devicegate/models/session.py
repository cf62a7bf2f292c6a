"""
User session model — device-bound session registry.

One row is one device's claim to access for one user:
- At most ONE active row per (user_id, device_id).  Enforced by a
  partial unique index, not by application code, because duplicate
  tabs on the same device race each other.
- Revoking and re-admitting the same device creates a NEW row; the
  revoked one stays behind as audit trail.  Rows are never deleted.
- Status is a closed variant: `Active` or `Revoked(reason, by, at)`.
  The check constraint keeps revocation metadata and status in step,
  and `UserSession.state` is the only way callers should read it.
"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from devicegate.models.base import Base, utcnow

# Shared by the unique index and every ON CONFLICT target.
ACTIVE_ROW_PREDICATE = "status = 'ACTIVE'"


class SessionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


class RevocationReason(str, enum.Enum):
    """Well-known reason categories.  Free text is accepted as well."""

    USER_REVOKED = "user_revoked"
    DEVICE_REVOKED = "device_revoked"
    LOGOUT = "logout"
    ADMIN_REVOKED = "admin_revoked"
    ADMIN_REVOKED_ALL = "admin_revoked_all"
    USER_REVOKED_ALL = "user_revoked_all"
    INACTIVITY_EXPIRED = "inactivity_expired"
    PROVIDER_REVOKED = "provider_revoked"


@dataclass(frozen=True)
class Active:
    status = SessionStatus.ACTIVE


@dataclass(frozen=True)
class Revoked:
    reason: str
    at: datetime = field(default_factory=utcnow)
    by_device_id: str | None = None

    status = SessionStatus.REVOKED

    def as_columns(self) -> dict[str, Any]:
        return {
            "status": SessionStatus.REVOKED,
            "revoked_reason": self.reason,
            "revoked_by_device_id": self.by_device_id,
            "revoked_at": self.at,
        }


SessionState = Union[Active, Revoked]


@dataclass(frozen=True)
class DeviceAttributes:
    """
    Opaque device/network bundle produced by the caller's user-agent
    parser.  Stored for display and audit only; admission never looks
    at it.
    """

    user_agent_raw: str = ""
    browser_name: str = "Unknown"
    browser_version: str = ""
    os_name: str = "Unknown"
    os_version: str = ""
    device_type: str = "desktop"
    is_bot: bool = False
    ip_address: str = "unknown"

    def as_columns(self) -> dict[str, Any]:
        return {
            "user_agent_raw": self.user_agent_raw,
            "browser_name": self.browser_name[:64],
            "browser_version": self.browser_version[:64],
            "os_name": self.os_name[:64],
            "os_version": self.os_version[:64],
            "device_type": self.device_type[:32],
            "is_bot": self.is_bot,
            "ip_address": self.ip_address[:64],
        }


class UserSession(Base):
    __tablename__ = "user_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    device_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    external_session_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, name="session_status", native_enum=False, length=12),
        default=SessionStatus.ACTIVE,
        nullable=False,
    )

    # ── Device / network (pass-through) ──────────────────────────────
    user_agent_raw: Mapped[str | None] = mapped_column(Text, nullable=True)
    browser_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    browser_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    os_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    os_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    device_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_bot: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # ── Revocation (set only when REVOKED) ───────────────────────────
    revoked_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    revoked_by_device_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index(
            "uq_user_sessions_active_device",
            "user_id",
            "device_id",
            unique=True,
            postgresql_where=text(ACTIVE_ROW_PREDICATE),
            sqlite_where=text(ACTIVE_ROW_PREDICATE),
        ),
        Index("ix_user_sessions_user_status_last_seen", "user_id", "status", "last_seen"),
        CheckConstraint(
            "(status = 'ACTIVE' AND revoked_reason IS NULL"
            " AND revoked_by_device_id IS NULL AND revoked_at IS NULL)"
            " OR (status = 'REVOKED' AND revoked_reason IS NOT NULL"
            " AND revoked_at IS NOT NULL)",
            name="ck_user_sessions_state",
        ),
    )

    @property
    def state(self) -> SessionState:
        if self.status == SessionStatus.ACTIVE:
            return Active()
        return Revoked(
            reason=self.revoked_reason or "",
            at=self.revoked_at,
            by_device_id=self.revoked_by_device_id,
        )

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<UserSession user={self.user_id} device={self.device_id} status={self.status.value}>"
