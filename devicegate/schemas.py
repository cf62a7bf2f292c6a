"""
Pydantic schemas for request / response serialization.

Kept in a single file for now — split per-domain when it grows.
Schemas are deliberately decoupled from SQLAlchemy models so the
API surface can evolve independently of the DB layer.
"""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from devicegate.models.session import DeviceAttributes, SessionStatus, UserSession


# ── Device ───────────────────────────────────────────────────────────
class DeviceInfoIn(BaseModel):
    """Parsed user-agent details supplied by the client."""

    browser_name: str = Field("Unknown", max_length=64)
    browser_version: str = Field("", max_length=64)
    os_name: str = Field("Unknown", max_length=64)
    os_version: str = Field("", max_length=64)
    device_type: str = Field("desktop", max_length=32)
    is_bot: bool = False

    def to_attributes(self, user_agent: str, ip_address: str) -> DeviceAttributes:
        return DeviceAttributes(
            user_agent_raw=user_agent,
            browser_name=self.browser_name,
            browser_version=self.browser_version,
            os_name=self.os_name,
            os_version=self.os_version,
            device_type=self.device_type,
            is_bot=self.is_bot,
            ip_address=ip_address,
        )


class AdmitRequest(BaseModel):
    device: DeviceInfoIn = Field(default_factory=DeviceInfoIn)


# ── Sessions ─────────────────────────────────────────────────────────
class SessionOut(BaseModel):
    id: uuid.UUID
    device_id: str
    status: SessionStatus
    browser_name: str | None = None
    browser_version: str | None = None
    os_name: str | None = None
    os_version: str | None = None
    device_type: str | None = None
    is_bot: bool | None = None
    ip_address: str | None = None
    last_seen: datetime
    created_at: datetime
    revoked_reason: str | None = None
    revoked_by_device_id: str | None = None
    revoked_at: datetime | None = None
    is_current: bool = False

    model_config = {"from_attributes": True}

    @classmethod
    def from_session(cls, session: UserSession, current_device_id: str | None = None) -> "SessionOut":
        out = cls.model_validate(session)
        out.is_current = session.is_active and session.device_id == current_device_id
        return out


class AdmissionOut(BaseModel):
    active_count: int
    max_devices: int
    session: SessionOut


class DeviceLimitExceeded(BaseModel):
    error: str = "device_limit_exceeded"
    message: str
    active_count: int
    max_devices: int
    sessions_url: str = "/api/sessions"


class RevokingDeviceOut(BaseModel):
    device_id: str
    browser_name: str | None = None
    os_name: str | None = None
    device_type: str | None = None

    model_config = {"from_attributes": True}


class SessionRevokedDetail(BaseModel):
    """`detail` of a 403 session_revoked: what ended this device's session."""

    session_id: uuid.UUID
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    revoked_by_device_id: str | None = None
    revoked_by: RevokingDeviceOut | None = None

    @classmethod
    def from_session(
        cls, session: UserSession, revoked_by: UserSession | None = None
    ) -> "SessionRevokedDetail":
        return cls(
            session_id=session.id,
            revoked_at=session.revoked_at,
            revoked_reason=session.revoked_reason,
            revoked_by_device_id=session.revoked_by_device_id,
            revoked_by=RevokingDeviceOut.model_validate(revoked_by) if revoked_by else None,
        )


class RevokeRequest(BaseModel):
    reason: str = Field("user_revoked", max_length=255)


class RevokeDeviceRequest(BaseModel):
    device_id: str
    reason: str = Field("device_revoked", max_length=255)


class RevokeAllRequest(BaseModel):
    reason: str = Field("user_revoked_all", max_length=255)


class RevocationOut(BaseModel):
    session_id: uuid.UUID | None = None
    revoked: bool
    idp_status: int | None = None


class RevokeAllOut(BaseModel):
    revoked_count: int


# ── Settings ─────────────────────────────────────────────────────────
class DevicePolicyOut(BaseModel):
    max_devices: int
    inactivity_days: int
    is_default: bool = False


class UpdateDevicePolicyRequest(BaseModel):
    max_devices: int | None = Field(None, ge=0)
    inactivity_days: int | None = Field(None, ge=1)


# ── User ─────────────────────────────────────────────────────────────
class UserOut(BaseModel):
    id: uuid.UUID
    external_id: str
    display_name: str | None = None
    email: str | None = None
    email_verified: bool = False
    picture_url: str | None = None
    phone: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class MessageResponse(BaseModel):
    detail: str
