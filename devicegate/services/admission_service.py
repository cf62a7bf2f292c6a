"""
Admission service — device-limit enforcement.

Decides whether a (user, device) pair may hold an active session slot,
then records it.  Two modes, chosen by `ADMISSION_MODE`:

- advisory (default): count, decide, then upsert.  Two *new* devices
  racing at the boundary can both be admitted, so a user may end up
  over the limit by at most the number of concurrent admissions.
- strict: the count and the insert are one database statement
  (`session_service.admit_within_limit`), so the limit is never
  exceeded.

Either way a device that already holds an active session is always
renewed, whatever the current limit (even 0).  A device whose latest
session was revoked under the caller's current token is never
re-admitted until it signs in again at the IdP.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from devicegate.core.config import settings
from devicegate.core.identifiers import validate_device_id
from devicegate.models.session import DeviceAttributes, UserSession
from devicegate.services import session_service, settings_service

logger = logging.getLogger(__name__)

ADVISORY = "advisory"
STRICT = "strict"


@dataclass(frozen=True)
class SessionRevoked:
    """
    The device's latest session was revoked while the caller's current
    token was already in use, so the device must sign in again.

    `revoked_by` is the revoking device's latest session, if any, for
    showing which browser/OS ended this one.
    """

    session: UserSession
    revoked_by: UserSession | None = None


@dataclass(frozen=True)
class AdmissionDecision:
    admitted: bool
    active_count: int
    max_devices: int
    session: UserSession | None = None
    revoked: SessionRevoked | None = None


def _revoked_under_token(
    session: UserSession,
    external_session_id: str | None,
    issued_at: datetime | None,
) -> bool:
    if session.external_session_id and external_session_id:
        return session.external_session_id == external_session_id
    if issued_at is None or session.revoked_at is None:
        return False
    revoked_at = session.revoked_at
    if revoked_at.tzinfo is None:
        # SQLite hands back naive UTC
        revoked_at = revoked_at.replace(tzinfo=timezone.utc)
    return revoked_at >= issued_at


async def find_revocation(
    user_id: uuid.UUID,
    device_id: str,
    db: AsyncSession,
    external_session_id: str | None = None,
    issued_at: datetime | None = None,
) -> SessionRevoked | None:
    """
    Return the revocation that still applies to this device, or None.

    Only the device's latest row counts.  A revoked row applies when it
    carries the same IdP `sid` as the caller's token or, when either
    side lacks a sid, when it was revoked after the token was issued.
    Signing in again at the IdP yields a new sid and clears it.
    """
    device_id = validate_device_id(device_id)
    latest = await session_service.find_latest_for_device(user_id, device_id, db)
    if latest is None or latest.is_active:
        return None
    if not _revoked_under_token(latest, external_session_id, issued_at):
        return None

    revoked_by = None
    if latest.revoked_by_device_id and latest.revoked_by_device_id != device_id:
        revoked_by = await session_service.find_latest_for_device(
            user_id, latest.revoked_by_device_id, db
        )
    return SessionRevoked(latest, revoked_by)


async def check_admission(
    user_id: uuid.UUID,
    device_id: str,
    max_devices: int,
    db: AsyncSession,
) -> AdmissionDecision:
    """Read-only limit check.  Never writes."""
    device_id = validate_device_id(device_id)
    active_count = await session_service.count_active(user_id, db)

    existing = await session_service.find_active_by_user_and_device(user_id, device_id, db)
    if existing is not None:
        return AdmissionDecision(True, active_count, max_devices, existing)

    return AdmissionDecision(active_count < max_devices, active_count, max_devices)


async def admit_or_renew(
    user_id: uuid.UUID,
    device_id: str,
    attributes: DeviceAttributes,
    db: AsyncSession,
    external_session_id: str | None = None,
    mode: str | None = None,
    issued_at: datetime | None = None,
) -> AdmissionDecision:
    """
    Admit (or renew) the device and return the decision.

    A denial leaves storage untouched; the caller is expected to show
    the user's active sessions so one can be revoked first.  A device
    whose session was revoked under the presented token is refused
    with `decision.revoked` set.
    """
    device_id = validate_device_id(device_id)
    mode = mode or settings.ADMISSION_MODE
    max_devices = await settings_service.get_max_devices(db)

    revoked = await find_revocation(user_id, device_id, db, external_session_id, issued_at)
    if revoked is not None:
        logger.warning(
            "Refusing revoked device %s for user %s (session %s, reason=%s)",
            device_id,
            user_id,
            revoked.session.id,
            revoked.session.revoked_reason,
        )
        active_count = await session_service.count_active(user_id, db)
        return AdmissionDecision(False, active_count, max_devices, revoked=revoked)

    if mode == STRICT:
        session = await session_service.admit_within_limit(
            user_id,
            device_id,
            attributes,
            max_devices,
            db,
            external_session_id=external_session_id,
        )
        active_count = await session_service.count_active(user_id, db)
        decision = AdmissionDecision(session is not None, active_count, max_devices, session)
    else:
        decision = await check_admission(user_id, device_id, max_devices, db)
        if decision.admitted:
            session = await session_service.upsert_active_session(
                user_id,
                device_id,
                attributes,
                db,
                external_session_id=external_session_id,
            )
            active_count = decision.active_count + (0 if decision.session else 1)
            decision = AdmissionDecision(True, active_count, max_devices, session)

    if decision.admitted:
        logger.info(
            "Admitted device %s for user %s (%s/%s active, mode=%s)",
            device_id,
            user_id,
            decision.active_count,
            max_devices,
            mode,
        )
    else:
        logger.warning(
            "Device limit reached for user %s: device %s denied (%s/%s active)",
            user_id,
            device_id,
            decision.active_count,
            max_devices,
        )
    return decision
