"""
Revocation service — ends sessions in both stores.

Each operation first kills the session at the IdP (when there is an
IdP session to kill) and then marks the local row REVOKED.  The local
store is what the user's UI reads, so it is the authority:

- IdP answers 202 / 204 / 404 → success (404 = already gone upstream).
- Any other status, a network error or a timeout → logged, and the
  local revocation still goes ahead.
- The management credential cannot be obtained → `IdPCredentialError`
  propagates and nothing local changes.

Malformed identifiers are rejected before anything is read.  Revoking
an already revoked session is a successful no-op with no IdP call; a
session id that does not exist is `NotFoundError`.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from devicegate.core.exceptions import AuthorizationError, IdPUnavailableError, NotFoundError
from devicegate.core.identifiers import parse_uuid, validate_device_id, validate_reason
from devicegate.models.user import User
from devicegate.rbac.context_resolver import ActorScope
from devicegate.services import session_service
from devicegate.services.idp_gateway import IdPGateway, KillResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RevocationResult:
    session_id: uuid.UUID | None
    revoked: bool
    idp_result: KillResult | None = None
    idp_error: str | None = None

    @property
    def idp_called(self) -> bool:
        return self.idp_result is not None or self.idp_error is not None


async def _kill_tolerantly(
    call: Callable[[], Awaitable[KillResult]],
    target: str,
) -> tuple[KillResult | None, str | None]:
    """
    Run one IdP kill call and classify the result.

    Only `IdPUnavailableError` is absorbed here; `IdPCredentialError`
    bubbles up to the caller untouched.
    """
    try:
        result = await call()
    except IdPUnavailableError as exc:
        logger.warning("IdP unreachable while revoking %s, revoking locally: %s", target, exc)
        return None, exc.message

    if not result.succeeded:
        logger.warning(
            "IdP refused to revoke %s (status %s), revoking locally: %s",
            target,
            result.status_code,
            result.detail,
        )
    return result, None


async def revoke_one(
    session_id: uuid.UUID | str,
    reason: str,
    actor: ActorScope,
    gateway: IdPGateway,
    db: AsyncSession,
) -> RevocationResult:
    """Revoke a single session owned by the actor (or any, for admins)."""
    session_id = parse_uuid(session_id, "session_id")
    reason = validate_reason(reason)

    session = await session_service.get_session_by_id(session_id, db)
    if session is None:
        raise NotFoundError("Session", str(session_id))

    if not actor.may_act_for(session.user_id):
        logger.warning(
            "User %s tried to revoke session %s owned by %s",
            actor.user_id,
            session_id,
            session.user_id,
        )
        raise AuthorizationError("You do not own this session")

    if not session.is_active:
        logger.debug("Session %s already revoked", session_id)
        return RevocationResult(session_id, revoked=False)

    idp_result, idp_error = None, None
    if session.external_session_id:
        sid = session.external_session_id
        idp_result, idp_error = await _kill_tolerantly(
            lambda: gateway.kill_session(sid), f"session {session_id}"
        )

    changed = await session_service.mark_revoked(
        session_id,
        reason,
        db,
        revoked_by_device_id=actor.device_id,
    )
    logger.info(
        "Session %s revoked by user %s (device %s, admin=%s): %s",
        session_id,
        actor.user_id,
        actor.device_id,
        actor.is_admin,
        reason,
    )
    return RevocationResult(session_id, changed, idp_result, idp_error)


async def revoke_by_device(
    user_id: uuid.UUID,
    device_id: str,
    reason: str,
    gateway: IdPGateway,
    db: AsyncSession,
    acting_device_id: str | None = None,
) -> RevocationResult:
    """
    Revoke whatever session `device_id` currently holds for `user_id`.

    Used for "log out this device" and logout cleanup; the caller and
    the target share the user by construction, so there is no
    ownership check.  A device with no active session is a no-op.
    """
    device_id = validate_device_id(device_id)
    if acting_device_id is not None:
        acting_device_id = validate_device_id(acting_device_id, "acting_device_id")
    reason = validate_reason(reason)

    session = await session_service.find_active_by_user_and_device(user_id, device_id, db)
    if session is None:
        logger.debug("No active session for user %s on device %s", user_id, device_id)
        return RevocationResult(None, revoked=False)

    idp_result, idp_error = None, None
    if session.external_session_id:
        sid = session.external_session_id
        idp_result, idp_error = await _kill_tolerantly(
            lambda: gateway.kill_session(sid), f"device {device_id}"
        )

    changed = await session_service.mark_revoked_for_device(
        user_id,
        device_id,
        reason,
        db,
        revoked_by_device_id=acting_device_id,
    )
    logger.info(
        "Device %s of user %s revoked (acting device %s): %s",
        device_id,
        user_id,
        acting_device_id,
        reason,
    )
    return RevocationResult(session.id, changed, idp_result, idp_error)


async def revoke_all(
    target_user: User,
    reason: str,
    actor: ActorScope,
    gateway: IdPGateway,
    db: AsyncSession,
) -> int:
    """
    Sign `target_user` out everywhere.

    One IdP "kill all" call (never per row), then every local ACTIVE
    row is revoked.  Returns the number of local sessions revoked.
    """
    reason = validate_reason(reason)
    if not actor.may_act_for(target_user.id):
        logger.warning(
            "User %s tried to revoke all sessions of %s without admin rights",
            actor.user_id,
            target_user.id,
        )
        raise AuthorizationError("Administrator rights required")

    await _kill_tolerantly(
        lambda: gateway.kill_all_sessions(target_user.external_id),
        f"all sessions of user {target_user.id}",
    )

    count = await session_service.mark_all_revoked(target_user.id, reason, db)
    logger.info(
        "Revoked %s session(s) of user %s (by %s, admin=%s): %s",
        count,
        target_user.id,
        actor.user_id,
        actor.is_admin,
        reason,
    )
    return count
