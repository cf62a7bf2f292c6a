"""
Context resolver — who is acting, from which device, with what rights.

Revocation needs three facts about the caller that come from three
places: the local user id (synced from the token subject), the device
id (cookie), and the admin flag (token `permissions` claim).
`resolve_actor_scope` gathers them into one `ActorScope` so services
never reach back into the request.

Usage in a controller:
    actor = await resolve_actor_scope(principal, user, device_id)
    await revocation_service.revoke_one(session_id, reason, actor, gateway, db)
"""

import uuid
from dataclasses import dataclass
from datetime import datetime

from devicegate.core.config import settings
from devicegate.core.security import Principal
from devicegate.models.user import User


@dataclass(frozen=True)
class ActorScope:
    """
    The acting identity for a session-control operation.

    - user_id: local id of the caller.
    - device_id: the caller's device, recorded as `revoked_by_device_id`.
    - is_admin: may act on other users' sessions.
    - external_session_id / issued_at: the token's `sid` and `iat`,
      used to tell whether this device's session was revoked under it.
    """

    user_id: uuid.UUID
    device_id: str | None = None
    is_admin: bool = False
    external_session_id: str | None = None
    issued_at: datetime | None = None

    def may_act_for(self, owner_id: uuid.UUID) -> bool:
        return self.is_admin or self.user_id == owner_id


def resolve_actor_scope(
    principal: Principal,
    user: User,
    device_id: str | None = None,
) -> ActorScope:
    return ActorScope(
        user_id=user.id,
        device_id=device_id,
        is_admin=principal.has_permission(settings.ADMIN_PERMISSION),
        external_session_id=principal.external_session_id,
        issued_at=principal.issued_at,
    )
