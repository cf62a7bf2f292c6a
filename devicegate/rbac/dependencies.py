"""
RBAC dependencies — request-scoped identity for the session routes.

Permissions are granted by the IdP and arrive in the token's
`permissions` claim; nothing is looked up locally.  `require_permission`
is a *dependency factory* in the same shape as the rest of the RBAC
layer:

    @router.get("/settings", dependencies=[Depends(require_permission("sessions:admin"))])
    async def read_settings(...): ...

Or inject the principal:
    async def admin_view(principal: Principal = Depends(require_permission("sessions:admin"))): ...
"""

import logging

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from devicegate.core.database import get_db
from devicegate.core.exceptions import SessionRevokedError
from devicegate.core.security import Principal, get_current_principal, get_device_id
from devicegate.models.user import User
from devicegate.rbac.context_resolver import ActorScope, resolve_actor_scope
from devicegate.schemas import SessionRevokedDetail
from devicegate.services import admission_service, user_service
from devicegate.services.admission_service import SessionRevoked
from devicegate.services.idp_gateway import IdPGateway

logger = logging.getLogger("rbac")


class require_permission:
    """
    Dependency factory.

    Can be used as:
        Depends(require_permission("sessions:admin"))
        Depends(require_permission("sessions:admin", "settings:write"))
    """

    def __init__(self, *permission_codes: str):
        self.required_codes = set(permission_codes)

    async def __call__(
        self,
        principal: Principal = Depends(get_current_principal),
    ) -> Principal:
        if not self.required_codes.issubset(principal.permissions):
            logger.warning(
                "Permission denied for %s (required: %s, granted: %s)",
                principal.subject,
                self.required_codes,
                set(principal.permissions),
            )
            # Do not reveal which codes are missing
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal


async def get_current_user(
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Authenticated caller as a local user row (created on first sight)."""
    return await user_service.sync_user(principal, db)


async def get_actor_scope(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    user: User = Depends(get_current_user),
) -> ActorScope:
    return resolve_actor_scope(principal, user, get_device_id(request))


def get_idp_gateway(request: Request) -> IdPGateway:
    """The application-wide gateway created in the startup hook."""
    return request.app.state.idp_gateway


def session_revoked_error(outcome: SessionRevoked) -> SessionRevokedError:
    detail = SessionRevokedDetail.from_session(outcome.session, outcome.revoked_by)
    return SessionRevokedError(
        "This device's session was revoked. Sign in again to continue.",
        detail=detail.model_dump(mode="json"),
    )


async def get_live_actor_scope(
    actor: ActorScope = Depends(get_actor_scope),
    db: AsyncSession = Depends(get_db),
) -> ActorScope:
    """
    Like `get_actor_scope`, but refuses a device whose own session was
    revoked under the presented token.  Guards every route that ends
    sessions, so a signed-out device cannot sign the others out.
    """
    if actor.device_id:
        outcome = await admission_service.find_revocation(
            actor.user_id,
            actor.device_id,
            db,
            external_session_id=actor.external_session_id,
            issued_at=actor.issued_at,
        )
        if outcome is not None:
            logger.warning(
                "Revoked device %s of user %s tried to end sessions",
                actor.device_id,
                actor.user_id,
            )
            raise session_revoked_error(outcome)
    return actor
