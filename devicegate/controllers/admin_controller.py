"""
Admin controller — other users' sessions & the device policy.

Every route uses `Depends(require_permission(...))` with the admin
permission from the IdP token.  Controllers are THIN — they delegate
to services and return schemas.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from devicegate.core.config import settings
from devicegate.core.database import get_db
from devicegate.core.identifiers import parse_uuid
from devicegate.models.session import RevocationReason
from devicegate.rbac.context_resolver import ActorScope
from devicegate.rbac.dependencies import get_idp_gateway, get_live_actor_scope, require_permission
from devicegate.schemas import (
    DevicePolicyOut,
    RevocationOut,
    RevokeAllOut,
    RevokeAllRequest,
    RevokeRequest,
    SessionOut,
    UpdateDevicePolicyRequest,
)
from devicegate.services import (
    revocation_service,
    session_service,
    settings_service,
    user_service,
)
from devicegate.services.idp_gateway import IdPGateway

router = APIRouter(
    prefix="/api/admin",
    tags=["Admin"],
    dependencies=[Depends(require_permission(settings.ADMIN_PERMISSION))],
)


# ── Sessions ─────────────────────────────────────────────────────────
@router.get("/users/{user_id}/sessions", response_model=list[SessionOut])
async def list_user_sessions(
    user_id: str,
    db: AsyncSession = Depends(get_db),
):
    user = await user_service.get_user_by_id(parse_uuid(user_id, "user_id"), db)
    sessions = await session_service.list_all(user.id, db)
    return [SessionOut.from_session(s) for s in sessions]


@router.post("/sessions/{session_id}/revoke", response_model=RevocationOut)
async def revoke_user_session(
    session_id: str,
    body: RevokeRequest | None = None,
    actor: ActorScope = Depends(get_live_actor_scope),
    gateway: IdPGateway = Depends(get_idp_gateway),
    db: AsyncSession = Depends(get_db),
):
    reason = body.reason if body else RevocationReason.ADMIN_REVOKED.value
    result = await revocation_service.revoke_one(session_id, reason, actor, gateway, db)
    return RevocationOut(
        session_id=result.session_id,
        revoked=result.revoked,
        idp_status=result.idp_result.status_code if result.idp_result else None,
    )


@router.post("/users/{user_id}/revoke-all", response_model=RevokeAllOut)
async def revoke_user_sessions(
    user_id: str,
    body: RevokeAllRequest | None = None,
    actor: ActorScope = Depends(get_live_actor_scope),
    gateway: IdPGateway = Depends(get_idp_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Force-logout a user on every device."""
    reason = body.reason if body else RevocationReason.ADMIN_REVOKED_ALL.value
    user = await user_service.get_user_by_id(parse_uuid(user_id, "user_id"), db)
    count = await revocation_service.revoke_all(user, reason, actor, gateway, db)
    return RevokeAllOut(revoked_count=count)


# ── Device policy ────────────────────────────────────────────────────
@router.get("/settings", response_model=DevicePolicyOut)
async def read_device_policy(db: AsyncSession = Depends(get_db)):
    policy = await settings_service.get_device_policy(db)
    return DevicePolicyOut(
        max_devices=policy.max_devices,
        inactivity_days=policy.inactivity_days,
        is_default=policy.is_default,
    )


@router.put("/settings", response_model=DevicePolicyOut)
async def update_device_policy(
    body: UpdateDevicePolicyRequest,
    db: AsyncSession = Depends(get_db),
):
    policy = await settings_service.update_device_policy(
        db,
        max_devices=body.max_devices,
        inactivity_days=body.inactivity_days,
    )
    return DevicePolicyOut(max_devices=policy.max_devices, inactivity_days=policy.inactivity_days)
