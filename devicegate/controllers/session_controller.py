"""
Session controller — self-service device sessions.

Every route needs a valid IdP bearer token; the device is identified by
the `device_id` cookie the middleware guarantees.  Controllers are
THIN — they delegate to services and return schemas.
"""

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from devicegate.core.database import get_db
from devicegate.core.security import Principal, clear_device_cookie, get_current_principal
from devicegate.models.session import RevocationReason
from devicegate.models.user import User
from devicegate.rbac.context_resolver import ActorScope
from devicegate.rbac.dependencies import (
    get_actor_scope,
    get_current_user,
    get_idp_gateway,
    get_live_actor_scope,
    session_revoked_error,
)
from devicegate.schemas import (
    AdmissionOut,
    AdmitRequest,
    DeviceLimitExceeded,
    MessageResponse,
    RevocationOut,
    RevokeAllOut,
    RevokeAllRequest,
    RevokeDeviceRequest,
    RevokeRequest,
    SessionOut,
    UserOut,
)
from devicegate.services import admission_service, revocation_service, session_service
from devicegate.services.idp_gateway import IdPGateway

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def _revocation_out(result: revocation_service.RevocationResult) -> RevocationOut:
    return RevocationOut(
        session_id=result.session_id,
        revoked=result.revoked,
        idp_status=result.idp_result.status_code if result.idp_result else None,
    )


@router.post(
    "/admit",
    response_model=AdmissionOut,
    responses={
        403: {"description": "This device's session was revoked"},
        409: {"model": DeviceLimitExceeded},
    },
)
async def admit(
    request: Request,
    body: AdmitRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    actor: ActorScope = Depends(get_actor_scope),
    db: AsyncSession = Depends(get_db),
):
    """Claim (or refresh) this device's session slot."""
    body = body or AdmitRequest()
    attributes = body.device.to_attributes(
        user_agent=request.headers.get("user-agent", ""),
        ip_address=_client_ip(request),
    )
    decision = await admission_service.admit_or_renew(
        actor.user_id,
        actor.device_id,
        attributes,
        db,
        external_session_id=principal.external_session_id,
        issued_at=principal.issued_at,
    )
    if decision.revoked is not None:
        raise session_revoked_error(decision.revoked)
    if not decision.admitted:
        denial = DeviceLimitExceeded(
            message=(
                f"Device limit reached ({decision.active_count}/{decision.max_devices}). "
                "Revoke a session to sign in on this device."
            ),
            active_count=decision.active_count,
            max_devices=decision.max_devices,
        )
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=denial.model_dump())

    return AdmissionOut(
        active_count=decision.active_count,
        max_devices=decision.max_devices,
        session=SessionOut.from_session(decision.session, actor.device_id),
    )


@router.get("", response_model=list[SessionOut])
async def list_sessions(
    active_only: bool = False,
    actor: ActorScope = Depends(get_actor_scope),
    db: AsyncSession = Depends(get_db),
):
    """The caller's sessions, most recently seen first."""
    if active_only:
        sessions = await session_service.list_active(actor.user_id, db)
    else:
        sessions = await session_service.list_all(actor.user_id, db)
    return [SessionOut.from_session(s, actor.device_id) for s in sessions]


@router.post("/{session_id}/revoke", response_model=RevocationOut)
async def revoke_session(
    session_id: str,
    body: RevokeRequest | None = None,
    actor: ActorScope = Depends(get_live_actor_scope),
    gateway: IdPGateway = Depends(get_idp_gateway),
    db: AsyncSession = Depends(get_db),
):
    body = body or RevokeRequest()
    result = await revocation_service.revoke_one(session_id, body.reason, actor, gateway, db)
    return _revocation_out(result)


@router.post("/revoke-device", response_model=RevocationOut)
async def revoke_device(
    body: RevokeDeviceRequest,
    actor: ActorScope = Depends(get_live_actor_scope),
    gateway: IdPGateway = Depends(get_idp_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Sign one of the caller's other devices out (from this device)."""
    result = await revocation_service.revoke_by_device(
        actor.user_id,
        body.device_id,
        body.reason,
        gateway,
        db,
        acting_device_id=actor.device_id,
    )
    return _revocation_out(result)


@router.post("/revoke-all", response_model=RevokeAllOut)
async def revoke_all(
    body: RevokeAllRequest | None = None,
    user: User = Depends(get_current_user),
    actor: ActorScope = Depends(get_live_actor_scope),
    gateway: IdPGateway = Depends(get_idp_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Sign out everywhere."""
    body = body or RevokeAllRequest()
    count = await revocation_service.revoke_all(user, body.reason, actor, gateway, db)
    return RevokeAllOut(revoked_count=count)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    actor: ActorScope = Depends(get_actor_scope),
    gateway: IdPGateway = Depends(get_idp_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Revoke this device's session and forget the device cookie."""
    if actor.device_id:
        await revocation_service.revoke_by_device(
            actor.user_id,
            actor.device_id,
            RevocationReason.LOGOUT.value,
            gateway,
            db,
            acting_device_id=actor.device_id,
        )
    clear_device_cookie(response)
    request.state.device_cookie_cleared = True
    return MessageResponse(detail="Logged out successfully")


@router.get("/me", response_model=UserOut)
async def me(user: User = Depends(get_current_user)):
    return UserOut.model_validate(user)
