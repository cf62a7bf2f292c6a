"""
Bearer-token verification & device cookie helpers.

- Authentication is delegated to the external IdP: this service never
  issues tokens, it only verifies the IdP-signed JWT on each request
  and reads the claims it needs (`sub`, `sid`, `permissions`, profile).
- The `device_id` cookie is the long-lived, non-secret browser token
  that admission is keyed on.  `DeviceCookieMiddleware` mints one for
  any request that arrives without it.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from devicegate.core.config import settings

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller as asserted by the IdP token."""

    subject: str
    external_session_id: str | None = None
    issued_at: datetime | None = None
    permissions: frozenset[str] = field(default_factory=frozenset)
    name: str | None = None
    email: str | None = None
    email_verified: bool = False
    picture: str | None = None
    phone_number: str | None = None

    def has_permission(self, code: str) -> bool:
        return code in self.permissions

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "Principal":
        permissions = claims.get("permissions") or []
        if isinstance(permissions, str):
            permissions = permissions.split()
        iat = claims.get("iat")
        return cls(
            subject=claims["sub"],
            external_session_id=claims.get("sid"),
            issued_at=datetime.fromtimestamp(iat, timezone.utc) if iat is not None else None,
            permissions=frozenset(permissions),
            name=claims.get("name"),
            email=claims.get("email"),
            email_verified=bool(claims.get("email_verified", False)),
            picture=claims.get("picture"),
            phone_number=claims.get("phone_number"),
        )


# ── JWT ──────────────────────────────────────────────────────────────

def decode_access_token(token: str) -> dict[str, Any]:
    """Decode & validate an IdP-issued JWT.  Raises HTTPException on failure."""
    options = {"verify_aud": settings.AUTH_JWT_AUDIENCE is not None}
    try:
        return jwt.decode(
            token,
            settings.AUTH_JWT_KEY,
            algorithms=settings.AUTH_JWT_ALGORITHMS,
            audience=settings.AUTH_JWT_AUDIENCE,
            issuer=settings.AUTH_JWT_ISSUER,
            options=options,
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    """FastAPI dependency: verifies the bearer token and returns its Principal."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    claims = decode_access_token(credentials.credentials)
    if not claims.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload — missing subject",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Principal.from_claims(claims)


# ── Device cookie ────────────────────────────────────────────────────

def set_device_cookie(response: Response, device_id: str) -> None:
    response.set_cookie(
        settings.DEVICE_COOKIE_NAME,
        device_id,
        max_age=settings.DEVICE_COOKIE_MAX_AGE_SECONDS,
        httponly=True,
        samesite="lax",
        secure=settings.IS_PRODUCTION,
        path="/",
    )


def clear_device_cookie(response: Response) -> None:
    response.delete_cookie(settings.DEVICE_COOKIE_NAME, path="/")


class DeviceCookieMiddleware(BaseHTTPMiddleware):
    """
    Ensure every request carries a device id.

    A request without the cookie gets a fresh UUID4 on
    `request.state.device_id` (so the handler sees it immediately) and
    the cookie is set on the way out unless the handler cleared it.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        existing = request.cookies.get(settings.DEVICE_COOKIE_NAME)
        minted = None if existing else str(uuid.uuid4())
        request.state.device_id = existing or minted
        request.state.device_cookie_cleared = False

        response = await call_next(request)

        if minted and not request.state.device_cookie_cleared:
            set_device_cookie(response, minted)
        return response


def get_device_id(request: Request) -> str | None:
    """Raw device id for this request (validated by the caller)."""
    return getattr(request.state, "device_id", None) or request.cookies.get(
        settings.DEVICE_COOKIE_NAME
    )
