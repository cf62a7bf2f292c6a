"""Pytest configuration and shared fixtures.

Tests run against a throwaway SQLite file database (aiosqlite) created
with `Base.metadata.create_all` per test, and an in-process IdP built
on `httpx.MockTransport`.  No network, no PostgreSQL.
"""

import os
import uuid
from collections.abc import AsyncGenerator

# Must be set before devicegate.core.config is imported anywhere.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUTH_JWT_KEY", "test-signing-key")
os.environ.setdefault("IDP_DOMAIN", "idp.test")

import httpx
import pytest
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from devicegate.core.config import settings
from devicegate.models import Base, DeviceAttributes, User, UserSession
from devicegate.services import session_service
from devicegate.services.idp_gateway import IdPConfig, IdPGateway

IDP_BASE_URL = "https://idp.test"


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest.fixture
async def engine(tmp_path):
    """File-backed so concurrent sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'devicegate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


async def create_user(db: AsyncSession, external_id: str | None = None) -> User:
    user = User(
        id=uuid.uuid4(),
        external_id=external_id or f"auth0|{uuid.uuid4().hex[:24]}",
        display_name="Test User",
        email="user@example.com",
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def user(db) -> User:
    return await create_user(db, "auth0|user-one")


@pytest.fixture
async def other_user(db) -> User:
    return await create_user(db, "auth0|user-two")


async def add_session(
    db: AsyncSession,
    user: User,
    device_id: str,
    external_session_id: str | None = None,
) -> UserSession:
    session = await session_service.upsert_active_session(
        user.id,
        device_id,
        DeviceAttributes(browser_name="Firefox", os_name="Linux"),
        db,
        external_session_id=external_session_id,
    )
    await db.commit()
    return session


# ---------------------------------------------------------------------------
# IdP
# ---------------------------------------------------------------------------
class FakeIdP:
    """Scriptable management API behind httpx.MockTransport."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.token_statuses: list[int] = []
        self.kill_statuses: list[int] = []
        self.kill_status = 204
        self.kill_error: type[httpx.HTTPError] | None = None
        self.expires_in = 86400
        self.token_fetches = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/token":
            self.token_fetches += 1
            status = self.token_statuses.pop(0) if self.token_statuses else 200
            if status != 200:
                return httpx.Response(status, json={"error": "access_denied"})
            return httpx.Response(
                200,
                json={
                    "access_token": f"mgmt-token-{self.token_fetches}",
                    "expires_in": self.expires_in,
                    "token_type": "Bearer",
                },
            )

        if self.kill_error is not None:
            raise self.kill_error("idp down", request=request)
        status = self.kill_statuses.pop(0) if self.kill_statuses else self.kill_status
        return httpx.Response(status)

    @property
    def kill_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "DELETE"]


@pytest.fixture
def fake_idp() -> FakeIdP:
    return FakeIdP()


def make_gateway(fake_idp: FakeIdP, clock=None, **config) -> IdPGateway:
    client = httpx.AsyncClient(
        base_url=IDP_BASE_URL,
        transport=httpx.MockTransport(fake_idp.handler),
    )
    idp_config = IdPConfig(
        base_url=IDP_BASE_URL,
        client_id="client-id",
        client_secret="client-secret",
        audience=f"{IDP_BASE_URL}/api/v2/",
        token_retry_wait=0,
        **config,
    )
    if clock is None:
        return IdPGateway(idp_config, client=client)
    return IdPGateway(idp_config, client=client, clock=clock)


@pytest.fixture
async def gateway(fake_idp) -> AsyncGenerator[IdPGateway, None]:
    gw = make_gateway(fake_idp)
    yield gw
    await gw.aclose()


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------
def mint_token(
    subject: str,
    sid: str | None = None,
    permissions: list[str] | None = None,
    iat: int | None = None,
) -> str:
    claims = {
        "sub": subject,
        "permissions": permissions or [],
        "name": "Test User",
        "email": "user@example.com",
        "email_verified": True,
    }
    if sid:
        claims["sid"] = sid
    if iat is not None:
        claims["iat"] = iat
    return jwt.encode(claims, settings.AUTH_JWT_KEY, algorithm="HS256")


# ---------------------------------------------------------------------------
# Helper fixtures (test modules do not import conftest directly)
# ---------------------------------------------------------------------------
@pytest.fixture
def make_user():
    return create_user


@pytest.fixture
def make_session():
    return add_session


@pytest.fixture
async def gateway_factory(fake_idp):
    created: list[IdPGateway] = []

    def factory(clock=None, **config) -> IdPGateway:
        gw = make_gateway(fake_idp, clock=clock, **config)
        created.append(gw)
        return gw

    yield factory
    for gw in created:
        await gw.aclose()


@pytest.fixture
def token_for():
    return mint_token
