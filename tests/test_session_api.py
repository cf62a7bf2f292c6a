"""Tests for the HTTP surface (self-service and admin routers).

Tests cover:
- Authentication (IdP bearer token) and the admin permission gate
- Device cookie issuance and logout cleanup
- Admission denial as 409 with remediation details
- A revoked device is refused (403 session_revoked) until it signs in again
- Error bodies: 400 / 403 / 404 with machine-readable codes
- Admin session management and device policy

Runs the real app in-process through httpx.ASGITransport.
"""

import time
import uuid

import pytest
from httpx import ASGITransport, AsyncClient

from devicegate.core.config import settings
from devicegate.core.database import get_db
from devicegate.main import create_app
from devicegate.models import SessionStatus
from devicegate.rbac.dependencies import get_idp_gateway
from devicegate.services import session_service

DEVICE_A = "c7a1e3f5-0b2d-4c6e-8a9b-1d3f5e7a9c01"
DEVICE_B = "c7a1e3f5-0b2d-4c6e-8a9b-1d3f5e7a9c02"
DEVICE_C = "c7a1e3f5-0b2d-4c6e-8a9b-1d3f5e7a9c03"
DEVICE_D = "c7a1e3f5-0b2d-4c6e-8a9b-1d3f5e7a9c04"

ADMIN_SUBJECT = "auth0|admin"


# -----------------------------------------------------------------------------
# Test Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def app(session_factory, gateway):
    app = create_app()

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_idp_gateway] = lambda: gateway
    return app


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
def auth(token_for):
    """Build request headers for a subject on a device."""

    def build(subject: str = "auth0|user-one", device_id: str | None = DEVICE_A, **claims) -> dict:
        headers = {"Authorization": f"Bearer {token_for(subject, **claims)}"}
        if device_id:
            headers["Cookie"] = f"{settings.DEVICE_COOKIE_NAME}={device_id}"
        return headers

    return build


@pytest.fixture
def admin_auth(auth):
    return auth(ADMIN_SUBJECT, DEVICE_D, permissions=[settings.ADMIN_PERMISSION])


async def _session_status(session_factory, session_id) -> SessionStatus:
    async with session_factory() as s:
        return (await session_service.get_session_by_id(uuid.UUID(str(session_id)), s)).status


# -----------------------------------------------------------------------------
# Authentication
# -----------------------------------------------------------------------------


class TestAuthentication:
    async def test_health_is_public(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    async def test_missing_token_rejected(self, client):
        response = await client.get("/api/sessions")
        assert response.status_code == 401

    async def test_bad_signature_rejected(self, client):
        response = await client.get(
            "/api/sessions", headers={"Authorization": "Bearer not.a.jwt"}
        )
        assert response.status_code == 401

    async def test_me_syncs_user_from_claims(self, client, auth):
        response = await client.get("/api/sessions/me", headers=auth("auth0|fresh-user"))

        assert response.status_code == 200
        body = response.json()
        assert body["external_id"] == "auth0|fresh-user"
        assert body["email"] == "user@example.com"
        assert body["email_verified"] is True


# -----------------------------------------------------------------------------
# Admission
# -----------------------------------------------------------------------------


class TestAdmitEndpoint:
    async def test_admit_records_device_and_sid(self, client, auth):
        response = await client.post(
            "/api/sessions/admit",
            json={"device": {"browser_name": "Firefox", "os_name": "Linux"}},
            headers={**auth(sid="idp-sid-1"), "User-Agent": "Mozilla/5.0 Test"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["active_count"] == 1
        assert body["max_devices"] == 3
        assert body["session"]["device_id"] == DEVICE_A
        assert body["session"]["browser_name"] == "Firefox"
        assert body["session"]["status"] == "ACTIVE"
        assert body["session"]["is_current"] is True

    async def test_admit_without_cookie_issues_device_id(self, client, auth):
        response = await client.post("/api/sessions/admit", headers=auth(device_id=None))

        assert response.status_code == 200
        issued = response.cookies.get(settings.DEVICE_COOKIE_NAME)
        assert issued
        assert response.json()["session"]["device_id"] == issued
        set_cookie = response.headers["set-cookie"].lower()
        assert "httponly" in set_cookie
        assert "samesite=lax" in set_cookie

    async def test_fourth_device_gets_409_with_details(self, client, auth):
        for device in (DEVICE_A, DEVICE_B, DEVICE_C):
            assert (await client.post("/api/sessions/admit", headers=auth(device_id=device))).status_code == 200

        response = await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_D))

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "device_limit_exceeded"
        assert body["active_count"] == 3
        assert body["max_devices"] == 3
        assert body["sessions_url"] == "/api/sessions"

    async def test_malformed_device_cookie_is_400(self, client, auth):
        response = await client.post("/api/sessions/admit", headers=auth(device_id="garbage"))

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"


# -----------------------------------------------------------------------------
# Listing & revocation
# -----------------------------------------------------------------------------


class TestSessionEndpoints:
    async def test_list_marks_current_device(self, client, auth):
        await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_A))
        await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_B))

        response = await client.get("/api/sessions", headers=auth(device_id=DEVICE_B))

        assert response.status_code == 200
        current = {s["device_id"]: s["is_current"] for s in response.json()}
        assert current == {DEVICE_A: False, DEVICE_B: True}

    async def test_revoke_twice_is_idempotent(self, client, auth, session_factory):
        admitted = await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_B))
        session_id = admitted.json()["session"]["id"]

        first = await client.post(f"/api/sessions/{session_id}/revoke", headers=auth())
        second = await client.post(f"/api/sessions/{session_id}/revoke", headers=auth())

        assert first.status_code == 200
        assert first.json()["revoked"] is True
        assert second.status_code == 200
        assert second.json()["revoked"] is False
        assert await _session_status(session_factory, session_id) == SessionStatus.REVOKED

    async def test_revoke_unknown_is_404(self, client, auth):
        response = await client.post(f"/api/sessions/{uuid.uuid4()}/revoke", headers=auth())

        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    async def test_revoke_malformed_id_is_400(self, client, auth):
        response = await client.post("/api/sessions/not-a-uuid/revoke", headers=auth())

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    async def test_revoke_id_with_trailing_newline_is_400(self, client, auth):
        response = await client.post(f"/api/sessions/{uuid.uuid4()}%0A/revoke", headers=auth())

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    async def test_revoke_someone_elses_session_is_403(self, client, auth, session_factory):
        theirs = await client.post(
            "/api/sessions/admit", headers=auth("auth0|someone-else", DEVICE_C)
        )
        session_id = theirs.json()["session"]["id"]

        response = await client.post(f"/api/sessions/{session_id}/revoke", headers=auth())

        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"
        assert await _session_status(session_factory, session_id) == SessionStatus.ACTIVE

    async def test_revoke_device_then_admit_new_one(self, client, auth, admin_auth):
        await client.put("/api/admin/settings", json={"max_devices": 2}, headers=admin_auth)
        await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_A))
        await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_B))

        denied = await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_C))
        assert denied.status_code == 409
        assert denied.json()["active_count"] == 2

        revoked = await client.post(
            "/api/sessions/revoke-device",
            json={"device_id": DEVICE_B, "reason": "user_revoked"},
            headers=auth(device_id=DEVICE_A),
        )
        assert revoked.status_code == 200
        assert revoked.json()["revoked"] is True

        admitted = await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_C))
        assert admitted.status_code == 200
        assert admitted.json()["active_count"] == 2

        listing = await client.get("/api/sessions", headers=auth(device_id=DEVICE_A))
        by_device = {s["device_id"]: s for s in listing.json()}
        assert by_device[DEVICE_B]["status"] == "REVOKED"
        assert by_device[DEVICE_B]["revoked_by_device_id"] == DEVICE_A
        assert by_device[DEVICE_B]["revoked_reason"] == "user_revoked"

    async def test_revoke_all_calls_idp_once(self, client, auth, fake_idp):
        await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_A))
        await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_B))

        response = await client.post("/api/sessions/revoke-all", headers=auth())

        assert response.status_code == 200
        assert response.json() == {"revoked_count": 2}
        assert len(fake_idp.kill_requests) == 1

    async def test_logout_revokes_device_and_clears_cookie(self, client, auth, fake_idp):
        await client.post("/api/sessions/admit", headers=auth(sid="idp-sid-9"))

        response = await client.post("/api/sessions/logout", headers=auth())

        assert response.status_code == 200
        set_cookie = response.headers["set-cookie"]
        assert set_cookie.startswith(f"{settings.DEVICE_COOKIE_NAME}=")
        assert "Max-Age=0" in set_cookie
        assert fake_idp.kill_requests[0].url.path == "/api/v2/sessions/idp-sid-9"

        listing = await client.get("/api/sessions?active_only=true", headers=auth())
        assert listing.json() == []


# -----------------------------------------------------------------------------
# Revoked devices
# -----------------------------------------------------------------------------


async def _revoke_b_from_a(client, auth, **b_claims) -> dict:
    """Sign in on A (Firefox/Linux) and B, then sign B out from A."""
    a = await client.post(
        "/api/sessions/admit",
        json={"device": {"browser_name": "Firefox", "os_name": "Linux", "device_type": "desktop"}},
        headers=auth(device_id=DEVICE_A, sid="sid-a"),
    )
    b = await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_B, **b_claims))
    assert b.status_code == 200

    revoked = await client.post(
        "/api/sessions/revoke-device",
        json={"device_id": DEVICE_B, "reason": "device_revoked"},
        headers=auth(device_id=DEVICE_A, sid="sid-a"),
    )
    assert revoked.json()["revoked"] is True
    return a.json()["session"]


class TestRevokedDevice:
    async def test_readmit_with_killed_sid_is_refused(self, client, auth, session_factory):
        await _revoke_b_from_a(client, auth, sid="sid-b")

        response = await client.post(
            "/api/sessions/admit", headers=auth(device_id=DEVICE_B, sid="sid-b")
        )

        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "session_revoked"
        detail = body["detail"]
        assert detail["revoked_reason"] == "device_revoked"
        assert detail["revoked_by_device_id"] == DEVICE_A
        assert detail["revoked_at"] is not None
        assert detail["revoked_by"] == {
            "device_id": DEVICE_A,
            "browser_name": "Firefox",
            "os_name": "Linux",
            "device_type": "desktop",
        }
        assert await _session_status(session_factory, detail["session_id"]) == SessionStatus.REVOKED

        listing = await client.get(
            "/api/sessions?active_only=true", headers=auth(device_id=DEVICE_A, sid="sid-a")
        )
        assert [s["device_id"] for s in listing.json()] == [DEVICE_A]

    async def test_revoked_device_cannot_end_other_sessions(
        self, client, auth, fake_idp, session_factory
    ):
        a_session = await _revoke_b_from_a(client, auth, sid="sid-b")
        b_headers = auth(device_id=DEVICE_B, sid="sid-b")

        responses = [
            await client.post(f"/api/sessions/{a_session['id']}/revoke", headers=b_headers),
            await client.post(
                "/api/sessions/revoke-device", json={"device_id": DEVICE_A}, headers=b_headers
            ),
            await client.post("/api/sessions/revoke-all", headers=b_headers),
        ]

        assert [r.status_code for r in responses] == [403, 403, 403]
        assert {r.json()["error"] for r in responses} == {"session_revoked"}
        assert await _session_status(session_factory, a_session["id"]) == SessionStatus.ACTIVE
        assert [r.url.path for r in fake_idp.kill_requests] == ["/api/v2/sessions/sid-b"]

    async def test_signing_in_again_readmits(self, client, auth):
        await _revoke_b_from_a(client, auth, sid="sid-b")

        response = await client.post(
            "/api/sessions/admit", headers=auth(device_id=DEVICE_B, sid="sid-b-2")
        )

        assert response.status_code == 200
        assert response.json()["session"]["status"] == "ACTIVE"
        assert response.json()["active_count"] == 2

    async def test_without_sid_token_age_decides(self, client, auth):
        issued_before = int(time.time()) - 60
        await _revoke_b_from_a(client, auth, iat=issued_before)

        stale = await client.post(
            "/api/sessions/admit", headers=auth(device_id=DEVICE_B, iat=issued_before)
        )
        fresh = await client.post(
            "/api/sessions/admit", headers=auth(device_id=DEVICE_B, iat=int(time.time()) + 60)
        )

        assert stale.status_code == 403
        assert stale.json()["error"] == "session_revoked"
        assert fresh.status_code == 200


# -----------------------------------------------------------------------------
# Admin
# -----------------------------------------------------------------------------


class TestAdminEndpoints:
    async def test_requires_admin_permission(self, client, auth):
        response = await client.get("/api/admin/settings", headers=auth())
        assert response.status_code == 403

    async def test_read_default_policy(self, client, admin_auth):
        response = await client.get("/api/admin/settings", headers=admin_auth)

        assert response.status_code == 200
        assert response.json() == {"max_devices": 3, "inactivity_days": 7, "is_default": True}

    async def test_update_policy(self, client, admin_auth):
        response = await client.put(
            "/api/admin/settings", json={"max_devices": 5}, headers=admin_auth
        )
        reread = await client.get("/api/admin/settings", headers=admin_auth)

        assert response.status_code == 200
        assert reread.json() == {"max_devices": 5, "inactivity_days": 7, "is_default": False}

    async def test_negative_limit_rejected(self, client, admin_auth):
        response = await client.put(
            "/api/admin/settings", json={"max_devices": -1}, headers=admin_auth
        )

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    async def test_list_and_force_logout_user(self, client, auth, admin_auth):
        await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_A))
        await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_B))
        user_id = (await client.get("/api/sessions/me", headers=auth())).json()["id"]

        listing = await client.get(f"/api/admin/users/{user_id}/sessions", headers=admin_auth)
        assert listing.status_code == 200
        assert len(listing.json()) == 2

        revoked = await client.post(f"/api/admin/users/{user_id}/revoke-all", headers=admin_auth)
        assert revoked.status_code == 200
        assert revoked.json() == {"revoked_count": 2}

        listing = await client.get(f"/api/admin/users/{user_id}/sessions", headers=admin_auth)
        assert {s["revoked_reason"] for s in listing.json()} == {"admin_revoked_all"}

    async def test_admin_revokes_single_session(self, client, auth, admin_auth, session_factory):
        admitted = await client.post("/api/sessions/admit", headers=auth(device_id=DEVICE_B))
        session_id = admitted.json()["session"]["id"]

        response = await client.post(f"/api/admin/sessions/{session_id}/revoke", headers=admin_auth)

        assert response.status_code == 200
        assert response.json()["revoked"] is True
        assert await _session_status(session_factory, session_id) == SessionStatus.REVOKED

    async def test_unknown_user_is_404(self, client, admin_auth):
        response = await client.get(f"/api/admin/users/{uuid.uuid4()}/sessions", headers=admin_auth)

        assert response.status_code == 404
