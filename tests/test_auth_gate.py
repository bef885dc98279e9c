"""Request authentication through the FastAPI dependencies."""

import asyncio
from dataclasses import asdict

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from vendorportal.api.deps import (
    device_from_request,
    get_identity,
    get_identity_allow_pending,
    require_roles,
    require_vendor_access,
)
from vendorportal.api.error_handling import register_exception_handlers
from vendorportal.service.auth import AuthContext
from vendorportal.service.runtime import get_runtime
from vendorportal.storage.models import RoleKind, StaffRole, VendorRole

PASSWORD = "Correct-Horse-9"


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/me")
    async def me(identity: AuthContext = Depends(get_identity)):
        return {"user_id": identity.user_id, "roles": sorted(k.value for k in identity.role_kinds)}

    @app.get("/enroll")
    async def enroll(identity: AuthContext = Depends(get_identity_allow_pending)):
        return {"pending": identity.two_factor_pending}

    @app.get("/admin")
    async def admin(identity: AuthContext = Depends(require_roles(RoleKind.ELIKA_ADMIN))):
        return {"ok": True}

    @app.get("/vendor")
    async def vendor(vendor_id: str = Depends(require_vendor_access)):
        return {"vendor_id": vendor_id}

    @app.get("/device")
    async def device(request: Request):
        return asdict(device_from_request(request))

    @app.get("/boom")
    async def boom():
        raise RuntimeError("SELECT * FROM app_user exploded")

    return app


@pytest.fixture
def client():
    return TestClient(_build_app(), raise_server_exceptions=False)


def _login_headers(email, *roles):
    auth = get_runtime().auth

    async def _run():
        await auth.admin_create_user(email=email, roles=roles, password=PASSWORD)
        result = await auth.login(email, PASSWORD)
        return result

    result = asyncio.run(_run())
    return result, {"Authorization": f"Bearer {result.tokens.access_token}"}


def test_missing_token_envelope(client):
    resp = client.get("/me")
    assert resp.status_code == 401
    assert resp.headers["WWW-Authenticate"] == "Bearer"
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "MISSING_TOKEN"
    assert body["request_id"]


def test_valid_token_reaches_route(client):
    result, headers = _login_headers("va@vendor.example", VendorRole(RoleKind.VENDOR_ADMIN, "v-1"))
    resp = client.get("/me", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"user_id": result.user.id, "roles": ["vendor_admin"]}


def test_revoked_token(client):
    result, headers = _login_headers("rv@vendor.example", VendorRole(RoleKind.VENDOR_ADMIN, "v-1"))
    asyncio.run(get_runtime().auth.logout_all(result.user.id))
    resp = client.get("/me", headers=headers)
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "TOKEN_REVOKED"


def test_invalid_token(client):
    resp = client.get("/me", headers={"Authorization": "Bearer x.y.z"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "INVALID_TOKEN"


def test_privileged_user_must_enroll(client):
    _, headers = _login_headers("admin@elika.example", StaffRole(RoleKind.ELIKA_ADMIN))
    resp = client.get("/me", headers=headers)
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "TWO_FA_SETUP_REQUIRED"

    resp = client.get("/enroll", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"pending": True}


def test_role_guard(client):
    _, headers = _login_headers("rec@vendor.example", VendorRole(RoleKind.VENDOR_RECRUITER, "v-2"))
    resp = client.get("/admin", headers=headers)
    assert resp.status_code == 403
    error = resp.json()["error"]
    assert error["code"] == "INSUFFICIENT_PERMISSIONS"
    assert error["details"] == {"required": ["elika_admin"], "current": ["vendor_recruiter"]}

    resp = client.get("/vendor", headers=headers)
    assert resp.json() == {"vendor_id": "v-2"}


def test_vendor_guard_rejects_staff(client):
    _, headers = _login_headers("dh@elika.example", StaffRole(RoleKind.DELIVERY_HEAD))
    resp = client.get("/vendor", headers=headers)
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "VENDOR_ACCESS_REQUIRED"


def test_no_roles_guard(client):
    _, headers = _login_headers("nobody@vendor.example")
    resp = client.get("/admin", headers=headers)
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "NO_ROLES"


def test_device_context_from_headers(client):
    resp = client.get(
        "/device",
        headers={
            "User-Agent": "portal-tests",
            "X-Forwarded-For": "203.0.113.7, 10.0.0.1",
            "X-Device-ID": "laptop-1",
        },
    )
    assert resp.json() == {
        "user_agent": "portal-tests",
        "ip_address": "203.0.113.7",
        "device_id": "laptop-1",
    }


def test_unhandled_error_is_generic(client):
    resp = client.get("/boom")
    assert resp.status_code == 500
    error = resp.json()["error"]
    assert error["code"] == "SERVER_ERROR"
    assert "SELECT" not in error["message"]
