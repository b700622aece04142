"""HTTP surface: routing, envelopes, headers and status codes."""

import pytest
from fastapi.testclient import TestClient

from warden.app import app
from warden.service.gateway import ADMIN_CAPABILITY
from warden.service.runtime import get_runtime

SECRET = "correct-horse-battery"


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def seeded():
    runtime = get_runtime()
    store = runtime.store
    store.create_tenant("acme")
    store.create_tenant("globex")
    hash_secret = runtime.gateway.credentials.hash_secret
    alice = store.create_identity(
        "acme", "alice@acme", hash_secret(SECRET), capabilities=("reports:read",)
    )
    admin = store.create_identity(
        "acme", "admin@acme", hash_secret(SECRET), capabilities=(ADMIN_CAPABILITY,)
    )
    return {"alice": alice, "admin": admin}


def _login(client, identifier, tenant="acme", secret=SECRET):
    return client.post(
        "/v1/auth/login",
        json={"identifier": identifier, "secret": secret},
        headers={"X-Tenant-ID": tenant},
    )


def _auth(token, tenant="acme"):
    return {"Authorization": f"Bearer {token}", "X-Tenant-ID": tenant}


def test_login_returns_token_pair(client, seeded):
    response = _login(client, "alice@acme")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    data = body["data"]
    assert data["token_type"] == "bearer"
    assert data["identity_id"] == seeded["alice"].id
    assert data["tenant_id"] == "acme"
    assert data["expires_in"] > 0
    assert data["access_token"].count(".") == 2
    assert body["request_id"] == response.headers["X-Request-ID"]


def test_login_echoes_request_id(client, seeded):
    response = client.post(
        "/v1/auth/login",
        json={"identifier": "alice@acme", "secret": SECRET},
        headers={"X-Tenant-ID": "acme", "X-Request-ID": "req-123"},
    )
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["request_id"] == "req-123"


def test_bad_credentials_use_error_envelope(client, seeded):
    response = _login(client, "alice@acme", secret="wrong-secret")

    assert response.status_code == 401
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "invalid_credential"
    assert "request_id" in body


def test_login_requires_tenant_header(client, seeded):
    response = client.post(
        "/v1/auth/login", json={"identifier": "alice@acme", "secret": SECRET}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_invalid_body_is_validation_error(client, seeded):
    response = client.post(
        "/v1/auth/login", json={"identifier": "alice@acme"}, headers={"X-Tenant-ID": "acme"}
    )
    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "validation_error"
    assert isinstance(body["error"]["details"], list)


def test_verify_and_authorize(client, seeded):
    token = _login(client, "alice@acme").json()["data"]["access_token"]

    verified = client.post("/v1/auth/verify", headers=_auth(token))
    assert verified.status_code == 200
    assert verified.json()["data"]["capabilities"] == ["reports:read"]

    allowed = client.post(
        "/v1/auth/authorize", json={"capability": "reports:read"}, headers=_auth(token)
    )
    assert allowed.json()["data"] == {"allowed": True, "reason": None}

    denied = client.post(
        "/v1/auth/authorize", json={"capability": "reports:write"}, headers=_auth(token)
    )
    assert denied.status_code == 200
    assert denied.json()["data"] == {"allowed": False, "reason": "missing_capability"}


def test_missing_bearer_is_unauthorized(client, seeded):
    response = client.post("/v1/auth/verify", headers={"X-Tenant-ID": "acme"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "unauthorized"


def test_tampered_token_is_bad_signature(client, seeded):
    token = _login(client, "alice@acme").json()["data"]["access_token"]
    response = client.post("/v1/auth/verify", headers=_auth(token[:-2] + "xx"))
    assert response.status_code == 401
    assert response.json()["error"]["code"] in {"bad_signature", "malformed"}


def test_cross_tenant_is_forbidden(client, seeded):
    token = _login(client, "alice@acme").json()["data"]["access_token"]

    response = client.post("/v1/auth/verify", headers=_auth(token, tenant="globex"))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "tenant_mismatch"

    response = client.post(
        "/v1/auth/authorize",
        json={"capability": "reports:read", "resource_tenant_id": "globex"},
        headers=_auth(token),
    )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "tenant_mismatch"


def test_refresh_replay_is_reuse_detected(client, seeded):
    pair = _login(client, "alice@acme").json()["data"]

    rotated = client.post(
        "/v1/auth/refresh",
        json={"refresh_token": pair["refresh_token"]},
        headers={"X-Tenant-ID": "acme"},
    )
    assert rotated.status_code == 200
    new_pair = rotated.json()["data"]
    assert new_pair["refresh_token"] != pair["refresh_token"]

    replay = client.post(
        "/v1/auth/refresh",
        json={"refresh_token": pair["refresh_token"]},
        headers={"X-Tenant-ID": "acme"},
    )
    assert replay.status_code == 401
    assert replay.json()["error"]["code"] == "reuse_detected"

    verify = client.post("/v1/auth/verify", headers=_auth(new_pair["access_token"]))
    assert verify.json()["error"]["code"] == "revoked"


def test_logout_is_idempotent(client, seeded):
    token = _login(client, "alice@acme").json()["data"]["access_token"]
    first = client.post("/v1/auth/logout", headers=_auth(token))
    second = client.post("/v1/auth/logout", headers=_auth(token))

    assert first.status_code == second.status_code == 200
    assert first.json()["data"] == {"revoked": True}
    assert second.json()["data"] == {"revoked": False}


@pytest.mark.parametrize("path", ["/v1/auth/logout", "/v1/auth/logout-all"])
def test_session_routes_reject_other_tenant(client, seeded, path):
    token = _login(client, "alice@acme").json()["data"]["access_token"]

    response = client.post(path, headers=_auth(token, tenant="globex"))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "tenant_mismatch"

    missing = client.post(path, headers={"Authorization": f"Bearer {token}"})
    assert missing.status_code == 400

    # The session survived both rejected calls
    assert client.post("/v1/auth/verify", headers=_auth(token)).status_code == 200


def test_password_change_rejects_other_tenant(client, seeded):
    token = _login(client, "alice@acme").json()["data"]["access_token"]
    response = client.post(
        "/v1/auth/password",
        json={"current_secret": SECRET, "new_secret": "brand-new-secret"},
        headers=_auth(token, tenant="globex"),
    )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "tenant_mismatch"
    assert _login(client, "alice@acme").status_code == 200


def test_refresh_requires_matching_tenant(client, seeded):
    pair = _login(client, "alice@acme").json()["data"]

    missing = client.post("/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
    assert missing.status_code == 400

    other = client.post(
        "/v1/auth/refresh",
        json={"refresh_token": pair["refresh_token"]},
        headers={"X-Tenant-ID": "globex"},
    )
    assert other.status_code == 403
    assert other.json()["error"]["code"] == "tenant_mismatch"


def test_identity_administration(client, seeded):
    token = _login(client, "admin@acme").json()["data"]["access_token"]

    created = client.post(
        "/v1/identities",
        json={"identifier": "dave@acme", "secret": SECRET, "capabilities": ["reports:read"]},
        headers=_auth(token),
    )
    assert created.status_code == 201
    identity = created.json()["data"]
    assert identity["status"] == "active"

    duplicate = client.post(
        "/v1/identities",
        json={"identifier": "dave@acme", "secret": SECRET},
        headers=_auth(token),
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "conflict"

    granted = client.post(
        f"/v1/identities/{identity['id']}/capabilities/grant",
        json={"capability": "reports:write"},
        headers=_auth(token),
    )
    assert granted.json()["data"]["capabilities"] == ["reports:read", "reports:write"]
    assert granted.json()["data"]["version"] == identity["version"] + 1

    locked = client.put(
        f"/v1/identities/{identity['id']}/status",
        json={"status": "locked"},
        headers=_auth(token),
    )
    assert locked.json()["data"]["status"] == "locked"
    assert _login(client, "dave@acme").json()["error"]["code"] == "locked"


def test_non_admin_cannot_create_identities(client, seeded):
    token = _login(client, "alice@acme").json()["data"]["access_token"]
    response = client.post(
        "/v1/identities",
        json={"identifier": "eve@acme", "secret": SECRET},
        headers=_auth(token),
    )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "forbidden"


def test_record_activity(client, seeded):
    token = _login(client, "alice@acme").json()["data"]["access_token"]
    response = client.post(
        "/v1/audit/activity",
        json={"action": "report.viewed", "resource_type": "report", "resource_id": "r-1"},
        headers=_auth(token),
    )
    assert response.status_code == 200
    assert response.json()["data"]["event_id"]


def test_unknown_route_uses_envelope(client):
    response = client.get("/v1/does-not-exist")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_health_and_security_headers(client):
    response = client.get("/healthz", headers={"Origin": "http://localhost:3000"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["status"] == "healthy"
    assert body["checks"]["redis"]["status"] == "not_configured"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Cache-Control"] == "no-store"
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_lifespan_starts_and_flushes_audit(seeded):
    with TestClient(app) as client:
        _login(client, "alice@acme")
    runtime = get_runtime()
    assert runtime.gateway.audit.stats["running"] is False
    assert runtime.store.list_audit_events("acme", action="auth.login")


def test_wrong_method_is_client_error(client):
    response = client.get("/v1/auth/login")
    assert response.status_code == 405
    assert response.json()["error"]["code"] == "validation_error"
