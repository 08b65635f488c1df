from datetime import datetime, timedelta, timezone

import jwt

from isp_crm.config import settings
from isp_crm.security import create_access_token

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-pass"


def _login(client, identifier, password):
    return client.post("/api/auth/login", json={"identifier": identifier, "password": password})


def test_login_requires_identifier_and_password(client) -> None:
    resp = client.post("/api/auth/login", json={"identifier": ADMIN_EMAIL})
    assert resp.status_code == 400


def test_login_rejects_bad_credentials(client, admin_user) -> None:
    wrong_password = _login(client, ADMIN_EMAIL, "not-the-password")
    unknown_user = _login(client, "nobody@example.com", "whatever")
    assert wrong_password.status_code == 401
    assert unknown_user.status_code == 401
    assert wrong_password.json()["message"] == unknown_user.json()["message"] == "invalid credentials"


def test_login_by_email_or_phone(client, admin_user) -> None:
    by_email = _login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
    assert by_email.status_code == 200
    body = by_email.json()
    assert body["token"]
    assert body["expires_at"]
    assert body["user"]["role"] == "admin"
    assert "password_hash" not in body["user"]

    assert _login(client, "0700000001", ADMIN_PASSWORD).status_code == 200


def test_register_then_me_and_logout(client) -> None:
    resp = client.post(
        "/api/auth/register",
        json={"name": "Jane Wanjiku", "email": "jane@example.com", "phone": "0712345678", "password": "secret123"},
    )
    assert resp.status_code == 201
    assert resp.json()["user"]["role"] == "customer"

    duplicate = client.post(
        "/api/auth/register", json={"name": "Jane", "email": "jane@example.com", "password": "secret123"}
    )
    assert duplicate.status_code == 409

    token = _login(client, "jane@example.com", "secret123").json()["token"]
    headers = {"Authorization": f"Bearer {token}"}
    assert client.get("/api/auth/me", headers=headers).json()["user"]["email"] == "jane@example.com"
    assert client.get("/api/auth/verify", headers=headers).json()["valid"] is True

    assert client.post("/api/auth/logout", headers=headers).status_code == 200
    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_protected_routes_need_a_valid_token(client) -> None:
    assert client.get("/api/auth/me").status_code == 401
    assert client.get("/api/auth/verify", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_user_management_is_admin_only(client, admin_headers) -> None:
    created = client.post(
        "/api/auth/users",
        json={"name": "Agent", "email": "agent@example.com", "role": "support", "password": "secret123"},
        headers=admin_headers,
    )
    assert created.status_code == 201
    agent_id = created.json()["user"]["id"]

    agent_token = _login(client, "agent@example.com", "secret123").json()["token"]
    agent_headers = {"Authorization": f"Bearer {agent_token}"}
    assert client.get("/api/auth/users", headers=agent_headers).status_code == 403

    users = client.get("/api/auth/users", headers=admin_headers).json()["users"]
    assert {u["email"] for u in users} == {ADMIN_EMAIL, "agent@example.com"}

    updated = client.put(f"/api/auth/users/{agent_id}", json={"role": "technician"}, headers=admin_headers)
    assert updated.json()["user"]["role"] == "technician"

    assert client.post("/api/auth/logout", headers=agent_headers).status_code == 200
    assert client.delete(f"/api/auth/users/{agent_id}", headers=admin_headers).status_code == 200


def test_admin_cannot_delete_themselves(client, admin_user, admin_headers) -> None:
    resp = client.delete(f"/api/auth/users/{admin_user}", headers=admin_headers)
    assert resp.status_code == 400


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def test_tokens_expire_after_24_hours(client, admin_user) -> None:
    now = datetime.now(timezone.utc)
    fresh, claims = create_access_token(admin_user, "admin", now=now)
    assert claims["exp"] - claims["iat"] == 24 * 3600
    assert client.get("/api/auth/me", headers=_bearer(fresh)).status_code == 200

    stale, _ = create_access_token(admin_user, "admin", now=now - timedelta(hours=25))
    expired = client.get("/api/auth/me", headers=_bearer(stale))
    assert expired.status_code == 401
    assert expired.json()["message"] == "token expired"


def test_forged_token_is_rejected(client, admin_user) -> None:
    _, claims = create_access_token(admin_user, "admin")
    forged = jwt.encode(claims, settings.jwt_secret + "-forged", algorithm=settings.jwt_algorithm)
    resp = client.get("/api/auth/me", headers=_bearer(forged))
    assert resp.status_code == 401
    assert resp.json()["message"] == "invalid token"
