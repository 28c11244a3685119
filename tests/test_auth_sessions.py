from __future__ import annotations

from sqlalchemy import select

from conftest import api, bearer, login, seed_outlet, seed_staff
from db import SessionLocal
from models import AuditLog, Outlet, StaffAccount


def test_staff_and_outlet_login(app_client):
    _app, client = app_client
    seed_staff(email="admin@example.com", role="super_admin", name="Admin")
    seed_outlet(code="DL01", email="dl01@example.com", password="OutletPass1")

    res = client.post("/api/auth/login", json={"email": "ADMIN@example.com", "password": "Passw0rd!"})
    assert res.status_code == 200
    body = res.get_json()
    assert body["success"] is True
    assert body["data"]["user"]["role"] == "super_admin"
    assert "passwordHash" not in body["data"]["user"]

    res = client.get("/api/auth/me", headers=bearer(body["data"]["token"]))
    assert res.status_code == 200
    assert res.get_json()["data"]["user"]["email"] == "admin@example.com"

    outlet_token = login(client, "dl01@example.com", "OutletPass1")
    res = client.get("/api/auth/me", headers=bearer(outlet_token))
    assert res.get_json()["data"]["user"]["role"] == "store_manager"


def test_login_failures(app_client):
    _app, client = app_client
    seed_staff(email="gone@example.com", role="field_coach", active=False)

    res = client.post("/api/auth/login", json={"email": "gone@example.com"})
    assert res.status_code == 400
    assert res.get_json()["message"] == "Please provide email and password"

    res = client.post("/api/auth/login", json={"email": "gone@example.com", "password": "wrong-password"})
    assert res.status_code == 401
    assert res.get_json()["message"] == "Invalid credentials"

    res = client.post("/api/auth/login", json={"email": "gone@example.com", "password": "Passw0rd!"})
    assert res.status_code == 403
    assert res.get_json()["message"] == "Your account has been deactivated. Please contact administrator."


def test_deactivated_outlet_session_stops_working(app_client):
    _app, client = app_client
    outlet_id = seed_outlet(code="DL01", email="dl01@example.com", password="OutletPass1")
    token = login(client, "dl01@example.com", "OutletPass1")

    with SessionLocal() as db:
        db.get(Outlet, outlet_id).isActive = False
        db.commit()

    res = client.get("/api/manager/stats", headers=bearer(token))
    assert res.status_code == 403
    assert res.get_json()["error"]["code"] == "FORBIDDEN"


def test_protected_actions_require_a_session(app_client):
    _app, client = app_client

    res = client.get("/api/admin/stats")
    assert res.status_code == 401
    body = res.get_json()
    assert body["success"] is False
    assert body["data"] is None
    assert body["error"]["code"] == "UNAUTHENTICATED"

    res = api(client, "NOT_AN_ACTION")
    assert res.status_code == 400
    assert res.get_json()["message"] == "Unknown action: NOT_AN_ACTION"


def test_public_action_ignores_stale_token(app_client):
    _app, client = app_client
    res = client.get("/api/outlets", headers=bearer("ST-stale"))
    assert res.status_code == 200
    assert res.get_json()["data"]["outlets"] == []


def test_update_password_revokes_other_sessions(app_client):
    _app, client = app_client
    seed_staff(email="coach@example.com", role="field_coach")
    first = login(client, "coach@example.com", "Passw0rd!")
    second = login(client, "coach@example.com", "Passw0rd!")

    res = client.put(
        "/api/auth/update-password",
        headers=bearer(first),
        json={"currentPassword": "nope-nope", "newPassword": "BrandNew123"},
    )
    assert res.status_code == 401
    assert res.get_json()["message"] == "Current password is incorrect"

    res = client.put(
        "/api/auth/update-password",
        headers=bearer(first),
        json={"currentPassword": "Passw0rd!", "newPassword": "BrandNew123"},
    )
    assert res.status_code == 200

    assert client.get("/api/auth/me", headers=bearer(first)).status_code == 200
    assert client.get("/api/auth/me", headers=bearer(second)).status_code == 401
    login(client, "coach@example.com", "BrandNew123")


def test_logout_revokes_token(app_client):
    _app, client = app_client
    seed_staff(email="coach@example.com", role="field_coach")
    token = login(client, "coach@example.com", "Passw0rd!")

    assert client.post("/api/auth/logout", headers=bearer(token)).status_code == 200
    assert client.get("/api/auth/me", headers=bearer(token)).status_code == 401


def test_register_staff_admin_only_and_unique(app_client):
    _app, client = app_client
    seed_staff(email="admin@example.com", role="super_admin")
    seed_staff(email="coach@example.com", role="field_coach")
    admin = login(client, "admin@example.com", "Passw0rd!")
    coach = login(client, "coach@example.com", "Passw0rd!")

    payload = {"name": "New Coach", "email": "new@example.com", "password": "Secret1234", "role": "field_coach"}
    res = client.post("/api/auth/register", headers=bearer(coach), json=payload)
    assert res.status_code == 403

    res = client.post("/api/auth/register", headers=bearer(admin), json=payload)
    assert res.status_code == 200
    assert res.get_json()["data"]["user"]["role"] == "field_coach"

    res = client.post("/api/auth/register", headers=bearer(admin), json=payload)
    assert res.status_code == 409
    assert res.get_json()["message"] == "User with this email already exists"

    with SessionLocal() as db:
        stored = db.execute(select(StaffAccount).where(StaffAccount.email == "new@example.com")).scalar_one()
        assert stored.passwordHash.startswith("scrypt:")


def test_api_calls_are_audited_without_secrets(app_client):
    _app, client = app_client
    seed_staff(email="admin@example.com", role="super_admin")
    login(client, "admin@example.com", "Passw0rd!")

    with SessionLocal() as db:
        rows = db.execute(select(AuditLog).where(AuditLog.stageTag == "API_CALL")).scalars().all()
    assert rows
    assert all("Passw0rd!" not in r.metaJson for r in rows)
