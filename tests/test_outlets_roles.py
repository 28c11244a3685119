from __future__ import annotations

from conftest import bearer, login, make_application, seed_outlet, seed_staff


def _admin(client) -> str:
    seed_staff(email="admin@example.com", role="super_admin")
    return login(client, "admin@example.com", "Passw0rd!")


OUTLET = {
    "code": "dl01",
    "name": "Connaught Place",
    "address": "Block A",
    "city": "Delhi",
    "email": "CP@example.com",
    "password": "OutletPass1",
}


def test_create_outlet_and_public_listing(app_client):
    _app, client = app_client
    admin = _admin(client)

    res = client.post("/api/outlets", headers=bearer(admin), json=OUTLET)
    assert res.status_code == 200, res.get_json()
    outlet = res.get_json()["data"]["outlet"]
    assert outlet["code"] == "DL01"
    assert outlet["email"] == "cp@example.com"
    assert "passwordHash" not in outlet

    res = client.post("/api/outlets", headers=bearer(admin), json=OUTLET)
    assert res.status_code == 409
    assert res.get_json()["message"] == "Outlet with this code already exists"

    res = client.get("/api/outlets")
    assert [o["code"] for o in res.get_json()["data"]["outlets"]] == ["DL01"]

    # The active list is cached; toggling must invalidate it.
    res = client.patch(f"/api/outlets/{outlet['id']}/toggle-status", headers=bearer(admin), json={})
    assert res.status_code == 200
    assert client.get("/api/outlets").get_json()["data"]["outlets"] == []

    res = client.get("/api/outlets/all", headers=bearer(admin))
    assert len(res.get_json()["data"]["outlets"]) == 1


def test_create_outlet_requires_fields(app_client):
    _app, client = app_client
    admin = _admin(client)
    res = client.post("/api/outlets", headers=bearer(admin), json={"code": "X1"})
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "VALIDATION_ERROR"


def test_delete_outlet_blocked_by_active_employees(app_client, outbox):
    _app, client = app_client
    admin = _admin(client)
    outlet_id = seed_outlet(code="DL01", email="dl01@example.com")

    onboarding_id = make_application(client, outlet_code="DL01")
    res = client.post(f"/api/dashboard/applications/{onboarding_id}/approve", headers=bearer(admin))
    assert res.status_code == 200, res.get_json()

    res = client.delete(f"/api/outlets/{outlet_id}", headers=bearer(admin))
    assert res.status_code == 400
    assert res.get_json()["message"] == "Cannot delete outlet with 1 active employees"


def test_bulk_import_reports_per_row(app_client):
    _app, client = app_client
    admin = _admin(client)

    rows = [
        dict(OUTLET),
        {**OUTLET, "email": "other@example.com"},
        {"code": "MU01", "name": "Bandra"},
        {**OUTLET, "code": "MU02", "email": "mu02@example.com", "city": "Mumbai"},
    ]
    res = client.post("/api/outlets/bulk-import", headers=bearer(admin), json={"outlets": rows})
    assert res.status_code == 200
    body = res.get_json()
    assert body["message"] == "Bulk import completed: 2 succeeded, 2 failed"
    errors = {e["row"]: e["error"] for e in body["data"]["errors"]}
    assert errors[3] == "Outlet with this code already exists"
    assert errors[4].startswith("Missing required fields")
    assert sorted(c["code"] for c in body["data"]["created"]) == ["DL01", "MU02"]


def test_roles_crud(app_client):
    _app, client = app_client
    admin = _admin(client)

    res = client.post("/api/roles", headers=bearer(admin), json={"id": "crew", "title": "Crew Member", "category": "employee"})
    assert res.status_code == 200, res.get_json()

    res = client.post("/api/roles", headers=bearer(admin), json={"id": "crew", "title": "Again"})
    assert res.status_code == 409
    assert res.get_json()["message"] == "Role with this ID already exists"

    res = client.get("/api/roles")
    assert [r["id"] for r in res.get_json()["data"]["roles"]] == ["crew"]

    res = client.put("/api/roles/crew", headers=bearer(admin), json={"title": "Crew"})
    assert res.status_code == 200
    assert client.get("/api/roles").get_json()["data"]["roles"][0]["title"] == "Crew"

    res = client.delete("/api/roles/crew", headers=bearer(admin))
    assert res.status_code == 200
    assert res.get_json()["message"] == "Role permanently deleted from database"
    assert client.get("/api/roles").get_json()["data"]["roles"] == []

    res = client.get("/api/roles/crew", headers=bearer(admin))
    assert res.status_code == 404


def test_role_in_use_cannot_be_deleted(app_client, outbox):
    _app, client = app_client
    admin = _admin(client)
    seed_outlet(code="DL01", email="dl01@example.com")
    client.post("/api/roles", headers=bearer(admin), json={"id": "crew", "title": "Crew"})

    res = client.post("/api/onboarding/save-draft", json={"phone": "9876543210", "role": "crew"})
    assert res.status_code == 200
    onboarding_id = make_application(client, outlet_code="DL01", phone="9876543210")
    client.post(f"/api/dashboard/applications/{onboarding_id}/approve", headers=bearer(admin))

    res = client.delete("/api/roles/crew", headers=bearer(admin))
    assert res.status_code == 400
    assert res.get_json()["message"] == "Cannot delete role with 1 active users"


def test_coach_cannot_manage_catalogs(app_client):
    _app, client = app_client
    seed_staff(email="coach@example.com", role="field_coach")
    coach = login(client, "coach@example.com", "Passw0rd!")

    assert client.post("/api/outlets", headers=bearer(coach), json=OUTLET).status_code == 403
    assert client.post("/api/roles", headers=bearer(coach), json={"id": "x", "title": "X"}).status_code == 403
