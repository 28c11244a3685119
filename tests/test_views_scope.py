from __future__ import annotations

from conftest import bearer, login, make_application, seed_outlet, seed_staff


def _two_outlets(client):
    coach_a = seed_staff(email="coach.a@example.com", role="field_coach")
    coach_b = seed_staff(email="coach.b@example.com", role="field_coach")
    manager = seed_staff(email="manager@example.com", role="store_manager")
    seed_staff(email="admin@example.com", role="super_admin")
    seed_outlet(code="DL01", email="dl01@example.com", coach_id=coach_a, manager_id=manager)
    seed_outlet(code="MU01", email="mu01@example.com", coach_id=coach_b, city="Mumbai")
    a = make_application(client, outlet_code="DL01", phone="9876500001", name="Asha", aadhaar="111111111111")
    b = make_application(client, outlet_code="MU01", phone="9876500002", name="Bala", aadhaar="222222222222")
    return a, b


def test_coach_sees_only_own_outlets(app_client, outbox):
    _app, client = app_client
    a, b = _two_outlets(client)
    coach = login(client, "coach.a@example.com", "Passw0rd!")

    res = client.get("/api/field-coach/applications", headers=bearer(coach))
    assert [x["id"] for x in res.get_json()["data"]["applications"]] == [a]

    res = client.get(f"/api/field-coach/applications/{b}", headers=bearer(coach))
    assert res.status_code == 403

    res = client.get("/api/field-coach/stats", headers=bearer(coach))
    stats = res.get_json()["data"]
    assert stats["totalApplications"] == 1
    assert stats["pendingReview"] == 1


def test_staff_manager_scoped_by_assignment(app_client, outbox):
    _app, client = app_client
    a, _b = _two_outlets(client)
    manager = login(client, "manager@example.com", "Passw0rd!")

    res = client.get("/api/manager/onboardings", headers=bearer(manager))
    assert [x["id"] for x in res.get_json()["data"]["onboardings"]] == [a]

    res = client.get("/api/manager/stats", headers=bearer(manager))
    assert res.get_json()["data"]["pendingApproval"] == 1


def test_unassigned_manager_has_no_outlet(app_client):
    _app, client = app_client
    seed_staff(email="lonely@example.com", role="store_manager")
    token = login(client, "lonely@example.com", "Passw0rd!")

    res = client.get("/api/manager/employees", headers=bearer(token))
    assert res.status_code == 404
    assert res.get_json()["message"] == "No outlet found for this manager"


def test_admin_tabs_and_pagination(app_client, outbox):
    _app, client = app_client
    a, b = _two_outlets(client)
    admin = login(client, "admin@example.com", "Passw0rd!")
    client.post(f"/api/dashboard/applications/{a}/approve", headers=bearer(admin))

    res = client.get("/api/admin/employees?tab=active", headers=bearer(admin))
    assert [x["id"] for x in res.get_json()["data"]["employees"]] == [a]

    res = client.get("/api/admin/employees?tab=pending", headers=bearer(admin))
    assert [x["id"] for x in res.get_json()["data"]["employees"]] == [b]

    res = client.get("/api/admin/employees?limit=1&page=2", headers=bearer(admin))
    body = res.get_json()["data"]
    assert body["pagination"] == {"page": 2, "limit": 1, "total": 2, "pages": 2}
    assert len(body["employees"]) == 1

    res = client.get("/api/admin/employees?store=mu01", headers=bearer(admin))
    assert [x["id"] for x in res.get_json()["data"]["employees"]] == [b]

    res = client.get("/api/admin/employees?tab=bogus", headers=bearer(admin))
    assert res.status_code == 400

    res = client.get("/api/admin/stats", headers=bearer(admin))
    stats = res.get_json()["data"]
    assert stats["pendingApprovals"] == 1
    assert stats["activeOutlets"] == 2


def test_dashboard_masks_aadhaar(app_client, outbox):
    _app, client = app_client
    _two_outlets(client)
    admin = login(client, "admin@example.com", "Passw0rd!")

    res = client.get("/api/dashboard/applications", headers=bearer(admin))
    numbers = {x["aadhaarNumber"] for x in res.get_json()["data"]["applications"]}
    assert numbers == {"XXXX-XXXX-1111", "XXXX-XXXX-2222"}
