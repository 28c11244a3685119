from __future__ import annotations

import io
import re
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from actions.lifecycle import Status, transition
from conftest import (
    PNG_BYTES,
    approval_token_from,
    bearer,
    login,
    make_application,
    seed_outlet,
    seed_staff,
)
from db import SessionLocal
from models import AuditLog, Onboarding
from utils import SYSTEM_AUTH, ApiError, json_dumps, to_iso_utc


EMPLOYEE_KEY_RE = re.compile(r"^EMP-[0-9A-Z]+-[0-9A-Z]{9}$")


def _setup_outlet_with_coach():
    coach_id = seed_staff(email="coach@example.com", role="field_coach")
    seed_outlet(code="DL01", email="dl01@example.com", coach_id=coach_id)
    return coach_id


def _get(onboarding_id: str) -> Onboarding:
    with SessionLocal() as db:
        return db.get(Onboarding, onboarding_id)


def test_submit_requires_outlet_aadhaar_and_photo(app_client):
    _app, client = app_client
    seed_outlet(code="DL01", email="dl01@example.com")

    res = client.post("/api/onboarding/save-draft", json={"phone": "9876500001", "fullName": "A"})
    assert res.status_code == 200
    body = res.get_json()
    assert body["success"] is True
    assert body["message"] == "Draft saved successfully"
    onboarding_id = body["data"]["application"]["id"]

    res = client.post(f"/api/onboarding/{onboarding_id}/submit", json={})
    assert res.status_code == 400
    assert res.get_json()["message"] == "Outlet must be selected before submission"

    client.post("/api/onboarding/save-draft", json={"id": onboarding_id, "phone": "9876500001", "outletCode": "dl01"})
    res = client.post(f"/api/onboarding/{onboarding_id}/submit", json={})
    assert res.get_json()["message"] == "Aadhaar verification is required"

    with SessionLocal() as db:
        db.get(Onboarding, onboarding_id).aadhaarVerified = True
        db.commit()
    res = client.post(f"/api/onboarding/{onboarding_id}/submit", json={})
    assert res.get_json()["message"] == "Photo is required"
    assert res.get_json()["error"]["code"] == "VALIDATION_ERROR"


def test_draft_is_upserted_by_phone_and_extra_fields_kept(app_client):
    _app, client = app_client

    res = client.post("/api/onboarding/save-draft", json={"phone": "9876500002", "fullName": "B", "fatherName": "C"})
    first_id = res.get_json()["data"]["application"]["id"]
    res = client.post("/api/onboarding/save-draft", json={"phone": "9876500002", "currentStep": 2})
    assert res.get_json()["data"]["application"]["id"] == first_id

    res = client.get("/api/onboarding/draft/9876500002")
    assert res.status_code == 200
    app_data = res.get_json()["data"]["application"]
    assert app_data["currentStep"] == 2
    assert app_data["profile"]["fatherName"] == "C"

    res = client.get("/api/onboarding/draft/9000000000")
    assert res.status_code == 404
    assert res.get_json()["message"] == "No draft found for this phone number"


def test_document_upload_rejects_mismatched_type(app_client):
    _app, client = app_client
    res = client.post("/api/onboarding/save-draft", json={"phone": "9876500003"})
    onboarding_id = res.get_json()["data"]["application"]["id"]

    res = client.post(
        f"/api/onboarding/{onboarding_id}/documents",
        data={"documentType": "photo", "file": (io.BytesIO(b"not an image"), "photo.png", "image/png")},
        content_type="multipart/form-data",
    )
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "VALIDATION_ERROR"

    res = client.post(
        f"/api/onboarding/{onboarding_id}/documents",
        data={"documentType": "certificates", "file": (io.BytesIO(PNG_BYTES), "c1.png", "image/png")},
        content_type="multipart/form-data",
    )
    assert res.status_code == 200
    assert len(res.get_json()["data"]["documents"]["certificates"]) == 1


def test_submit_with_coach_sends_approval_request(app_client, outbox):
    _app, client = app_client
    _setup_outlet_with_coach()

    onboarding_id = make_application(client, outlet_code="DL01")
    rec = _get(onboarding_id)
    assert rec.status == Status.PENDING_APPROVAL.value
    assert rec.submittedAt
    assert rec.approvalTokenHash and rec.approvalTokenExpiry

    templates = [m["template"] for m in outbox]
    assert "approval_request" in templates
    assert "application_submitted" in templates
    assert any(m["to"] == "coach@example.com" for m in outbox if m["template"] == "approval_request")

    res = client.post(f"/api/onboarding/{onboarding_id}/submit", json={})
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "INVALID_STATE"

    seed_staff(email="admin@example.com", role="super_admin")
    admin = login(client, "admin@example.com", "Passw0rd!")
    res = client.post(f"/api/onboarding/{onboarding_id}/send-approval-email", headers=bearer(admin), json={})
    assert res.status_code == 409
    assert res.get_json()["message"] == "Approval email already sent"


def test_submit_without_coach_stays_submitted_until_email_sent(app_client, outbox):
    _app, client = app_client
    seed_outlet(code="DL02", email="dl02@example.com")

    onboarding_id = make_application(client, outlet_code="DL02")
    assert _get(onboarding_id).status == Status.SUBMITTED.value

    res = client.post(f"/api/onboarding/{onboarding_id}/send-approval-email", json={})
    assert res.status_code == 401

    seed_outlet(code="MU01", email="mu01@example.com", password="OtherPass1")
    other = login(client, "mu01@example.com", "OtherPass1")
    res = client.post(f"/api/onboarding/{onboarding_id}/send-approval-email", headers=bearer(other), json={})
    assert res.status_code == 403

    manager = login(client, "dl02@example.com", "OutletPass1")
    res = client.post(f"/api/onboarding/{onboarding_id}/send-approval-email", headers=bearer(manager), json={})
    assert res.status_code == 400
    assert res.get_json()["message"] == "Field coach email is required"

    res = client.post(
        f"/api/onboarding/{onboarding_id}/send-approval-email",
        headers=bearer(manager),
        json={"fieldCoachEmail": "Coach2@Example.com"},
    )
    assert res.status_code == 200
    rec = _get(onboarding_id)
    assert rec.status == Status.PENDING_APPROVAL.value
    assert rec.fieldCoachEmail == "coach2@example.com"


def test_token_approval_is_single_use_and_mints_employee_key(app_client, outbox):
    _app, client = app_client
    _setup_outlet_with_coach()
    onboarding_id = make_application(client, outlet_code="DL01")
    token = approval_token_from(outbox, onboarding_id)

    res = client.get(f"/api/onboarding/{onboarding_id}/approval?token=wrong")
    assert res.status_code == 403

    res = client.get(f"/api/onboarding/{onboarding_id}/approval?token={token}")
    assert res.status_code == 200
    assert res.get_json()["data"]["candidate"]["aadhaarNumber"].endswith("1234")
    assert "123412341234" not in res.get_json()["data"]["candidate"]["aadhaarNumber"]

    res = client.post(f"/api/onboarding/{onboarding_id}/approve-by-token", json={"token": token})
    assert res.status_code == 200, res.get_json()
    key = res.get_json()["data"]["employeeKey"]
    assert EMPLOYEE_KEY_RE.match(key)

    rec = _get(onboarding_id)
    assert rec.status == Status.APPROVED.value
    assert rec.employeeStatus == "active"
    assert rec.approvedBy == "approval-link"
    assert rec.approvalTokenUsedAt
    assert rec.approvalTokenHash is None
    # Mock-mode LMS account is provisioned after the approval commits.
    assert rec.lmsUserId.startswith("LMS_")

    templates = {m["template"] for m in outbox}
    assert {"candidate_approved", "approval_stakeholders"} <= templates

    res = client.post(f"/api/onboarding/{onboarding_id}/reject-by-token", json={"token": token, "reason": "late"})
    assert res.status_code == 409
    assert res.get_json()["message"] == "Approval link has already been used"


def test_expired_approval_token(app_client, outbox):
    _app, client = app_client
    _setup_outlet_with_coach()
    onboarding_id = make_application(client, outlet_code="DL01")
    token = approval_token_from(outbox, onboarding_id)

    with SessionLocal() as db:
        db.get(Onboarding, onboarding_id).approvalTokenExpiry = to_iso_utc(datetime.now(timezone.utc) - timedelta(minutes=1))
        db.commit()

    res = client.post(f"/api/onboarding/{onboarding_id}/approve-by-token", json={"token": token})
    assert res.status_code == 410
    assert res.get_json()["error"]["code"] == "EXPIRED"
    assert _get(onboarding_id).status == Status.PENDING_APPROVAL.value
    rec = _get(onboarding_id)
    assert rec.approvalTokenHash is None
    assert rec.approvalTokenExpiry is None

    res = client.get(f"/api/onboarding/{onboarding_id}/approval?token={token}")
    assert res.status_code == 403


def test_reject_by_token_defaults_reason(app_client, outbox):
    _app, client = app_client
    _setup_outlet_with_coach()
    onboarding_id = make_application(client, outlet_code="DL01")
    token = approval_token_from(outbox, onboarding_id)

    res = client.post(f"/api/onboarding/{onboarding_id}/reject-by-token", json={"token": token})
    assert res.status_code == 200
    rec = _get(onboarding_id)
    assert rec.status == Status.REJECTED.value
    assert rec.rejectionReason == "Not provided"
    assert any(m["template"] == "candidate_rejected" for m in outbox)


def test_coach_approve_twice_and_scope(app_client, outbox):
    _app, client = app_client
    _setup_outlet_with_coach()
    other_coach = seed_staff(email="other.coach@example.com", role="field_coach")
    seed_outlet(code="MU01", email="mu01@example.com", coach_id=other_coach, city="Mumbai")

    onboarding_id = make_application(client, outlet_code="DL01")

    other_token = login(client, "other.coach@example.com", "Passw0rd!")
    res = client.post(f"/api/field-coach/applications/{onboarding_id}/approve", headers=bearer(other_token))
    assert res.status_code == 403
    assert res.get_json()["message"] == "You do not have permission to approve this application"

    coach_token = login(client, "coach@example.com", "Passw0rd!")
    res = client.post(f"/api/field-coach/applications/{onboarding_id}/approve", headers=bearer(coach_token))
    assert res.status_code == 200
    key = res.get_json()["data"]["application"]["employeeKey"]

    res = client.post(f"/api/field-coach/applications/{onboarding_id}/approve", headers=bearer(coach_token))
    assert res.status_code == 400
    body = res.get_json()
    assert body["error"]["code"] == "INVALID_STATE"
    assert body["message"] == "Application already approved"
    assert _get(onboarding_id).employeeKey == key


def test_reject_requires_reason(app_client, outbox):
    _app, client = app_client
    _setup_outlet_with_coach()
    onboarding_id = make_application(client, outlet_code="DL01")
    coach_token = login(client, "coach@example.com", "Passw0rd!")

    res = client.post(f"/api/field-coach/applications/{onboarding_id}/reject", headers=bearer(coach_token), json={})
    assert res.status_code == 400
    assert res.get_json()["message"] == "Rejection reason is required"

    res = client.post(
        f"/api/field-coach/applications/{onboarding_id}/reject", headers=bearer(coach_token), json={"reason": "Docs unclear"}
    )
    assert res.status_code == 200
    assert _get(onboarding_id).rejectionReason == "Docs unclear"


def test_stale_row_version_is_a_conflict(app_client, outbox):
    _app, _client = app_client
    _setup_outlet_with_coach()
    onboarding_id = make_application(_client, outlet_code="DL01")

    with SessionLocal() as stale, SessionLocal() as fresh:
        rec = stale.get(Onboarding, onboarding_id)
        other = fresh.get(Onboarding, onboarding_id)
        other.rowVersion = other.rowVersion + 1
        fresh.commit()

        with pytest.raises(ApiError) as ei:
            transition(stale, rec, action="APPROVE", auth=SYSTEM_AUTH, to_status=Status.APPROVED)
        assert ei.value.code == "CONFLICT"
        stale.rollback()

    assert _get(onboarding_id).status == Status.PENDING_APPROVAL.value


def test_transitions_are_audited(app_client, outbox):
    _app, client = app_client
    _setup_outlet_with_coach()
    onboarding_id = make_application(client, outlet_code="DL01")

    with SessionLocal() as db:
        actions = (
            db.execute(
                select(AuditLog.action).where(AuditLog.entityType == "ONBOARDING").where(AuditLog.entityId == onboarding_id)
            )
            .scalars()
            .all()
        )
    assert "SUBMIT" in actions
    assert "SEND_APPROVAL" in actions


def test_resubmission_carries_previous_employment(app_client, outbox):
    _app, client = app_client
    seed_outlet(code="DL03", email="dl03@example.com")
    history = [{"outletCode": "DL03", "startDate": "2023-01-01", "endDate": "2024-01-01", "endReason": "terminated"}]
    with SessionLocal() as db:
        db.add(
            Onboarding(
                id="ONB-OLD",
                phone="9876500099",
                aadhaarNumber="999988887777",
                status=Status.TERMINATED.value,
                employeeStatus="terminated",
                terminatedAt="2024-01-01T00:00:00.000Z",
                previousEmploymentJson=json_dumps(history),
                createdAt="2023-01-01T00:00:00.000Z",
                updatedAt="2024-01-01T00:00:00.000Z",
            )
        )
        db.commit()

    onboarding_id = make_application(client, outlet_code="DL03", phone="9876500100", aadhaar="999988887777")
    seed_staff(email="admin@example.com", role="super_admin")
    admin = login(client, "admin@example.com", "Passw0rd!")
    res = client.get(f"/api/onboarding/{onboarding_id}", headers=bearer(admin))
    assert res.get_json()["data"]["application"]["previousEmployment"] == history


def test_application_detail_is_staff_only_and_scoped(app_client, outbox):
    _app, client = app_client
    _setup_outlet_with_coach()
    seed_staff(email="coach.b@example.com", role="field_coach")
    onboarding_id = make_application(client, outlet_code="DL01")

    res = client.get(f"/api/onboarding/{onboarding_id}")
    assert res.status_code == 401
    assert res.get_json()["error"]["code"] == "UNAUTHENTICATED"

    other = login(client, "coach.b@example.com", "Passw0rd!")
    res = client.get(f"/api/onboarding/{onboarding_id}", headers=bearer(other))
    assert res.status_code == 403

    coach = login(client, "coach@example.com", "Passw0rd!")
    res = client.get(f"/api/onboarding/{onboarding_id}", headers=bearer(coach))
    assert res.status_code == 200
    assert res.get_json()["data"]["application"]["id"] == onboarding_id

    # Candidates still read their open draft by phone.
    client.post("/api/onboarding/save-draft", json={"phone": "9876500555", "fullName": "Neha"})
    res = client.get("/api/onboarding/draft/9876500555")
    assert res.status_code == 200
