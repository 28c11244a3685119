from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from db import SessionLocal
from models import Onboarding, OtpRecord
from utils import to_iso_utc


def _backdate_otp(contact: str, *, created_seconds_ago: int = 0, expired: bool = False) -> None:
    now = datetime.now(timezone.utc)
    with SessionLocal() as db:
        rec = db.execute(select(OtpRecord).where(OtpRecord.contact == contact)).scalar_one()
        rec.createdAt = to_iso_utc(now - timedelta(seconds=created_seconds_ago))
        if expired:
            rec.expiresAt = to_iso_utc(now - timedelta(seconds=1))
        db.commit()


def test_phone_otp_dev_code_marks_onboarding(app_client):
    _app, client = app_client
    res = client.post("/api/onboarding/save-draft", json={"phone": "9876543210"})
    onboarding_id = res.get_json()["data"]["application"]["id"]

    res = client.post("/api/otp/send", json={"phone": "9876543210"})
    assert res.status_code == 200
    assert res.get_json()["data"]["expiresIn"] == 300

    with SessionLocal() as db:
        stored = db.execute(select(OtpRecord).where(OtpRecord.contact == "9876543210")).scalar_one()
        assert stored.codeHash != "000000"

    res = client.post("/api/otp/verify", json={"phone": "9876543210", "otp": "000000", "onboardingId": onboarding_id})
    assert res.status_code == 200
    assert res.get_json()["data"]["verified"] is True

    with SessionLocal() as db:
        assert db.get(Onboarding, onboarding_id).phoneOtpVerified is True
        assert db.execute(select(OtpRecord)).scalars().all() == []


def test_resend_is_rate_limited(app_client):
    _app, client = app_client
    assert client.post("/api/otp/send", json={"phone": "9876543210"}).status_code == 200

    res = client.post("/api/otp/send", json={"phone": "9876543210"})
    assert res.status_code == 429
    assert res.get_json()["message"] == "Please wait 1 minute before requesting another OTP"

    _backdate_otp("9876543210", created_seconds_ago=61)
    assert client.post("/api/otp/send", json={"phone": "9876543210"}).status_code == 200


def test_wrong_code_counts_attempts_then_locks(app_client):
    _app, client = app_client
    client.post("/api/otp/send", json={"channel": "email", "email": "cand@example.com"})

    res = client.post("/api/otp/verify", json={"channel": "email", "email": "cand@example.com", "otp": "111111"})
    assert res.status_code == 400
    body = res.get_json()
    assert body["message"] == "Invalid OTP. 2 attempts remaining"
    assert body["error"]["details"]["attemptsRemaining"] == 2

    client.post("/api/otp/verify", json={"channel": "email", "email": "cand@example.com", "otp": "111111"})
    client.post("/api/otp/verify", json={"channel": "email", "email": "cand@example.com", "otp": "111111"})

    res = client.post("/api/otp/verify", json={"channel": "email", "email": "cand@example.com", "otp": "000000"})
    assert res.status_code == 429
    assert res.get_json()["message"] == "Maximum attempts exceeded. Please request a new OTP"

    res = client.post("/api/otp/verify", json={"channel": "email", "email": "cand@example.com", "otp": "000000"})
    assert res.status_code == 404


def test_expired_otp(app_client):
    _app, client = app_client
    client.post("/api/otp/send", json={"phone": "9876543210"})
    _backdate_otp("9876543210", expired=True)

    res = client.post("/api/otp/verify", json={"phone": "9876543210", "otp": "000000"})
    assert res.status_code == 410
    assert res.get_json()["message"] == "OTP has expired"

    res = client.post("/api/otp/verify", json={"phone": "9876543210", "otp": "000000"})
    assert res.status_code == 404
    assert res.get_json()["message"] == "OTP not found or expired"


def test_invalid_phone_and_pan(app_client):
    _app, client = app_client

    res = client.post("/api/otp/send", json={"phone": "12345"})
    assert res.status_code == 400
    assert res.get_json()["error"]["code"] == "VALIDATION_ERROR"

    res = client.post("/api/onboarding/verify-pan", json={"panNumber": "NOTAPAN"})
    assert res.status_code == 400
    assert res.get_json()["message"] == "Invalid PAN format"


def test_digilocker_status_marks_aadhaar_verified(app_client, monkeypatch):
    _app, client = app_client
    res = client.post("/api/onboarding/save-draft", json={"phone": "9876543210"})
    onboarding_id = res.get_json()["data"]["application"]["id"]

    def fake_status(cfg, client_id):
        assert client_id == "dl-123"
        return {"verified": True, "status": "completed", "profileData": {"name": "Ravi Kumar", "aadhaarNumber": "5555 6666 7777"}}

    monkeypatch.setattr("services.kyc_client.check_status", fake_status)

    res = client.post("/api/onboarding/digilocker/status", json={"clientId": "dl-123", "onboardingId": onboarding_id})
    assert res.status_code == 200

    with SessionLocal() as db:
        rec = db.get(Onboarding, onboarding_id)
        assert rec.aadhaarVerified is True
        assert rec.aadhaarNumber == "555566667777"
        assert rec.fullName == "Ravi Kumar"


def test_kyc_without_provider_is_upstream_failure(app_client):
    _app, client = app_client
    res = client.post("/api/onboarding/digilocker/initiate", json={})
    assert res.status_code == 502
    assert res.get_json()["error"]["code"] == "UPSTREAM_FAILURE"
