from __future__ import annotations

import io
import json
from urllib.parse import parse_qs, urlparse

import pytest

from cache_layer import cache_clear
from db import SessionLocal
from models import Onboarding, Outlet, StaffAccount
from passwords import hash_password
from utils import iso_utc_now, new_id


# Tiny but valid magic-byte prefixes accepted by the document store.
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
PDF_BYTES = b"%PDF-1.4\n%test\n"


@pytest.fixture
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("NOTIFY_ASYNC", "0")
    monkeypatch.setenv("REDIS_URL", "")
    for name in ("SMTP_USER", "SMTP_PASSWORD", "SMS_API_KEY", "LMS_API_URL", "LMS_API_KEY", "KYC_API_TOKEN"):
        monkeypatch.setenv(name, "")
    cache_clear()

    from app import create_app

    app = create_app()
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield app, client
    cache_clear()


@pytest.fixture
def outbox(monkeypatch):
    """Captures queued notifications instead of delivering them."""

    sent: list[dict] = []

    def _record(cfg, address, template_id, data):
        sent.append({"to": address, "template": template_id, "data": dict(data)})
        return True

    monkeypatch.setattr("actions.lifecycle.notify", _record)
    return sent


def api(client, action: str, data: dict | None = None, token: str = ""):
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return client.post(
        "/api",
        data=json.dumps({"action": action, "data": data or {}}),
        content_type="text/plain; charset=utf-8",
        headers=headers,
    )


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def seed_staff(*, email: str, role: str, password: str = "Passw0rd!", name: str = "", active: bool = True) -> str:
    now = iso_utc_now()
    user_id = new_id("USR")
    with SessionLocal() as db:
        db.add(
            StaffAccount(
                userId=user_id,
                name=name or email.split("@")[0],
                email=email.lower(),
                passwordHash=hash_password(password),
                role=role,
                isActive=active,
                createdAt=now,
                createdBy="TEST",
                updatedAt=now,
            )
        )
        db.commit()
    return user_id


def seed_outlet(
    *,
    code: str,
    email: str,
    password: str = "OutletPass1",
    name: str = "",
    city: str = "Delhi",
    manager_id: str | None = None,
    coach_id: str | None = None,
    active: bool = True,
) -> str:
    now = iso_utc_now()
    outlet_id = new_id("OUT")
    with SessionLocal() as db:
        db.add(
            Outlet(
                id=outlet_id,
                code=code.upper(),
                name=name or f"Outlet {code}",
                email=email.lower(),
                passwordHash=hash_password(password),
                address="1 Main Road",
                city=city,
                managerId=manager_id,
                fieldCoachId=coach_id,
                isActive=active,
                createdAt=now,
                updatedAt=now,
            )
        )
        db.commit()
    return outlet_id


def login(client, email: str, password: str) -> str:
    res = client.post("/api/auth/login", json={"email": email, "password": password})
    assert res.status_code == 200, res.get_json()
    return res.get_json()["data"]["token"]


def mark_aadhaar_verified(onboarding_id: str, aadhaar: str) -> None:
    with SessionLocal() as db:
        rec = db.get(Onboarding, onboarding_id)
        rec.aadhaarVerified = True
        rec.aadhaarNumber = aadhaar
        db.commit()


def make_application(
    client,
    *,
    outlet_code: str,
    phone: str = "9876543210",
    aadhaar: str = "123412341234",
    name: str = "Ravi Kumar",
    email: str = "ravi@example.com",
    role: str = "crew",
    submit: bool = True,
) -> str:
    """Draft -> verified Aadhaar -> photo -> (optionally) submit. Returns the onboarding id."""

    res = client.post(
        "/api/onboarding/save-draft",
        json={"phone": phone, "fullName": name, "email": email, "outletCode": outlet_code, "designation": "Crew", "role": role},
    )
    assert res.status_code == 200, res.get_json()
    onboarding_id = res.get_json()["data"]["application"]["id"]
    mark_aadhaar_verified(onboarding_id, aadhaar)

    res = client.post(
        f"/api/onboarding/{onboarding_id}/documents",
        data={"documentType": "photo", "file": (io.BytesIO(PNG_BYTES), "photo.png", "image/png")},
        content_type="multipart/form-data",
    )
    assert res.status_code == 200, res.get_json()

    if submit:
        res = client.post(f"/api/onboarding/{onboarding_id}/submit", json={})
        assert res.status_code == 200, res.get_json()
    return onboarding_id


def approval_token_from(outbox: list[dict], onboarding_id: str) -> str:
    for item in reversed(outbox):
        if item["template"] == "approval_request" and f"/approval/{onboarding_id}?" in item["data"]["approveLink"]:
            return parse_qs(urlparse(item["data"]["approveLink"]).query)["token"][0]
    raise AssertionError("no approval_request notification captured")
