"""
Identity-document verification provider client (DigiLocker Aadhaar + PAN).

Every call raises `KycError` on transport or provider failure; callers map that
to an UPSTREAM_FAILURE response because the provider result is the gate.
"""
from __future__ import annotations

import logging
from typing import Any

import requests


_log = logging.getLogger("verification")


class KycError(RuntimeError):
    pass


def _post(cfg, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
    if not cfg.KYC_API_TOKEN:
        raise KycError("Identity verification provider is not configured")
    try:
        resp = requests.post(
            f"{cfg.KYC_BASE_URL}{endpoint}",
            json=payload,
            headers={"Content-Type": "application/json", "Authorization": f"Bearer {cfg.KYC_API_TOKEN}"},
            timeout=cfg.HTTP_TIMEOUT_SECONDS,
        )
        body = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise KycError(f"Verification request failed: {e}")
    if resp.status_code >= 400 or body.get("success") is False:
        raise KycError(str(body.get("message") or f"Verification provider error ({resp.status_code})"))
    return body.get("data") or {}


def initiate_link(cfg, redirect_url: str) -> dict[str, Any]:
    data = _post(
        cfg,
        "/api/v1/digilocker/initialize",
        {"data": {"signup_flow": True, "redirect_url": redirect_url, "skip_main_screen": False}},
    )
    client_id = str(data.get("client_id") or "").strip()
    if not client_id:
        raise KycError("Provider returned no client id")
    return {
        "clientId": client_id,
        "providerUrl": data.get("link") or data.get("url") or "",
        "expiresAt": data.get("expires_at"),
    }


def check_status(cfg, client_id: str) -> dict[str, Any]:
    data = _post(cfg, "/api/v1/digilocker/status", {"client_id": client_id})
    state = str(data.get("status") or data.get("verification_status") or "").lower()
    if state in {"completed", "verified"}:
        return {
            "verified": True,
            "profileData": {
                "aadhaarNumber": data.get("aadhaar_number") or data.get("masked_aadhaar") or "",
                "name": data.get("name") or data.get("full_name") or "",
                "dob": data.get("dob") or data.get("date_of_birth") or "",
                "gender": data.get("gender") or "",
                "address": data.get("address") or data.get("full_address") or "",
            },
        }
    if state == "failed":
        raise KycError(str(data.get("error_message") or "Digilocker verification failed"))
    return {"verified": False, "status": state or "pending"}


def verify_pan(cfg, pan_number: str) -> dict[str, Any]:
    data = _post(cfg, "/api/v1/pan/pan", {"id_number": pan_number})
    valid = bool(data.get("valid", data.get("pan_status") in {"VALID", "E"}))
    return {"verified": valid, "name": data.get("full_name") or data.get("name") or ""}
