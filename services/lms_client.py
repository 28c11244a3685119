"""
Learning-management-system provisioning client.

- POST {LMS_API_URL}/api/users/create            -> {userId|id}
- PUT  {LMS_API_URL}/api/users/{id}/deactivate

When LMS_API_URL / LMS_API_KEY are not set the client runs in mock mode and
returns a synthetic id, so local and test environments need no LMS.
"""
from __future__ import annotations

import logging
import os
import time
from typing import Any

import requests


_log = logging.getLogger("lms")


class LmsError(RuntimeError):
    pass


def _headers(cfg) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {cfg.LMS_API_KEY}",
        "X-API-Key": cfg.LMS_API_KEY,
    }


def create_account(cfg, profile: dict[str, Any]) -> str:
    """
    Create the employee's LMS account.

    Args:
        profile: {fullName, email, phone, designation, storeName, storeCode,
                  fieldCoachEmail, dateOfJoining}

    Returns:
        the external LMS user id
    """
    full_name = str(profile.get("fullName") or "").strip()
    email = str(profile.get("email") or "").strip()
    if not full_name or not email:
        raise LmsError("Email and full name are required for LMS creation")

    if not cfg.lms_configured:
        _log.info("LMS not configured; mock account for %s", email)
        return f"LMS_{int(time.time() * 1000)}_{os.urandom(4).hex()}"

    first, _sep, last = full_name.partition(" ")
    payload = {
        "firstName": first,
        "lastName": last.strip(),
        "email": email,
        "phone": profile.get("phone") or "",
        "designation": profile.get("designation") or "",
        "storeName": profile.get("storeName") or "",
        "storeCode": profile.get("storeCode") or "",
        "fieldCoachEmail": profile.get("fieldCoachEmail") or "",
        "dateOfJoining": profile.get("dateOfJoining") or "",
        "status": "active",
    }
    try:
        resp = requests.post(
            f"{cfg.LMS_API_URL}/api/users/create",
            json=payload,
            headers=_headers(cfg),
            timeout=cfg.HTTP_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
        body = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise LmsError(f"LMS create failed: {e}")

    user_id = str(body.get("userId") or body.get("id") or "").strip()
    if not user_id:
        raise LmsError("LMS create returned no user id")
    return user_id


def deactivate_account(cfg, lms_user_id: str) -> bool:
    uid = str(lms_user_id or "").strip()
    if not uid:
        raise LmsError("LMS User ID is required")
    if not cfg.lms_configured:
        _log.info("LMS not configured; mock deactivate %s", uid)
        return True
    try:
        resp = requests.put(
            f"{cfg.LMS_API_URL}/api/users/{uid}/deactivate",
            json={"status": "inactive"},
            headers=_headers(cfg),
            timeout=cfg.HTTP_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        raise LmsError(f"LMS deactivate failed: {e}")
    return True
