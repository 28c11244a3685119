from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

import requests
from sqlalchemy import delete, select

from actions.helpers import ActionResult, require_email, require_phone, require_text
from actions.lifecycle import load_onboarding, update_fields
from models import OtpRecord
from services import kyc_client
from services.identity_hash import is_valid_aadhaar, is_valid_pan, normalize_aadhaar, normalize_pan
from services.notifications import deliver, send_sms_otp
from utils import ApiError, constant_time_equals, iso_utc_now, json_dumps, parse_datetime_maybe, sha256_hex, to_iso_utc


_log = logging.getLogger("verification")

DEV_OTP = "000000"
CHANNELS = {"phone", "email"}


def _contact(data: dict) -> tuple[str, str]:
    channel = str(data.get("channel") or data.get("type") or "phone").strip().lower()
    if channel not in CHANNELS:
        raise ApiError("VALIDATION_ERROR", "OTP channel must be phone or email")
    raw = data.get("contact") or data.get(channel)
    contact = require_phone(raw) if channel == "phone" else require_email(raw)
    return contact, channel


def _code_hash(contact: str, channel: str, code: str) -> str:
    return sha256_hex(f"{channel}:{contact}:{code}")


def _dev_mode(cfg, channel: str) -> bool:
    return not (cfg.sms_configured if channel == "phone" else cfg.smtp_configured)


def otp_send(data, auth, db, cfg):
    contact, channel = _contact(data)
    now = datetime.now(timezone.utc)

    recent = (
        db.execute(
            select(OtpRecord)
            .where(OtpRecord.contact == contact)
            .where(OtpRecord.channel == channel)
            .order_by(OtpRecord.id.desc())
        )
        .scalars()
        .first()
    )
    if recent:
        created = parse_datetime_maybe(recent.createdAt)
        if created and (now - created).total_seconds() < int(cfg.OTP_RESEND_SECONDS):
            raise ApiError("RATE_LIMITED", "Please wait 1 minute before requesting another OTP")

    db.execute(delete(OtpRecord).where(OtpRecord.contact == contact).where(OtpRecord.channel == channel))

    code = DEV_OTP if _dev_mode(cfg, channel) else f"{secrets.randbelow(1_000_000):06d}"
    ttl = int(cfg.OTP_TTL_SECONDS)
    db.add(
        OtpRecord(
            contact=contact,
            channel=channel,
            codeHash=_code_hash(contact, channel, code),
            expiresAt=to_iso_utc(now + timedelta(seconds=ttl)),
            attempts=0,
            createdAt=to_iso_utc(now),
        )
    )

    if _dev_mode(cfg, channel):
        _log.info("OTP delivery not configured for %s; using development code", channel)
    else:
        try:
            if channel == "phone":
                send_sms_otp(cfg, contact, code)
            else:
                deliver(cfg, contact, "otp", {"otp": code, "minutes": ttl // 60})
        except (requests.RequestException, OSError) as e:
            _log.warning("OTP delivery failed channel=%s", channel, exc_info=True)
            raise ApiError("UPSTREAM_FAILURE", f"Failed to send OTP: {e}")

    return ActionResult({"expiresIn": ttl}, "OTP sent successfully")


def otp_verify(data, auth, db, cfg):
    contact, channel = _contact(data)
    code = str(data.get("otp") or data.get("code") or "").strip()
    if not code:
        raise ApiError("VALIDATION_ERROR", "OTP is required")

    rec = (
        db.execute(
            select(OtpRecord)
            .where(OtpRecord.contact == contact)
            .where(OtpRecord.channel == channel)
            .order_by(OtpRecord.id.desc())
        )
        .scalars()
        .first()
    )
    if not rec:
        raise ApiError("NOT_FOUND", "OTP not found or expired")

    expires = parse_datetime_maybe(rec.expiresAt)
    if not expires or expires < datetime.now(timezone.utc):
        db.delete(rec)
        # Deletion must survive the error response.
        db.commit()
        raise ApiError("EXPIRED", "OTP has expired")

    max_attempts = int(cfg.OTP_MAX_ATTEMPTS)
    if int(rec.attempts or 0) >= max_attempts:
        db.delete(rec)
        db.commit()
        raise ApiError("RATE_LIMITED", "Maximum attempts exceeded. Please request a new OTP")

    if not constant_time_equals(_code_hash(contact, channel, code), rec.codeHash):
        rec.attempts = int(rec.attempts or 0) + 1
        db.commit()
        remaining = max(0, max_attempts - rec.attempts)
        raise ApiError(
            "VALIDATION_ERROR",
            f"Invalid OTP. {remaining} attempts remaining",
            details={"attemptsRemaining": remaining},
        )

    db.delete(rec)

    onboarding_id = str(data.get("onboardingId") or "").strip()
    if onboarding_id:
        ob = load_onboarding(db, onboarding_id)
        flag = "phoneOtpVerified" if channel == "phone" else "emailOtpVerified"
        patch = {flag: True}
        if channel == "email" and not ob.email:
            patch["email"] = contact
        update_fields(db, ob, patch)

    return ActionResult({"verified": True}, "OTP verified successfully")


def digilocker_initiate(data, auth, db, cfg):
    redirect_url = str(data.get("redirectUrl") or "").strip() or f"{cfg.FRONTEND_URL.rstrip('/')}/onboarding/digilocker-callback"
    try:
        return kyc_client.initiate_link(cfg, redirect_url)
    except kyc_client.KycError as e:
        raise ApiError("UPSTREAM_FAILURE", str(e))


def digilocker_status(data, auth, db, cfg):
    client_id = require_text(data, "clientId", "Client ID is required")
    try:
        result = kyc_client.check_status(cfg, client_id)
    except kyc_client.KycError as e:
        raise ApiError("UPSTREAM_FAILURE", str(e))

    onboarding_id = str(data.get("onboardingId") or "").strip()
    if result.get("verified") and onboarding_id:
        ob = load_onboarding(db, onboarding_id)
        profile = result.get("profileData") or {}
        patch = {"aadhaarVerified": True, "aadhaarProfileJson": json_dumps(profile)}
        if is_valid_aadhaar(profile.get("aadhaarNumber")):
            patch["aadhaarNumber"] = normalize_aadhaar(profile.get("aadhaarNumber"))
        if profile.get("name") and not ob.fullName:
            patch["fullName"] = str(profile.get("name"))
        update_fields(db, ob, patch)
    return result


def pan_verify(data, auth, db, cfg):
    pan = normalize_pan(data.get("panNumber") or data.get("pan"))
    if not is_valid_pan(pan):
        raise ApiError("VALIDATION_ERROR", "Invalid PAN format")
    try:
        result = kyc_client.verify_pan(cfg, pan)
    except kyc_client.KycError as e:
        raise ApiError("UPSTREAM_FAILURE", str(e))

    onboarding_id = str(data.get("onboardingId") or "").strip()
    if result.get("verified") and onboarding_id:
        ob = load_onboarding(db, onboarding_id)
        update_fields(db, ob, {"panVerified": True, "panNumber": pan})
    return result
