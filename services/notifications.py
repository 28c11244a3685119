"""
Outbound candidate/staff notifications.

`notify()` is the only entry point lifecycle code uses. It never raises: delivery
failures are logged and reported as `False` so a transition is never undone by a
mail server being down.

Channels:
- email: SMTP (STARTTLS) using SMTP_* settings; skipped (logged) when unconfigured
- sms:   HTTP GET to SMS_API_URL with SMS_API_KEY
"""
from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Any

import requests


_log = logging.getLogger("notify")


TEMPLATES: dict[str, tuple[str, str]] = {
    "otp": (
        "Your onboarding verification code",
        "Your verification code is {otp}. It is valid for {minutes} minutes.\n"
        "Do not share this code with anyone.",
    ),
    "application_submitted": (
        "Application received - {storeName}",
        "Hello {fullName},\n\nWe have received your onboarding application for {storeName}.\n"
        "You will be notified once it has been reviewed.",
    ),
    "approval_request": (
        "Approval required: {fullName} ({storeName})",
        "A new onboarding application needs your review.\n\n"
        "Candidate: {fullName}\nPhone: {phone}\nRole: {role}\nStore: {storeName}\n\n"
        "Approve: {approveLink}\nReject: {rejectLink}\n\nThese links expire on {expiresAt}.",
    ),
    "candidate_approved": (
        "Welcome aboard, {fullName}!",
        "Hello {fullName},\n\nYour application for {storeName} has been approved.\n"
        "Employee key: {employeeKey}\nDesignation: {designation}\nDate of joining: {dateOfJoining}",
    ),
    "candidate_rejected": (
        "Update on your application - {storeName}",
        "Hello {fullName},\n\nWe are unable to proceed with your application for {storeName}.\n"
        "Reason: {reason}",
    ),
    "approval_stakeholders": (
        "New employee approved: {fullName} ({storeName})",
        "{fullName} has been approved for {storeName}. Employee key: {employeeKey}.\n"
        "Please schedule onboarding training.",
    ),
    "rejection_stakeholders": (
        "Application rejected: {fullName} ({storeName})",
        "The onboarding application of {fullName} for {storeName} was rejected by {rejectedBy}.\nReason: {reason}",
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def render(template_id: str, data: dict[str, Any]) -> tuple[str, str]:
    tpl = TEMPLATES.get(str(template_id or ""))
    if not tpl:
        raise KeyError(f"Unknown template: {template_id}")
    values = _SafeDict({k: ("" if v is None else v) for k, v in (data or {}).items()})
    subject, body = tpl
    return subject.format_map(values), body.format_map(values)


def send_email(cfg, to_email: str, subject: str, body: str) -> bool:
    if not cfg.smtp_configured:
        _log.info("SMTP not configured; skipping email to=%s subject=%r", to_email, subject)
        return True

    msg = EmailMessage()
    msg["From"] = cfg.MAIL_FROM or cfg.SMTP_USER
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    with smtplib.SMTP(cfg.SMTP_HOST, cfg.SMTP_PORT, timeout=cfg.HTTP_TIMEOUT_SECONDS) as server:
        server.ehlo()
        server.starttls()
        server.ehlo()
        server.login(cfg.SMTP_USER, cfg.SMTP_PASSWORD)
        server.send_message(msg)
    return True


def send_sms_otp(cfg, phone: str, otp: str) -> bool:
    resp = requests.get(
        cfg.SMS_API_URL,
        params={"api_key": cfg.SMS_API_KEY, "number": phone, "otp": otp},
        timeout=cfg.HTTP_TIMEOUT_SECONDS,
    )
    resp.raise_for_status()
    return True


def deliver(cfg, address: str, template_id: str, data: dict[str, Any]) -> bool:
    """Render and send one email. Raises on transport failure (the Celery task retries on that)."""
    subject, body = render(template_id, data)
    return send_email(cfg, address, subject, body)


def notify(cfg, address: str, template_id: str, data: dict[str, Any]) -> bool:
    addr = str(address or "").strip()
    if not addr:
        _log.info("notify skipped template=%s (no address)", template_id)
        return False

    if getattr(cfg, "NOTIFY_ASYNC", False):
        try:
            from app.tasks.notifications import send_notification_task

            send_notification_task.delay(addr, template_id, data)
            return True
        except Exception:
            _log.warning("notify enqueue failed template=%s to=%s; delivering inline", template_id, addr, exc_info=True)

    try:
        return deliver(cfg, addr, template_id, data)
    except Exception:
        _log.warning("notify failed template=%s to=%s", template_id, addr, exc_info=True)
        return False
