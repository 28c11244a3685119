from __future__ import annotations

import logging
import os
import re
from typing import Any, Callable, NamedTuple, Optional

from flask import g, has_request_context
from sqlalchemy import select

from models import AuditLog, Onboarding, Outlet
from utils import ApiError, AuthContext, iso_utc_now, json_dumps, json_loads_or


_log = logging.getLogger("lifecycle")

_PHONE_RE = re.compile(r"^\d{10}$")
_EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")

_AFTER_COMMIT_KEY = "after_commit_hooks"


class ActionResult(NamedTuple):
    """Action return value that carries a user-facing success message alongside the data."""

    data: Any
    message: str = ""


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    fromState: str = "",
    toState: str = "",
    stageTag: str = "",
    remark: str = "",
    actor: Optional[AuthContext] = None,
    at: str = "",
    meta: Any = None,
) -> None:
    correlation = ""
    if has_request_context():
        correlation = str(getattr(g, "request_id", "") or "")
    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            entityType=str(entityType or ""),
            entityId=str(entityId or ""),
            action=str(action or "").upper(),
            fromState=str(fromState or ""),
            toState=str(toState or ""),
            stageTag=str(stageTag or ""),
            remark=str(remark or "")[:2000],
            actorUserId=str(actor.userId if actor else "PUBLIC"),
            actorRole=str(actor.role if actor else "PUBLIC"),
            actorEmail=str(actor.email if actor else ""),
            at=at or iso_utc_now(),
            correlationId=correlation,
            metaJson=json_dumps(meta if meta is not None else {}),
        )
    )


def after_commit(db, fn: Callable[..., Any], *args, **kwargs) -> None:
    """
    Defer a side effect (notification, LMS call) until the caller's transaction commits.

    The REST router owns the commit and runs `run_after_commit_hooks`; a rollback drops the hooks.
    """
    db.info.setdefault(_AFTER_COMMIT_KEY, []).append((fn, args, kwargs))


def discard_after_commit_hooks(db) -> None:
    db.info.pop(_AFTER_COMMIT_KEY, None)


def run_after_commit_hooks(db) -> int:
    hooks = db.info.pop(_AFTER_COMMIT_KEY, None) or []
    ran = 0
    for fn, args, kwargs in hooks:
        try:
            fn(*args, **kwargs)
            ran += 1
        except Exception:
            _log.warning("after-commit hook %s failed", getattr(fn, "__name__", fn), exc_info=True)
    return ran


def require_phone(value: Any) -> str:
    phone = re.sub(r"\D+", "", str(value or ""))
    if not _PHONE_RE.fullmatch(phone):
        raise ApiError("VALIDATION_ERROR", "Please provide a valid 10-digit phone number")
    return phone


def require_email(value: Any) -> str:
    email = str(value or "").strip().lower()
    if not _EMAIL_RE.fullmatch(email):
        raise ApiError("VALIDATION_ERROR", "Please provide a valid email address")
    return email


def require_text(data: dict, key: str, message: str) -> str:
    s = str((data or {}).get(key) or "").strip()
    if not s:
        raise ApiError("VALIDATION_ERROR", message)
    return s


def mask_aadhaar(value: Any) -> str:
    digits = re.sub(r"\D+", "", str(value or ""))
    if len(digits) < 4:
        return ""
    return f"XXXX-XXXX-{digits[-4:]}"


def display_status(rec: Onboarding) -> str:
    if rec.employeeStatus in {"deactivated", "terminated"} and rec.status in {"approved", "terminated"}:
        return rec.employeeStatus
    if rec.status in {"submitted", "pending_approval"}:
        return "pending"
    return rec.status


def documents_of(rec: Onboarding) -> dict[str, Any]:
    return json_loads_or(rec.documentsJson, {})


def history_of(rec: Onboarding) -> list[dict[str, Any]]:
    return json_loads_or(rec.previousEmploymentJson, [])


def profile_of(rec: Onboarding) -> dict[str, Any]:
    return json_loads_or(rec.profileJson, {})


def outlets_by_id(db, ids) -> dict[str, Outlet]:
    wanted = {str(x) for x in ids if x}
    if not wanted:
        return {}
    rows = db.execute(select(Outlet).where(Outlet.id.in_(wanted))).scalars().all()
    return {o.id: o for o in rows}
