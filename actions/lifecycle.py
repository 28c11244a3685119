from __future__ import annotations

import logging
import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update

from actions.helpers import after_commit, append_audit, history_of
from db import SessionLocal
from models import Onboarding, Outlet, StaffAccount
from services import lms_client
from services.notifications import notify
from utils import (
    ApiError,
    AuthContext,
    constant_time_equals,
    date_part,
    iso_utc_now,
    json_dumps,
    parse_datetime_maybe,
    sha256_hex,
    to_iso_utc,
)


_log = logging.getLogger("lifecycle")


class Status(str, Enum):
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    TERMINATED = "terminated"


class EmployeeStatus(str, Enum):
    ACTIVE = "active"
    DEACTIVATION_PENDING = "deactivation_pending"
    DEACTIVATED = "deactivated"
    TERMINATED = "terminated"


# Legal moves of the application status machine.
STATUS_TRANSITIONS: dict[Status, set[Status]] = {
    Status.DRAFT: {Status.SUBMITTED},
    Status.IN_PROGRESS: {Status.SUBMITTED},
    Status.SUBMITTED: {Status.PENDING_APPROVAL, Status.APPROVED, Status.REJECTED},
    Status.PENDING_APPROVAL: {Status.APPROVED, Status.REJECTED},
    Status.APPROVED: {Status.TERMINATED},
    Status.REJECTED: set(),
    Status.TERMINATED: set(),
}

# Legal moves of the employee sub-machine; only meaningful while status=approved.
EMPLOYEE_TRANSITIONS: dict[EmployeeStatus, set[EmployeeStatus]] = {
    EmployeeStatus.ACTIVE: {EmployeeStatus.DEACTIVATION_PENDING, EmployeeStatus.DEACTIVATED, EmployeeStatus.TERMINATED},
    EmployeeStatus.DEACTIVATION_PENDING: {EmployeeStatus.DEACTIVATED, EmployeeStatus.ACTIVE, EmployeeStatus.TERMINATED},
    # DEACTIVATED -> ACTIVE is the rehire path.
    EmployeeStatus.DEACTIVATED: {EmployeeStatus.ACTIVE, EmployeeStatus.TERMINATED},
    EmployeeStatus.TERMINATED: set(),
}

REVIEWABLE = {Status.SUBMITTED, Status.PENDING_APPROVAL}
TOKEN_APPROVER = "approval-link"


def _status(value: Any) -> Status:
    if isinstance(value, Status):
        return value
    try:
        return Status(str(value or ""))
    except ValueError:
        raise ApiError("INVALID_STATE", f"Unknown application status: {value}")


def _employee_status(value: Any) -> EmployeeStatus:
    if isinstance(value, EmployeeStatus):
        return value
    try:
        return EmployeeStatus(str(value or EmployeeStatus.ACTIVE.value))
    except ValueError:
        raise ApiError("INVALID_STATE", f"Unknown employee status: {value}")


def can_transition(from_status: Any, to_status: Any) -> bool:
    return _status(to_status) in STATUS_TRANSITIONS.get(_status(from_status), set())


def can_transition_employee(from_status: Any, to_status: Any) -> bool:
    return _employee_status(to_status) in EMPLOYEE_TRANSITIONS.get(_employee_status(from_status), set())


def load_onboarding(db, onboarding_id: Any, *, message: str = "Application not found") -> Onboarding:
    oid = str(onboarding_id or "").strip()
    if not oid:
        raise ApiError("VALIDATION_ERROR", "Missing application id")
    rec = db.execute(select(Onboarding).where(Onboarding.id == oid)).scalar_one_or_none()
    if not rec:
        raise ApiError("NOT_FOUND", message)
    return rec


def transition(
    db,
    rec: Onboarding,
    *,
    action: str,
    auth: Optional[AuthContext],
    to_status: Optional[Status] = None,
    to_employee_status: Optional[EmployeeStatus] = None,
    patch: Optional[dict[str, Any]] = None,
    remark: str = "",
    meta: Any = None,
    invalid_message: str = "",
) -> Onboarding:
    """
    Single guarded, audited transition of one Onboarding record.

    - validates the move against STATUS_TRANSITIONS / EMPLOYEE_TRANSITIONS
    - writes with `UPDATE .. WHERE status=? AND employeeStatus=? AND rowVersion=?`
      so a concurrent writer that got there first turns this into a CONFLICT
    - appends an AuditLog row in the same transaction

    IMPORTANT: Do not call `db.commit()` here; the API router owns the transaction boundary.
    """

    now = iso_utc_now()
    from_s = _status(rec.status)
    from_e = _employee_status(rec.employeeStatus)
    next_s = Status(to_status) if to_status is not None else from_s
    next_e = EmployeeStatus(to_employee_status) if to_employee_status is not None else from_e

    if next_s != from_s and not can_transition(from_s, next_s):
        raise ApiError("INVALID_STATE", invalid_message or f"Cannot {action.lower()} an application in status {from_s.value}")
    if next_e != from_e and not can_transition_employee(from_e, next_e):
        raise ApiError("INVALID_STATE", invalid_message or f"Cannot {action.lower()} an employee in status {from_e.value}")

    values = dict(patch or {})
    values["status"] = next_s.value
    values["employeeStatus"] = next_e.value
    values["rowVersion"] = int(rec.rowVersion or 1) + 1
    values["updatedAt"] = now

    res = db.execute(
        update(Onboarding)
        .where(Onboarding.id == rec.id)
        .where(Onboarding.status == from_s.value)
        .where(Onboarding.employeeStatus == from_e.value)
        .where(Onboarding.rowVersion == int(rec.rowVersion or 1))
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    if res.rowcount != 1:
        raise ApiError("CONFLICT", "Record was modified concurrently; please retry")

    append_audit(
        db,
        entityType="ONBOARDING",
        entityId=rec.id,
        action=action,
        fromState=f"{from_s.value}/{from_e.value}",
        toState=f"{next_s.value}/{next_e.value}",
        stageTag=action,
        remark=remark,
        actor=auth,
        at=now,
        meta=meta,
    )
    _log.info("onboarding=%s action=%s %s/%s -> %s/%s", rec.id, action, from_s.value, from_e.value, next_s.value, next_e.value)
    return rec


def update_fields(db, rec: Onboarding, patch: dict[str, Any]) -> Onboarding:
    """Non-transition write (draft edits, verification flags) under the same version check."""

    values = dict(patch)
    values["rowVersion"] = int(rec.rowVersion or 1) + 1
    values["updatedAt"] = iso_utc_now()
    res = db.execute(
        update(Onboarding)
        .where(Onboarding.id == rec.id)
        .where(Onboarding.rowVersion == int(rec.rowVersion or 1))
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    if res.rowcount != 1:
        raise ApiError("CONFLICT", "Record was modified concurrently; please retry")
    return rec


# ---------------------------------------------------------------------------
# Identifiers and approval tokens
# ---------------------------------------------------------------------------

_B36 = string.digits + string.ascii_uppercase


def _base36(n: int) -> str:
    if n <= 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(_B36[r])
    return "".join(reversed(out))


def new_employee_key() -> str:
    rand = "".join(secrets.choice(_B36) for _ in range(9))
    return f"EMP-{_base36(int(time.time() * 1000))}-{rand}"


def issue_approval_token(cfg) -> tuple[str, str, str]:
    """Returns (raw token for the link, sha256 to store, ISO expiry)."""
    raw = secrets.token_hex(32)
    expires = datetime.now(timezone.utc) + timedelta(days=int(cfg.APPROVAL_TOKEN_TTL_DAYS))
    return raw, sha256_hex(raw), to_iso_utc(expires)


def verify_approval_token(db, rec: Onboarding, token: Any) -> None:
    raw = str(token or "").strip()
    if not raw:
        raise ApiError("VALIDATION_ERROR", "Approval token is required")
    if rec.approvalTokenUsedAt and not rec.approvalTokenHash:
        raise ApiError("CONFLICT", "Approval link has already been used")
    if not rec.approvalTokenHash:
        raise ApiError("FORBIDDEN", "Invalid approval token")
    exp = parse_datetime_maybe(rec.approvalTokenExpiry)
    if not exp or exp < datetime.now(timezone.utc):
        update_fields(db, rec, {"approvalTokenHash": None, "approvalTokenExpiry": None})
        # The cleared token must survive the error response.
        db.commit()
        raise ApiError("EXPIRED", "Approval link has expired")
    if not constant_time_equals(sha256_hex(raw), rec.approvalTokenHash):
        raise ApiError("FORBIDDEN", "Invalid approval token")


def consumed_token_patch(now: str) -> dict[str, Any]:
    return {"approvalTokenHash": None, "approvalTokenExpiry": None, "approvalTokenUsedAt": now}


# ---------------------------------------------------------------------------
# Employment history
# ---------------------------------------------------------------------------

def employment_entry(
    rec: Onboarding,
    outlet: Optional[Outlet],
    *,
    end_date: str,
    end_reason: str,
    termination_reason: str = "",
) -> dict[str, Any]:
    return {
        "role": rec.role or "",
        "outlet": {"name": outlet.name if outlet else "", "code": (outlet.code if outlet else "") or "N/A"},
        "joinDate": rec.approvalDate or rec.dateOfJoining or rec.createdAt or "",
        "endDate": end_date,
        "endReason": end_reason,
        "terminationReason": termination_reason or "",
        "performanceNotes": "",
    }


def history_with(rec: Onboarding, entry: dict[str, Any]) -> str:
    hist = history_of(rec)
    hist.append(entry)
    return json_dumps(hist)


def archived_history(
    db,
    rec: Onboarding,
    *,
    end_date: str,
    end_reason: str,
    termination_reason: str = "",
) -> Optional[str]:
    """History JSON with the closing stint appended, or None when the record has no outlet and role to archive."""

    if not rec.outletId or not rec.role:
        return None
    entry = employment_entry(
        rec,
        outlet_of(db, rec),
        end_date=end_date,
        end_reason=end_reason,
        termination_reason=termination_reason,
    )
    return history_with(rec, entry)


def outlet_of(db, rec: Onboarding) -> Optional[Outlet]:
    if not rec.outletId:
        return None
    return db.execute(select(Outlet).where(Outlet.id == rec.outletId)).scalar_one_or_none()


def coach_email_for(db, outlet: Optional[Outlet]) -> str:
    if not outlet or not outlet.fieldCoachId:
        return ""
    coach = db.execute(select(StaffAccount).where(StaffAccount.userId == outlet.fieldCoachId)).scalar_one_or_none()
    if not coach or not coach.isActive:
        return ""
    return str(coach.email or "").strip()


# ---------------------------------------------------------------------------
# Post-commit side effects
# ---------------------------------------------------------------------------

def _provision_lms(cfg, onboarding_id: str, profile: dict[str, Any]) -> None:
    try:
        lms_user_id = lms_client.create_account(cfg, profile)
    except lms_client.LmsError:
        _log.warning("LMS provisioning failed onboarding=%s", onboarding_id, exc_info=True)
        return

    with SessionLocal() as db:
        db.execute(
            update(Onboarding)
            .where(Onboarding.id == onboarding_id)
            .where(Onboarding.lmsUserId.is_(None))
            .values(lmsUserId=lms_user_id, lmsCreatedAt=iso_utc_now())
        )
        db.commit()


def _deprovision_lms(cfg, onboarding_id: str, lms_user_id: str) -> None:
    try:
        lms_client.deactivate_account(cfg, lms_user_id)
    except lms_client.LmsError:
        _log.warning("LMS deactivation failed onboarding=%s lmsUserId=%s", onboarding_id, lms_user_id, exc_info=True)


def schedule_lms_provisioning(db, cfg, rec: Onboarding, outlet: Optional[Outlet]) -> None:
    if rec.lmsUserId:
        return
    profile = {
        "fullName": rec.fullName,
        "email": rec.email,
        "phone": rec.phone,
        "designation": rec.designation or rec.role,
        "storeName": outlet.name if outlet else "",
        "storeCode": outlet.code if outlet else "",
        "fieldCoachEmail": coach_email_for(db, outlet) or rec.fieldCoachEmail,
        "dateOfJoining": date_part(rec.dateOfJoining or rec.approvalDate),
    }
    after_commit(db, _provision_lms, cfg, rec.id, profile)


def schedule_lms_deprovisioning(db, cfg, rec: Onboarding) -> None:
    if rec.lmsUserId:
        after_commit(db, _deprovision_lms, cfg, rec.id, rec.lmsUserId)


def queue_notification(db, cfg, address: str, template_id: str, data: dict[str, Any]) -> None:
    after_commit(db, notify, cfg, address, template_id, dict(data))
