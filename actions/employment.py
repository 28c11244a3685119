"""
Post-approval employment transitions: deactivation (two-step and direct), termination, rehire.

History archival rule: a stint with an outlet and a role is archived to previousEmployment
when it ends, i.e. at deactivation approval, direct deactivation or termination. Termination
always records its own entry, even after a deactivation. Rehire only archives when the stint it
closes has not already been archived (older rows deactivated before archival existed), so a
deactivate -> rehire round trip leaves exactly one entry.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import select

from actions.helpers import ActionResult, history_of, require_text
from actions.lifecycle import (
    EmployeeStatus,
    Status,
    archived_history,
    load_onboarding,
    outlet_of,
    schedule_lms_deprovisioning,
    transition,
)
from actions.onboarding import serialize_onboarding
from auth import STORE_MANAGER, in_scope, normalize_role, scope_for
from models import Onboarding
from utils import ApiError, iso_utc_now


def request_deactivation(data, auth, db, cfg):
    reason = require_text(data, "reason", "Deactivation reason is required")
    scope = scope_for(db, auth)
    if scope is not None and not scope and normalize_role(auth.role) == STORE_MANAGER:
        raise ApiError("NOT_FOUND", "No outlet found for this manager")

    rec = db.execute(select(Onboarding).where(Onboarding.id == str(data.get("id") or ""))).scalar_one_or_none()
    if not rec:
        raise ApiError("NOT_FOUND", "Employee not found or does not belong to your outlet")
    if not in_scope(scope, rec.outletId):
        raise ApiError("FORBIDDEN", "Employee not found or does not belong to your outlet")
    if rec.status != Status.APPROVED.value:
        raise ApiError("NOT_FOUND", "Employee not found or does not belong to your outlet")
    if rec.employeeStatus == EmployeeStatus.DEACTIVATION_PENDING.value:
        raise ApiError("INVALID_STATE", "Deactivation request already pending for this employee")

    now = iso_utc_now()
    transition(
        db,
        rec,
        action="DEACTIVATION_REQUEST",
        auth=auth,
        to_employee_status=EmployeeStatus.DEACTIVATION_PENDING,
        patch={
            "deactivationReason": reason,
            "deactivationRequestedBy": auth.userId,
            "deactivationRequestedAt": now,
            "deactivationApprovedBy": None,
            "deactivationApprovedAt": None,
        },
        remark=reason,
        invalid_message="Only active employees can be deactivated",
    )
    return ActionResult(
        {"employee": serialize_onboarding(rec, outlet_of(db, rec))},
        "Deactivation request submitted successfully. Waiting for Field Coach approval.",
    )


def _pending_request(db, data, auth) -> Onboarding:
    rec = db.execute(select(Onboarding).where(Onboarding.id == str(data.get("id") or ""))).scalar_one_or_none()
    if not rec:
        raise ApiError("NOT_FOUND", "Deactivation request not found or already processed")
    # Scope first: out-of-scope callers get FORBIDDEN whatever the state.
    if not in_scope(scope_for(db, auth), rec.outletId):
        raise ApiError("FORBIDDEN", "You do not have permission to process this deactivation request")
    if rec.status != Status.APPROVED.value or rec.employeeStatus != EmployeeStatus.DEACTIVATION_PENDING.value:
        raise ApiError("NOT_FOUND", "Deactivation request not found or already processed")
    return rec


def _deactivation_patch(db, rec: Onboarding, auth, now: str, reason: str) -> dict[str, Any]:
    patch: dict[str, Any] = {"deactivationApprovedBy": auth.userId, "deactivationApprovedAt": now}
    history_json = archived_history(db, rec, end_date=now, end_reason="deactivated", termination_reason=reason)
    if history_json is not None:
        patch["previousEmploymentJson"] = history_json
    return patch


def approve_deactivation(data, auth, db, cfg):
    rec = _pending_request(db, data, auth)
    now = iso_utc_now()
    transition(
        db,
        rec,
        action="DEACTIVATION_APPROVE",
        auth=auth,
        to_employee_status=EmployeeStatus.DEACTIVATED,
        patch=_deactivation_patch(db, rec, auth, now, rec.deactivationReason or ""),
        remark=rec.deactivationReason or "",
    )
    schedule_lms_deprovisioning(db, cfg, rec)
    return ActionResult(
        {"employee": serialize_onboarding(rec, outlet_of(db, rec))},
        f"{rec.fullName} has been deactivated successfully",
    )


def reject_deactivation(data, auth, db, cfg):
    rec = _pending_request(db, data, auth)
    remark = str(data.get("reason") or "").strip()
    transition(
        db,
        rec,
        action="DEACTIVATION_REJECT",
        auth=auth,
        to_employee_status=EmployeeStatus.ACTIVE,
        patch={"deactivationReason": None, "deactivationRequestedBy": None, "deactivationRequestedAt": None},
        remark=remark,
    )
    return ActionResult(
        {"employee": serialize_onboarding(rec, outlet_of(db, rec))},
        f"Deactivation request for {rec.fullName} has been rejected",
    )


def deactivate_direct(data, auth, db, cfg):
    rec = load_onboarding(db, data.get("id"), message="Employee not found")
    reason = require_text(data, "reason", "Deactivation reason is required")
    if rec.status != Status.APPROVED.value:
        raise ApiError("INVALID_STATE", "Only approved employees can be deactivated")
    if rec.employeeStatus in {EmployeeStatus.DEACTIVATED.value, EmployeeStatus.TERMINATED.value}:
        raise ApiError("INVALID_STATE", "Employee is already deactivated")

    now = iso_utc_now()
    patch = {"deactivationReason": reason, "deactivationRequestedBy": auth.userId, "deactivationRequestedAt": now}
    patch.update(_deactivation_patch(db, rec, auth, now, reason))
    transition(
        db,
        rec,
        action="DEACTIVATE",
        auth=auth,
        to_employee_status=EmployeeStatus.DEACTIVATED,
        patch=patch,
        remark=reason,
    )
    schedule_lms_deprovisioning(db, cfg, rec)
    return ActionResult({"employee": serialize_onboarding(rec, outlet_of(db, rec))}, "Employee deactivated successfully")


def terminate(data, auth, db, cfg):
    rec = load_onboarding(db, data.get("id"), message="Employee not found")
    reason = require_text(data, "reason", "Termination reason is required")
    if rec.status != Status.APPROVED.value or rec.employeeStatus == EmployeeStatus.TERMINATED.value:
        raise ApiError("INVALID_STATE", "Only active approved employees can be terminated")

    now = iso_utc_now()
    history_json = archived_history(db, rec, end_date=now, end_reason="terminated", termination_reason=reason)
    patch: dict[str, Any] = {"terminationReason": reason, "terminatedBy": auth.userId, "terminatedAt": now}
    if history_json is not None:
        patch["previousEmploymentJson"] = history_json
    transition(
        db,
        rec,
        action="TERMINATE",
        auth=auth,
        to_status=Status.TERMINATED,
        to_employee_status=EmployeeStatus.TERMINATED,
        patch=patch,
        remark=reason,
    )
    schedule_lms_deprovisioning(db, cfg, rec)
    return ActionResult({"employee": serialize_onboarding(rec, outlet_of(db, rec))}, "Employee terminated successfully")


def _stint_archived(rec: Onboarding, hist: list[dict[str, Any]]) -> bool:
    if not hist or not rec.deactivationApprovedAt:
        return False
    last = hist[-1]
    return last.get("endReason") == "deactivated" and last.get("endDate") == rec.deactivationApprovedAt


def rehire(data, auth, db, cfg):
    rec = load_onboarding(db, data.get("id"), message="Employee not found")
    if rec.status != Status.APPROVED.value or rec.employeeStatus != EmployeeStatus.DEACTIVATED.value:
        raise ApiError("INVALID_STATE", "Only deactivated employees can be rehired")

    now = iso_utc_now()
    patch: dict[str, Any] = {"rehiredAt": now}
    if not _stint_archived(rec, history_of(rec)):
        history_json = archived_history(
            db,
            rec,
            end_date=rec.deactivationApprovedAt or now,
            end_reason="deactivated",
            termination_reason=rec.deactivationReason or "",
        )
        if history_json is not None:
            patch["previousEmploymentJson"] = history_json

    transition(
        db,
        rec,
        action="REHIRE",
        auth=auth,
        to_status=Status.APPROVED,
        to_employee_status=EmployeeStatus.ACTIVE,
        patch=patch,
    )
    return ActionResult({"employee": serialize_onboarding(rec, outlet_of(db, rec))}, "Employee rehired successfully")


def public_employee_get(data, auth, db, cfg):
    key = str(data.get("employeeKey") or "").strip().upper()
    if not key:
        raise ApiError("VALIDATION_ERROR", "Employee key is required")
    rec = db.execute(select(Onboarding).where(Onboarding.employeeKey == key)).scalar_one_or_none()
    if not rec:
        raise ApiError("NOT_FOUND", "Employee not found or invalid key")
    if rec.status != Status.APPROVED.value:
        raise ApiError("FORBIDDEN", "Employee data not available")

    outlet = outlet_of(db, rec)
    return {
        "employeeKey": rec.employeeKey,
        "fullName": rec.fullName,
        "designation": rec.designation or rec.role,
        "role": rec.role,
        "employeeStatus": rec.employeeStatus,
        "dateOfJoining": rec.dateOfJoining or rec.approvalDate,
        "outlet": {"name": outlet.name, "code": outlet.code, "city": outlet.city} if outlet else None,
    }
