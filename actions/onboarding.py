from __future__ import annotations

import base64
import binascii
from typing import Any, Optional

from sqlalchemy import select

from actions.helpers import (
    ActionResult,
    append_audit,
    display_status,
    documents_of,
    history_of,
    mask_aadhaar,
    profile_of,
    require_email,
    require_phone,
    require_text,
)
from actions.lifecycle import (
    REVIEWABLE,
    TOKEN_APPROVER,
    EmployeeStatus,
    Status,
    coach_email_for,
    consumed_token_patch,
    issue_approval_token,
    load_onboarding,
    new_employee_key,
    outlet_of,
    queue_notification,
    schedule_lms_provisioning,
    transition,
    update_fields,
    verify_approval_token,
)
from auth import assert_in_scope, scope_for
from models import Onboarding, Outlet
from services import document_store
from services.identity_hash import normalize_aadhaar, normalize_pan, parse_date_yyyy_mm_dd
from utils import ApiError, AuthContext, as_int, iso_utc_now, json_dumps, new_id


SINGLE_DOCUMENT_SLOTS = {"photo", "educationCertificate", "experienceDocument", "panDocument"}
LIST_DOCUMENT_SLOTS = {"idDocuments", "certificates"}

# Columns the candidate may write while drafting; everything else lands in profileJson.
_DRAFT_COLUMNS = {"fullName", "email", "gender", "designation", "role"}
_DRAFT_IGNORED = {
    "id",
    "onboardingId",
    "phone",
    "outletId",
    "outletCode",
    "storeCode",
    "currentStep",
    "dob",
    "dateOfJoining",
    "aadhaarNumber",
    "panNumber",
    "fieldCoachEmail",
    "documents",
    "status",
    "employeeStatus",
    "employeeKey",
    "aadhaarVerified",
    "panVerified",
    "phoneOtpVerified",
    "emailOtpVerified",
    "previousEmployment",
}


def _outlet_summary(outlet: Optional[Outlet]) -> Optional[dict[str, Any]]:
    if not outlet:
        return None
    return {"id": outlet.id, "name": outlet.name, "code": outlet.code, "city": outlet.city, "email": outlet.email}


def serialize_onboarding(rec: Onboarding, outlet: Optional[Outlet] = None, *, mask: bool = True) -> dict[str, Any]:
    return {
        "id": rec.id,
        "employeeKey": rec.employeeKey,
        "fullName": rec.fullName,
        "phone": rec.phone,
        "email": rec.email,
        "gender": rec.gender,
        "dob": rec.dob,
        "aadhaarNumber": mask_aadhaar(rec.aadhaarNumber) if mask else rec.aadhaarNumber,
        "panNumber": rec.panNumber,
        "designation": rec.designation,
        "dateOfJoining": rec.dateOfJoining,
        "role": rec.role,
        "outletId": rec.outletId,
        "outlet": _outlet_summary(outlet),
        "fieldCoachEmail": rec.fieldCoachEmail,
        "status": rec.status,
        "displayStatus": display_status(rec),
        "employeeStatus": rec.employeeStatus,
        "currentStep": rec.currentStep,
        "aadhaarVerified": bool(rec.aadhaarVerified),
        "panVerified": bool(rec.panVerified),
        "phoneOtpVerified": bool(rec.phoneOtpVerified),
        "emailOtpVerified": bool(rec.emailOtpVerified),
        "profile": profile_of(rec),
        "documents": documents_of(rec),
        "previousEmployment": history_of(rec),
        "submittedAt": rec.submittedAt,
        "approvedBy": rec.approvedBy,
        "approvalDate": rec.approvalDate,
        "rejectedBy": rec.rejectedBy,
        "rejectionReason": rec.rejectionReason,
        "rejectionDate": rec.rejectionDate,
        "deactivationReason": rec.deactivationReason,
        "deactivationRequestedBy": rec.deactivationRequestedBy,
        "deactivationRequestedAt": rec.deactivationRequestedAt,
        "deactivationApprovedBy": rec.deactivationApprovedBy,
        "deactivationApprovedAt": rec.deactivationApprovedAt,
        "rehiredAt": rec.rehiredAt,
        "terminationReason": rec.terminationReason,
        "terminatedBy": rec.terminatedBy,
        "terminatedAt": rec.terminatedAt,
        "lmsUserId": rec.lmsUserId,
        "createdAt": rec.createdAt,
        "updatedAt": rec.updatedAt,
    }


def _resolve_outlet(db, data: dict) -> Optional[Outlet]:
    outlet_id = str(data.get("outletId") or "").strip()
    code = str(data.get("outletCode") or data.get("storeCode") or "").strip()
    if not outlet_id and not code:
        return None
    q = select(Outlet).where(Outlet.id == outlet_id) if outlet_id else select(Outlet).where(Outlet.code == code.upper())
    outlet = db.execute(q).scalar_one_or_none()
    if not outlet:
        raise ApiError("NOT_FOUND", "Outlet not found")
    if not outlet.isActive:
        raise ApiError("VALIDATION_ERROR", "Selected outlet is not active")
    return outlet


def _draft_patch(db, data: dict, rec: Optional[Onboarding]) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    for key in _DRAFT_COLUMNS:
        if key in data:
            patch[key] = str(data.get(key) or "").strip()
    if "email" in patch and patch["email"]:
        patch["email"] = require_email(patch["email"])
    for key in ("dob", "dateOfJoining"):
        if key in data:
            patch[key] = parse_date_yyyy_mm_dd(data.get(key))
    if "aadhaarNumber" in data and not (rec and rec.aadhaarVerified):
        patch["aadhaarNumber"] = normalize_aadhaar(data.get("aadhaarNumber"))
    if "panNumber" in data and not (rec and rec.panVerified):
        patch["panNumber"] = normalize_pan(data.get("panNumber"))
    if "fieldCoachEmail" in data:
        s = str(data.get("fieldCoachEmail") or "").strip()
        patch["fieldCoachEmail"] = require_email(s) if s else ""
    if "currentStep" in data:
        patch["currentStep"] = max(1, min(as_int(data.get("currentStep"), 1), 4))

    outlet = _resolve_outlet(db, data)
    if outlet:
        patch["outletId"] = outlet.id

    extra = {k: v for k, v in data.items() if k not in _DRAFT_COLUMNS and k not in _DRAFT_IGNORED}
    if extra:
        profile = profile_of(rec) if rec else {}
        profile.update(extra)
        patch["profileJson"] = json_dumps(profile)
    return patch


def save_draft(data, auth: Optional[AuthContext], db, cfg):
    """
    Create or update the candidate's open draft.

    Keyed by phone: one open draft per phone number. Verified identity numbers are
    not overwritten by later draft saves.
    """

    phone = require_phone(data.get("phone"))
    onboarding_id = str(data.get("id") or data.get("onboardingId") or "").strip()

    if onboarding_id:
        rec = load_onboarding(db, onboarding_id)
    else:
        rec = (
            db.execute(
                select(Onboarding)
                .where(Onboarding.phone == phone)
                .where(Onboarding.status == Status.DRAFT.value)
                .order_by(Onboarding.createdAt.desc())
            )
            .scalars()
            .first()
        )

    if rec and rec.status != Status.DRAFT.value:
        raise ApiError("INVALID_STATE", "Application has already been submitted")

    patch = _draft_patch(db, data, rec)
    if rec:
        if rec.phone != phone:
            patch["phone"] = phone
            patch["phoneOtpVerified"] = False
        update_fields(db, rec, patch)
        return ActionResult({"application": serialize_onboarding(rec, outlet_of(db, rec))}, "Draft saved successfully")

    now = iso_utc_now()
    rec = Onboarding(
        id=new_id("ONB"),
        phone=phone,
        status=Status.DRAFT.value,
        employeeStatus=EmployeeStatus.ACTIVE.value,
        currentStep=1,
        rowVersion=1,
        profileJson="{}",
        documentsJson="{}",
        aadhaarProfileJson="{}",
        previousEmploymentJson="[]",
        createdAt=now,
        updatedAt=now,
    )
    for k, v in patch.items():
        setattr(rec, k, v)
    db.add(rec)
    db.flush()
    append_audit(
        db,
        entityType="ONBOARDING",
        entityId=rec.id,
        action="DRAFT_CREATE",
        toState=f"{rec.status}/{rec.employeeStatus}",
        actor=auth,
        at=now,
    )
    return ActionResult({"application": serialize_onboarding(rec, outlet_of(db, rec))}, "Draft saved successfully")


def get_draft(data, auth, db, cfg):
    phone = require_phone(data.get("phone"))
    rec = (
        db.execute(
            select(Onboarding)
            .where(Onboarding.phone == phone)
            .where(Onboarding.status == Status.DRAFT.value)
            .order_by(Onboarding.createdAt.desc())
        )
        .scalars()
        .first()
    )
    if not rec:
        raise ApiError("NOT_FOUND", "No draft found for this phone number")
    return {"application": serialize_onboarding(rec, outlet_of(db, rec))}


def get_application(data, auth, db, cfg):
    rec = load_onboarding(db, data.get("id"))
    assert_in_scope(scope_for(db, auth), rec.outletId, "You do not have permission to view this application")
    return {"application": serialize_onboarding(rec, outlet_of(db, rec))}


def _file_bytes(data: dict) -> bytes:
    raw = data.get("fileBytes")
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    b64 = str(data.get("fileBase64") or "").strip()
    if not b64:
        raise ApiError("VALIDATION_ERROR", "No file uploaded")
    if "," in b64 and b64.lower().startswith("data:"):
        b64 = b64.split(",", 1)[1]
    try:
        return base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError):
        raise ApiError("VALIDATION_ERROR", "Invalid file encoding")


def attach_document(data, auth, db, cfg):
    rec = load_onboarding(db, data.get("id"))
    slot = str(data.get("slot") or data.get("documentType") or "").strip()
    if slot not in SINGLE_DOCUMENT_SLOTS and slot not in LIST_DOCUMENT_SLOTS:
        raise ApiError("VALIDATION_ERROR", f"Unknown document type: {slot or '(empty)'}")
    if rec.status != Status.DRAFT.value:
        raise ApiError("INVALID_STATE", "Documents can only be changed while the application is a draft")

    descriptor = document_store.save(
        cfg,
        file_bytes=_file_bytes(data),
        file_name=str(data.get("fileName") or slot),
        mime_type=str(data.get("mimeType") or ""),
        prefix=f"{rec.id}_{slot}",
    )

    docs = documents_of(rec)
    if slot in LIST_DOCUMENT_SLOTS:
        items = docs.get(slot) if isinstance(docs.get(slot), list) else []
        items.append(descriptor)
        docs[slot] = items
    else:
        docs[slot] = descriptor
    update_fields(db, rec, {"documentsJson": json_dumps(docs)})
    append_audit(db, entityType="ONBOARDING", entityId=rec.id, action="DOCUMENT_ATTACH", stageTag=slot, actor=auth, meta=descriptor)
    return ActionResult({"document": descriptor, "documents": docs}, "Document uploaded successfully")


def _carried_history(db, rec: Onboarding) -> Optional[list]:
    aadhaar = normalize_aadhaar(rec.aadhaarNumber)
    if not aadhaar:
        return None
    rows = (
        db.execute(
            select(Onboarding)
            .where(Onboarding.aadhaarNumber == aadhaar)
            .where(Onboarding.id != rec.id)
            .where(Onboarding.terminatedAt.is_not(None))
            .order_by(Onboarding.terminatedAt.desc())
        )
        .scalars()
        .all()
    )
    for row in rows:
        hist = history_of(row)
        if hist:
            return hist
    return None


def _approval_links(cfg, rec: Onboarding, raw_token: str) -> dict[str, str]:
    base = f"{cfg.FRONTEND_URL.rstrip('/')}/approval/{rec.id}?token={raw_token}"
    return {"approveLink": f"{base}&action=approve", "rejectLink": f"{base}&action=reject"}


def _notification_data(rec: Onboarding, outlet: Optional[Outlet], **extra) -> dict[str, Any]:
    data = {
        "fullName": rec.fullName,
        "phone": rec.phone,
        "email": rec.email,
        "role": rec.role,
        "designation": rec.designation or rec.role,
        "storeName": outlet.name if outlet else "",
        "storeCode": outlet.code if outlet else "",
        "employeeKey": rec.employeeKey or "",
        "dateOfJoining": rec.dateOfJoining or "",
    }
    data.update(extra)
    return data


def _dispatch_approval_request(db, cfg, rec: Onboarding, outlet: Optional[Outlet], coach_email: str, auth) -> None:
    raw, token_hash, expires_at = issue_approval_token(cfg)
    now = iso_utc_now()
    transition(
        db,
        rec,
        action="SEND_APPROVAL",
        auth=auth,
        to_status=Status.PENDING_APPROVAL,
        patch={
            "approvalTokenHash": token_hash,
            "approvalTokenExpiry": expires_at,
            "approvalTokenUsedAt": None,
            "approvalEmailSentAt": now,
            "fieldCoachEmail": coach_email,
        },
        meta={"to": coach_email, "expiresAt": expires_at},
    )
    queue_notification(
        db, cfg, coach_email, "approval_request", _notification_data(rec, outlet, expiresAt=expires_at, **_approval_links(cfg, rec, raw))
    )


def submit(data, auth, db, cfg):
    rec = load_onboarding(db, data.get("id"))
    if rec.status not in {Status.DRAFT.value, Status.IN_PROGRESS.value}:
        raise ApiError("INVALID_STATE", "Application has already been submitted")
    if not rec.outletId:
        raise ApiError("VALIDATION_ERROR", "Outlet must be selected before submission")
    if not rec.aadhaarVerified:
        raise ApiError("VALIDATION_ERROR", "Aadhaar verification is required")
    if not documents_of(rec).get("photo"):
        raise ApiError("VALIDATION_ERROR", "Photo is required")

    outlet = outlet_of(db, rec)
    body_email = str(data.get("fieldCoachEmail") or "").strip()
    coach_email = coach_email_for(db, outlet) or (require_email(body_email) if body_email else "") or rec.fieldCoachEmail

    now = iso_utc_now()
    patch: dict[str, Any] = {"submittedAt": now, "currentStep": 4, "fieldCoachEmail": coach_email or ""}
    carried = _carried_history(db, rec)
    if carried:
        patch["previousEmploymentJson"] = json_dumps(carried)

    transition(db, rec, action="SUBMIT", auth=auth, to_status=Status.SUBMITTED, patch=patch)

    approval_sent = False
    if coach_email:
        _dispatch_approval_request(db, cfg, rec, outlet, coach_email, auth)
        approval_sent = True

    queue_notification(db, cfg, rec.email, "application_submitted", _notification_data(rec, outlet))
    return ActionResult(
        {"application": serialize_onboarding(rec, outlet), "approvalEmailSent": approval_sent},
        "Application submitted successfully",
    )


def send_approval_email(data, auth, db, cfg):
    rec = load_onboarding(db, data.get("id"))
    assert_in_scope(scope_for(db, auth), rec.outletId, "You do not have permission to request approval for this application")
    if rec.status == Status.PENDING_APPROVAL.value or (rec.status == Status.SUBMITTED.value and rec.approvalEmailSentAt):
        raise ApiError("CONFLICT", "Approval email already sent")
    if rec.status != Status.SUBMITTED.value:
        raise ApiError("INVALID_STATE", "Application must be submitted before requesting approval")

    outlet = outlet_of(db, rec)
    body_email = str(data.get("fieldCoachEmail") or "").strip()
    coach_email = coach_email_for(db, outlet) or (require_email(body_email) if body_email else "") or rec.fieldCoachEmail
    if not coach_email:
        raise ApiError("VALIDATION_ERROR", "Field coach email is required")

    _dispatch_approval_request(db, cfg, rec, outlet, coach_email, auth)
    return ActionResult({"application": serialize_onboarding(rec, outlet)}, "Approval email sent successfully")


def check_approval_token(data, auth, db, cfg):
    rec = load_onboarding(db, data.get("id"))
    verify_approval_token(db, rec, data.get("token"))
    outlet = outlet_of(db, rec)
    return {
        "valid": True,
        "status": rec.status,
        "candidate": {
            "id": rec.id,
            "fullName": rec.fullName,
            "phone": rec.phone,
            "email": rec.email,
            "role": rec.role,
            "designation": rec.designation,
            "aadhaarNumber": mask_aadhaar(rec.aadhaarNumber),
            "outlet": _outlet_summary(outlet),
            "submittedAt": rec.submittedAt,
            "documents": documents_of(rec),
        },
    }


def _approve(db, cfg, rec: Onboarding, auth, approver: str, *, token_used: bool) -> Onboarding:
    now = iso_utc_now()
    patch: dict[str, Any] = {"approvedBy": approver, "approvalDate": now}
    if not rec.employeeKey:
        patch["employeeKey"] = new_employee_key()
    if token_used or rec.approvalTokenHash:
        patch.update(consumed_token_patch(now))

    transition(
        db,
        rec,
        action="APPROVE",
        auth=auth,
        to_status=Status.APPROVED,
        to_employee_status=EmployeeStatus.ACTIVE,
        patch=patch,
        invalid_message=f"Application already {rec.status}",
    )

    outlet = outlet_of(db, rec)
    payload = _notification_data(rec, outlet)
    queue_notification(db, cfg, rec.email, "candidate_approved", payload)
    for address in {outlet.email if outlet else "", cfg.TRAINING_TEAM_EMAIL}:
        queue_notification(db, cfg, address, "approval_stakeholders", payload)
    schedule_lms_provisioning(db, cfg, rec, outlet)
    return rec


def _reject(db, cfg, rec: Onboarding, auth, rejected_by: str, reason: str, *, token_used: bool) -> Onboarding:
    now = iso_utc_now()
    patch: dict[str, Any] = {"rejectedBy": rejected_by, "rejectionReason": reason, "rejectionDate": now}
    if token_used or rec.approvalTokenHash:
        patch.update(consumed_token_patch(now))

    transition(
        db,
        rec,
        action="REJECT",
        auth=auth,
        to_status=Status.REJECTED,
        patch=patch,
        remark=reason,
        invalid_message=f"Application already {rec.status}",
    )

    outlet = outlet_of(db, rec)
    payload = _notification_data(rec, outlet, reason=reason, rejectedBy=rejected_by)
    queue_notification(db, cfg, rec.email, "candidate_rejected", payload)
    if outlet:
        queue_notification(db, cfg, outlet.email, "rejection_stakeholders", payload)
    return rec


def _assert_reviewable(rec: Onboarding) -> None:
    if rec.status not in {s.value for s in REVIEWABLE}:
        raise ApiError("INVALID_STATE", f"Application already {rec.status}")


def approve(data, auth, db, cfg):
    rec = load_onboarding(db, data.get("id"))
    assert_in_scope(scope_for(db, auth), rec.outletId, "You do not have permission to approve this application")
    _assert_reviewable(rec)
    _approve(db, cfg, rec, auth, auth.email or auth.userId, token_used=False)
    return ActionResult({"application": serialize_onboarding(rec, outlet_of(db, rec))}, "Application approved successfully")


def reject(data, auth, db, cfg):
    rec = load_onboarding(db, data.get("id"))
    assert_in_scope(scope_for(db, auth), rec.outletId, "You do not have permission to reject this application")
    reason = require_text(data, "reason", "Rejection reason is required")
    _assert_reviewable(rec)
    _reject(db, cfg, rec, auth, auth.email or auth.userId, reason, token_used=False)
    return ActionResult({"application": serialize_onboarding(rec, outlet_of(db, rec))}, "Application rejected")


def approve_by_token(data, auth, db, cfg):
    rec = load_onboarding(db, data.get("id"))
    verify_approval_token(db, rec, data.get("token"))
    _assert_reviewable(rec)
    _approve(db, cfg, rec, auth, TOKEN_APPROVER, token_used=True)
    return ActionResult(
        {"id": rec.id, "status": rec.status, "employeeKey": rec.employeeKey},
        "Application approved successfully",
    )


def reject_by_token(data, auth, db, cfg):
    rec = load_onboarding(db, data.get("id"))
    verify_approval_token(db, rec, data.get("token"))
    _assert_reviewable(rec)
    reason = str(data.get("reason") or "").strip() or "Not provided"
    _reject(db, cfg, rec, auth, TOKEN_APPROVER, reason, token_used=True)
    return ActionResult({"id": rec.id, "status": rec.status}, "Application rejected")
