from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select

from models import Outlet, Session as DbSession, StaffAccount
from utils import ApiError, AuthContext, iso_utc_now, new_uuid, parse_datetime_maybe, sha256_hex, to_iso_utc


SUPER_ADMIN = "super_admin"
FIELD_COACH = "field_coach"
STORE_MANAGER = "store_manager"
STAFF_ROLES = {SUPER_ADMIN, FIELD_COACH, STORE_MANAGER}

_ALL = [SUPER_ADMIN, FIELD_COACH, STORE_MANAGER]
_REVIEWERS = [SUPER_ADMIN, FIELD_COACH, STORE_MANAGER]


STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    # Identity & access
    "AUTH_LOGIN": ["PUBLIC"],
    "AUTH_LOGOUT": _ALL,
    "AUTH_ME": _ALL,
    "AUTH_UPDATE_PASSWORD": _ALL,
    "STAFF_REGISTER": [SUPER_ADMIN],
    "STAFF_LIST": [SUPER_ADMIN],
    # Candidate-facing onboarding flow
    "OTP_SEND": ["PUBLIC"],
    "OTP_VERIFY": ["PUBLIC"],
    "ONBOARDING_SAVE_DRAFT": ["PUBLIC"],
    "ONBOARDING_GET_DRAFT": ["PUBLIC"],
    "ONBOARDING_ATTACH_DOCUMENT": ["PUBLIC"],
    "ONBOARDING_SUBMIT": ["PUBLIC"],
    "KYC_DIGILOCKER_INITIATE": ["PUBLIC"],
    "KYC_DIGILOCKER_STATUS": ["PUBLIC"],
    "KYC_PAN_VERIFY": ["PUBLIC"],
    # Out-of-band approval links (token is the credential)
    "APPROVAL_TOKEN_CHECK": ["PUBLIC"],
    "APPROVAL_TOKEN_APPROVE": ["PUBLIC"],
    "APPROVAL_TOKEN_REJECT": ["PUBLIC"],
    # Catalogs
    "OUTLETS_ACTIVE_LIST": ["PUBLIC"],
    "OUTLET_LIST_ALL": [SUPER_ADMIN],
    "OUTLET_GET": _ALL,
    "OUTLET_CREATE": [SUPER_ADMIN],
    "OUTLET_UPDATE": [SUPER_ADMIN],
    "OUTLET_TOGGLE_STATUS": [SUPER_ADMIN],
    "OUTLET_DELETE": [SUPER_ADMIN],
    "OUTLET_BULK_IMPORT": [SUPER_ADMIN],
    "ROLES_LIST": ["PUBLIC"],
    "ROLE_GET": _ALL,
    "ROLE_CREATE": [SUPER_ADMIN],
    "ROLE_UPDATE": [SUPER_ADMIN],
    "ROLE_DELETE": [SUPER_ADMIN],
    # Lifecycle transitions (scope enforced per record)
    "ONBOARDING_GET": _ALL,
    "ONBOARDING_SEND_APPROVAL_EMAIL": [SUPER_ADMIN, STORE_MANAGER],
    "APPLICATION_APPROVE": _REVIEWERS,
    "APPLICATION_REJECT": _REVIEWERS,
    "DEACTIVATION_REQUEST": [SUPER_ADMIN, STORE_MANAGER],
    "DEACTIVATION_APPROVE": [SUPER_ADMIN, FIELD_COACH],
    "DEACTIVATION_REJECT": [SUPER_ADMIN, FIELD_COACH],
    "EMPLOYEE_DEACTIVATE": [SUPER_ADMIN],
    "EMPLOYEE_TERMINATE": [SUPER_ADMIN],
    "EMPLOYEE_REHIRE": [SUPER_ADMIN],
    # Query views
    "ADMIN_STATS": [SUPER_ADMIN],
    "ADMIN_EMPLOYEES_LIST": [SUPER_ADMIN],
    "ADMIN_DEACTIVATIONS_LIST": [SUPER_ADMIN],
    "COACH_STATS": [SUPER_ADMIN, FIELD_COACH],
    "COACH_APPLICATIONS_LIST": [SUPER_ADMIN, FIELD_COACH],
    "COACH_APPLICATION_GET": [SUPER_ADMIN, FIELD_COACH],
    "COACH_DEACTIVATIONS_LIST": [SUPER_ADMIN, FIELD_COACH],
    "MANAGER_STATS": [STORE_MANAGER],
    "MANAGER_ONBOARDINGS_LIST": [STORE_MANAGER],
    "MANAGER_EMPLOYEES_LIST": [STORE_MANAGER],
    "MANAGER_DEACTIVATIONS_LIST": [STORE_MANAGER],
    "DASHBOARD_STATS": _ALL,
    "DASHBOARD_APPLICATIONS_LIST": _ALL,
    "PUBLIC_EMPLOYEE_GET": ["PUBLIC"],
    # Export
    "EXPORT_CSV": [SUPER_ADMIN],
    "EXPORT_JSON": [SUPER_ADMIN],
    "EXPORT_LINK_CREATE": [SUPER_ADMIN],
    "PUBLIC_EXPORT_GET": ["PUBLIC"],
    "FILES_GET": _ALL,
}

PUBLIC_ACTIONS = {k for k, roles in STATIC_RBAC_PERMISSIONS.items() if "PUBLIC" in roles}


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def normalize_role(role: Any) -> str:
    r = str(role or "").strip().lower()
    return r if r in STAFF_ROLES else ""


def _invalid() -> AuthContext:
    return AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def issue_session_token(
    db,
    *,
    principal_id: str,
    principal_type: str,
    email: str,
    role: str,
    session_ttl_minutes: int,
) -> dict[str, str]:
    token = "ST-" + new_uuid().replace("-", "") + new_uuid().replace("-", "")
    now = datetime.now(timezone.utc)
    issued_at = to_iso_utc(now)
    expires_at = to_iso_utc(now + timedelta(minutes=session_ttl_minutes))

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            principalId=str(principal_id or ""),
            principalType=str(principal_type or "staff"),
            email=str(email or ""),
            role=normalize_role(role),
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
        )
    )
    return {"token": token, "expiresAt": expires_at}


def revoke_session_token(db, token: Any) -> bool:
    if not token or not isinstance(token, str):
        return False
    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return False
    ses.revokedAt = iso_utc_now()
    return True


def revoke_principal_sessions(db, *, principal_id: str, except_token: Any = None) -> int:
    """Revoke every live session of a staff account or outlet (deactivation, password change)."""

    pid = str(principal_id or "").strip()
    if not pid:
        return 0
    now = iso_utc_now()
    rows = (
        db.execute(select(DbSession).where(DbSession.principalId == pid).where(DbSession.revokedAt == ""))
        .scalars()
        .all()
    )
    keep = sha256_hex(except_token) if isinstance(except_token, str) and except_token else ""
    n = 0
    for s in rows:
        if keep and s.tokenHash == keep:
            continue
        s.revokedAt = now
        n += 1
    return n


def validate_session_token(db, token: Any) -> AuthContext:
    if not token or not isinstance(token, str):
        return _invalid()

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return _invalid()

    exp_dt = parse_datetime_maybe(ses.expiresAt)
    if not exp_dt or exp_dt < datetime.now(timezone.utc):
        return _invalid()

    principal_id = str(ses.principalId or "")
    if ses.principalType == "outlet":
        outlet = db.execute(select(Outlet).where(Outlet.id == principal_id)).scalar_one_or_none()
        if not outlet:
            return _invalid()
        if not outlet.isActive:
            raise ApiError("FORBIDDEN", "This outlet has been deactivated. Please contact administrator.")
        ctx = AuthContext(
            valid=True,
            userId=outlet.id,
            email=outlet.email,
            role=STORE_MANAGER,
            expiresAt=ses.expiresAt,
            name=outlet.name,
            isOutlet=True,
            outletId=outlet.id,
        )
    else:
        usr = db.execute(select(StaffAccount).where(StaffAccount.userId == principal_id)).scalar_one_or_none()
        if not usr:
            return _invalid()
        if not usr.isActive:
            raise ApiError("FORBIDDEN", "Your account has been deactivated. Please contact administrator.")
        ctx = AuthContext(
            valid=True,
            userId=usr.userId,
            email=usr.email,
            role=normalize_role(usr.role),
            expiresAt=ses.expiresAt,
            name=usr.name,
        )

    # Avoid a write on every request.
    try:
        interval_s = int(str(os.getenv("SESSION_LAST_SEEN_UPDATE_SECONDS", "300") or "300"))
    except Exception:
        interval_s = 300
    last_dt = parse_datetime_maybe(ses.lastSeenAt)
    if interval_s <= 0 or not last_dt or (datetime.now(timezone.utc) - last_dt).total_seconds() >= interval_s:
        ses.lastSeenAt = iso_utc_now()

    return ctx


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"


def assert_permission(role: str, action: str) -> None:
    action_u = str(action or "").upper().strip()
    allowed = STATIC_RBAC_PERMISSIONS.get(action_u)
    if allowed is None:
        raise ApiError("VALIDATION_ERROR", f"Unknown action: {action_u}")
    if "PUBLIC" in allowed:
        return

    role_l = str(role or "").strip().lower()
    if not role_l or role_l == "public":
        raise ApiError("UNAUTHENTICATED", "Login required")
    if role_l not in allowed:
        raise ApiError("FORBIDDEN", f"Not allowed for role: {role_l}")


def scope_for(db, auth: Optional[AuthContext]) -> Optional[set[str]]:
    """
    Outlet ids the principal may act on; `None` means unrestricted.

    Always read from the Outlet table so reassignments apply on the very next request.
    """

    if not auth or not auth.valid:
        raise ApiError("UNAUTHENTICATED", "Login required")

    role = normalize_role(auth.role)
    if role == SUPER_ADMIN:
        return None
    if role == FIELD_COACH:
        return set(db.execute(select(Outlet.id).where(Outlet.fieldCoachId == auth.userId)).scalars().all())
    if role == STORE_MANAGER:
        if auth.isOutlet:
            return {auth.outletId} if auth.outletId else set()
        return set(db.execute(select(Outlet.id).where(Outlet.managerId == auth.userId)).scalars().all())
    return set()


def in_scope(scope: Optional[set[str]], outlet_id: Any) -> bool:
    if scope is None:
        return True
    return bool(outlet_id) and str(outlet_id) in scope


def assert_in_scope(scope: Optional[set[str]], outlet_id: Any, message: str = "You do not have permission to access this record") -> None:
    if not in_scope(scope, outlet_id):
        raise ApiError("FORBIDDEN", message)


def serialize_principal(auth: AuthContext) -> dict[str, Any]:
    return {
        "id": auth.userId,
        "name": auth.name,
        "email": auth.email,
        "role": role_or_public(auth),
        "isOutlet": bool(auth.isOutlet),
        "outletId": auth.outletId or None,
        "expiresAt": auth.expiresAt,
    }
