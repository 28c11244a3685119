from __future__ import annotations

from sqlalchemy import func, select

from actions.helpers import ActionResult, append_audit, require_email, require_text
from auth import (
    STAFF_ROLES,
    STORE_MANAGER,
    issue_session_token,
    normalize_role,
    revoke_principal_sessions,
    revoke_session_token,
    serialize_principal,
)
from models import Outlet, StaffAccount
from passwords import hash_password, validate_password_policy, verify_password
from utils import ApiError, AuthContext, iso_utc_now, new_id


def _find_staff_by_email(db, email: str):
    e = str(email or "").strip().lower()
    if not e:
        return None
    return db.execute(select(StaffAccount).where(func.lower(StaffAccount.email) == e)).scalars().first()


def _find_outlet_by_email(db, email: str):
    e = str(email or "").strip().lower()
    if not e:
        return None
    return db.execute(select(Outlet).where(func.lower(Outlet.email) == e)).scalars().first()


def serialize_staff(u: StaffAccount) -> dict:
    return {
        "id": u.userId,
        "name": u.name,
        "email": u.email,
        "role": normalize_role(u.role),
        "phone": u.phone,
        "isActive": bool(u.isActive),
        "isOutlet": False,
        "lastLoginAt": u.lastLoginAt or None,
        "createdAt": u.createdAt,
    }


def _serialize_outlet_principal(o: Outlet) -> dict:
    return {
        "id": o.id,
        "name": o.name,
        "email": o.email,
        "role": STORE_MANAGER,
        "isOutlet": True,
        "outletId": o.id,
        "storeCode": o.code,
    }


def login(data, auth: AuthContext | None, db, cfg):
    """
    Email/password login for staff accounts and outlets.

    Outlet credentials are checked first; an outlet session acts as the store manager
    of exactly that outlet.
    """

    email = str((data or {}).get("email") or "").strip().lower()
    password = str((data or {}).get("password") or "")
    if not email or not password:
        raise ApiError("VALIDATION_ERROR", "Please provide email and password")
    if len(password) > 256:
        raise ApiError("VALIDATION_ERROR", "Password is too long")

    outlet = _find_outlet_by_email(db, email)
    if outlet and verify_password(password, outlet.passwordHash):
        if not outlet.isActive:
            raise ApiError("FORBIDDEN", "This outlet has been deactivated. Please contact administrator.")
        ses = issue_session_token(
            db,
            principal_id=outlet.id,
            principal_type="outlet",
            email=outlet.email,
            role=STORE_MANAGER,
            session_ttl_minutes=cfg.SESSION_TTL_MINUTES,
        )
        actor = AuthContext(valid=True, userId=outlet.id, email=outlet.email, role=STORE_MANAGER, expiresAt=ses["expiresAt"], isOutlet=True, outletId=outlet.id)
        append_audit(db, entityType="AUTH", entityId=outlet.id, action="LOGIN", stageTag="AUTH_LOGIN", actor=actor, meta={"principal": "outlet"})
        return ActionResult({**ses, "user": _serialize_outlet_principal(outlet)}, "Login successful")

    user = _find_staff_by_email(db, email)
    if not user or not verify_password(password, user.passwordHash):
        raise ApiError("UNAUTHENTICATED", "Invalid credentials")
    if not user.isActive:
        raise ApiError("FORBIDDEN", "Your account has been deactivated. Please contact administrator.")

    user.lastLoginAt = iso_utc_now()
    ses = issue_session_token(
        db,
        principal_id=user.userId,
        principal_type="staff",
        email=user.email,
        role=user.role,
        session_ttl_minutes=cfg.SESSION_TTL_MINUTES,
    )
    actor = AuthContext(valid=True, userId=user.userId, email=user.email, role=normalize_role(user.role), expiresAt=ses["expiresAt"])
    append_audit(db, entityType="AUTH", entityId=user.userId, action="LOGIN", stageTag="AUTH_LOGIN", actor=actor)
    return ActionResult({**ses, "user": serialize_staff(user)}, "Login successful")


def logout(data, auth, db, cfg):
    revoke_session_token(db, (data or {}).get("_sessionToken"))
    return ActionResult({"loggedOut": True}, "Logged out successfully")


def me(data, auth, db, cfg):
    if auth.isOutlet:
        outlet = db.execute(select(Outlet).where(Outlet.id == auth.outletId)).scalar_one_or_none()
        if not outlet:
            raise ApiError("NOT_FOUND", "Outlet not found")
        return {"user": _serialize_outlet_principal(outlet)}
    user = db.execute(select(StaffAccount).where(StaffAccount.userId == auth.userId)).scalar_one_or_none()
    if not user:
        raise ApiError("NOT_FOUND", "User not found")
    return {"user": serialize_staff(user), "session": serialize_principal(auth)}


def update_password(data, auth, db, cfg):
    current = str((data or {}).get("currentPassword") or "")
    new_pwd = validate_password_policy((data or {}).get("newPassword"))

    target = (
        db.execute(select(Outlet).where(Outlet.id == auth.outletId)).scalar_one_or_none()
        if auth.isOutlet
        else db.execute(select(StaffAccount).where(StaffAccount.userId == auth.userId)).scalar_one_or_none()
    )
    if not target:
        raise ApiError("NOT_FOUND", "User not found")
    if not verify_password(current, target.passwordHash):
        raise ApiError("UNAUTHENTICATED", "Current password is incorrect")

    target.passwordHash = hash_password(new_pwd)
    target.updatedAt = iso_utc_now()
    # Other sessions of this principal stop working; the caller's own session is kept.
    revoked = revoke_principal_sessions(db, principal_id=auth.userId, except_token=(data or {}).get("_sessionToken"))
    append_audit(db, entityType="AUTH", entityId=auth.userId, action="PASSWORD_UPDATE", actor=auth, meta={"revokedSessions": revoked})
    return ActionResult({"updated": True}, "Password updated successfully")


def register_staff(data, auth, db, cfg):
    name = require_text(data, "name", "Name is required")
    email = require_email((data or {}).get("email"))
    role = normalize_role((data or {}).get("role"))
    if role not in STAFF_ROLES:
        raise ApiError("VALIDATION_ERROR", "Role must be one of: super_admin, field_coach, store_manager")
    password_hash = hash_password((data or {}).get("password"))

    if _find_staff_by_email(db, email) or _find_outlet_by_email(db, email):
        raise ApiError("CONFLICT", "User with this email already exists")

    now = iso_utc_now()
    user = StaffAccount(
        userId=new_id("USR"),
        name=name,
        email=email,
        passwordHash=password_hash,
        role=role,
        phone=str((data or {}).get("phone") or "").strip(),
        isActive=True,
        lastLoginAt="",
        createdAt=now,
        createdBy=auth.userId if auth else "",
        updatedAt=now,
    )
    db.add(user)
    append_audit(db, entityType="STAFF", entityId=user.userId, action="STAFF_REGISTER", toState=role, actor=auth, at=now)
    return ActionResult({"user": serialize_staff(user)}, "User registered successfully")


def list_staff(data, auth, db, cfg):
    q = select(StaffAccount).order_by(StaffAccount.name)
    role = normalize_role((data or {}).get("role"))
    if role:
        q = q.where(StaffAccount.role == role)
    return {"users": [serialize_staff(u) for u in db.execute(q).scalars().all()]}
