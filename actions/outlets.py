from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import func, select

from actions.helpers import ActionResult, after_commit, append_audit, require_email
from auth import FIELD_COACH, STORE_MANAGER, revoke_principal_sessions
from cache_layer import OUTLETS_NS, cache_get_or_set, cache_invalidate
from models import Onboarding, Outlet, StaffAccount
from passwords import hash_password
from utils import ApiError, as_bool, iso_utc_now, new_id


_log = logging.getLogger("api")

_REQUIRED = ("code", "name", "address", "city", "email", "password")
_EDITABLE = ("name", "address", "city", "state", "pincode", "phone")


def _employee_counts(db, outlet_ids) -> dict[str, int]:
    ids = [x for x in outlet_ids if x]
    if not ids:
        return {}
    rows = db.execute(
        select(Onboarding.outletId, func.count())
        .where(Onboarding.outletId.in_(ids))
        .where(Onboarding.status == "approved")
        .where(Onboarding.employeeStatus.in_(["active", "deactivation_pending"]))
        .group_by(Onboarding.outletId)
    ).all()
    return {str(oid): int(n) for oid, n in rows}


def _staff_by_id(db, ids) -> dict[str, StaffAccount]:
    wanted = {x for x in ids if x}
    if not wanted:
        return {}
    rows = db.execute(select(StaffAccount).where(StaffAccount.userId.in_(wanted))).scalars().all()
    return {s.userId: s for s in rows}


def _person(staff: Optional[StaffAccount]) -> Optional[dict[str, Any]]:
    if not staff:
        return None
    return {"id": staff.userId, "name": staff.name, "email": staff.email}


def serialize_outlet(o: Outlet, *, staff: Optional[dict[str, StaffAccount]] = None, employee_count: Optional[int] = None) -> dict[str, Any]:
    staff = staff or {}
    out = {
        "id": o.id,
        "code": o.code,
        "name": o.name,
        "email": o.email,
        "address": o.address,
        "city": o.city,
        "state": o.state,
        "pincode": o.pincode,
        "phone": o.phone,
        "managerId": o.managerId,
        "fieldCoachId": o.fieldCoachId,
        "manager": _person(staff.get(o.managerId or "")),
        "fieldCoach": _person(staff.get(o.fieldCoachId or "")),
        "isActive": bool(o.isActive),
        "createdAt": o.createdAt,
        "updatedAt": o.updatedAt,
    }
    if employee_count is not None:
        out["employeeCount"] = employee_count
    return out


def _serialize_many(db, rows: list[Outlet]) -> list[dict[str, Any]]:
    counts = _employee_counts(db, [o.id for o in rows])
    staff = _staff_by_id(db, [o.managerId for o in rows] + [o.fieldCoachId for o in rows])
    return [serialize_outlet(o, staff=staff, employee_count=counts.get(o.id, 0)) for o in rows]


def list_active(data, auth, db, cfg):
    def load():
        rows = db.execute(select(Outlet).where(Outlet.isActive.is_(True)).order_by(Outlet.city, Outlet.name)).scalars().all()
        return _serialize_many(db, rows)

    return {"outlets": cache_get_or_set(OUTLETS_NS, {"activeOnly": True}, load)}


def list_all(data, auth, db, cfg):
    rows = db.execute(select(Outlet).order_by(Outlet.city, Outlet.name)).scalars().all()
    return {"outlets": _serialize_many(db, rows)}


def _load(db, outlet_id: Any) -> Outlet:
    o = db.execute(select(Outlet).where(Outlet.id == str(outlet_id or ""))).scalar_one_or_none()
    if not o:
        raise ApiError("NOT_FOUND", "Outlet not found")
    return o


def get(data, auth, db, cfg):
    o = _load(db, data.get("id"))
    return {"outlet": _serialize_many(db, [o])[0]}


def _assert_staff(db, user_id: Any, role: str, label: str) -> Optional[str]:
    uid = str(user_id or "").strip()
    if not uid:
        return None
    staff = db.execute(select(StaffAccount).where(StaffAccount.userId == uid)).scalar_one_or_none()
    if not staff or staff.role != role:
        raise ApiError("VALIDATION_ERROR", f"Assigned {label} not found")
    if not staff.isActive:
        raise ApiError("VALIDATION_ERROR", f"Assigned {label} is not active")
    return uid


def _create_one(db, item: dict, auth) -> Outlet:
    values = {k: str(item.get(k) or "").strip() for k in _REQUIRED}
    if any(not values[k] for k in _REQUIRED):
        raise ApiError("VALIDATION_ERROR", "Please provide all required fields: code, name, address, city, email, and password")

    code = values["code"].upper()
    email = require_email(values["email"])
    if db.execute(select(Outlet.id).where(Outlet.code == code)).first():
        raise ApiError("CONFLICT", "Outlet with this code already exists")
    if db.execute(select(Outlet.id).where(Outlet.email == email)).first():
        raise ApiError("CONFLICT", "Outlet with this email already exists")

    now = iso_utc_now()
    o = Outlet(
        id=new_id("OUT"),
        code=code,
        name=values["name"],
        email=email,
        passwordHash=hash_password(values["password"]),
        address=values["address"],
        city=values["city"],
        state=str(item.get("state") or "").strip(),
        pincode=str(item.get("pincode") or "").strip(),
        phone=str(item.get("phone") or "").strip(),
        managerId=_assert_staff(db, item.get("managerId"), STORE_MANAGER, "store manager"),
        fieldCoachId=_assert_staff(db, item.get("fieldCoachId"), FIELD_COACH, "field coach"),
        isActive=True,
        createdAt=now,
        updatedAt=now,
    )
    db.add(o)
    db.flush()
    append_audit(db, entityType="OUTLET", entityId=o.id, action="OUTLET_CREATE", toState="active", actor=auth, at=now, meta={"code": code})
    return o


def create(data, auth, db, cfg):
    o = _create_one(db, data, auth)
    after_commit(db, cache_invalidate, OUTLETS_NS)
    return ActionResult({"outlet": serialize_outlet(o)}, "Outlet created successfully")


def update(data, auth, db, cfg):
    o = _load(db, data.get("id"))
    changed: dict[str, Any] = {}

    for key in _EDITABLE:
        if key in data:
            val = str(data.get(key) or "").strip()
            if key in {"name", "address", "city"} and not val:
                raise ApiError("VALIDATION_ERROR", f"{key} cannot be empty")
            setattr(o, key, val)
            changed[key] = val
    if "email" in data:
        email = require_email(data.get("email"))
        if email != o.email and db.execute(select(Outlet.id).where(Outlet.email == email)).first():
            raise ApiError("CONFLICT", "Outlet with this email already exists")
        o.email = email
        changed["email"] = email
    if "managerId" in data:
        o.managerId = _assert_staff(db, data.get("managerId"), STORE_MANAGER, "store manager")
        changed["managerId"] = o.managerId
    if "fieldCoachId" in data:
        o.fieldCoachId = _assert_staff(db, data.get("fieldCoachId"), FIELD_COACH, "field coach")
        changed["fieldCoachId"] = o.fieldCoachId
    if str(data.get("password") or ""):
        o.passwordHash = hash_password(str(data.get("password")))
        revoke_principal_sessions(db, principal_id=o.id)
        changed["password"] = "***"

    o.updatedAt = iso_utc_now()
    append_audit(db, entityType="OUTLET", entityId=o.id, action="OUTLET_UPDATE", actor=auth, at=o.updatedAt, meta=changed)
    after_commit(db, cache_invalidate, OUTLETS_NS)
    return ActionResult({"outlet": _serialize_many(db, [o])[0]}, "Outlet updated successfully")


def toggle_status(data, auth, db, cfg):
    o = _load(db, data.get("id"))
    before = bool(o.isActive)
    o.isActive = as_bool(data["isActive"]) if "isActive" in data else not before
    o.updatedAt = iso_utc_now()
    if not o.isActive:
        revoke_principal_sessions(db, principal_id=o.id)
    append_audit(
        db,
        entityType="OUTLET",
        entityId=o.id,
        action="OUTLET_TOGGLE_STATUS",
        fromState="active" if before else "inactive",
        toState="active" if o.isActive else "inactive",
        actor=auth,
        at=o.updatedAt,
    )
    after_commit(db, cache_invalidate, OUTLETS_NS)
    state = "activated" if o.isActive else "deactivated"
    return ActionResult({"outlet": serialize_outlet(o)}, f"Outlet {state} successfully")


def delete(data, auth, db, cfg):
    o = _load(db, data.get("id"))
    active = _employee_counts(db, [o.id]).get(o.id, 0)
    if active > 0:
        raise ApiError("VALIDATION_ERROR", f"Cannot delete outlet with {active} active employees")
    o.isActive = False
    o.updatedAt = iso_utc_now()
    revoke_principal_sessions(db, principal_id=o.id)
    append_audit(db, entityType="OUTLET", entityId=o.id, action="OUTLET_DELETE", toState="inactive", actor=auth, at=o.updatedAt)
    after_commit(db, cache_invalidate, OUTLETS_NS)
    return ActionResult({"id": o.id}, "Outlet deleted successfully")


def bulk_import(data, auth, db, cfg):
    items = data.get("outlets")
    if not isinstance(items, list) or not items:
        raise ApiError("VALIDATION_ERROR", "Please provide an array of outlets")

    created = []
    errors = []
    for i, item in enumerate(items):
        row = i + 2
        item = item if isinstance(item, dict) else {}
        code = str(item.get("code") or "").strip().upper()
        if any(not str(item.get(k) or "").strip() for k in ("code", "name", "email", "password", "address", "city")):
            errors.append({"row": row, "code": code, "error": "Missing required fields (code, name, email, password, address, city)"})
            continue
        try:
            # Rows are validated before anything is added, so a failed row leaves no partial write.
            o = _create_one(db, item, auth)
            created.append({"id": o.id, "code": o.code})
        except ApiError as e:
            errors.append({"row": row, "code": code, "error": e.message})

    if created:
        after_commit(db, cache_invalidate, OUTLETS_NS)
    _log.info("outlet bulk import ok=%s failed=%s", len(created), len(errors))
    return ActionResult(
        {"successCount": len(created), "failureCount": len(errors), "created": created, "errors": errors},
        f"Bulk import completed: {len(created)} succeeded, {len(errors)} failed",
    )
