from __future__ import annotations

import re
from typing import Any

from sqlalchemy import func, select

from actions.helpers import ActionResult, after_commit, append_audit, require_text
from cache_layer import ROLES_NS, cache_get_or_set, cache_invalidate
from models import Onboarding, RoleDefinition
from utils import ApiError, as_bool, iso_utc_now


ROLE_CATEGORIES = {"employee", "management", "admin"}
_ROLE_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


def serialize_role(r: RoleDefinition) -> dict[str, Any]:
    return {
        "id": r.id,
        "title": r.title,
        "description": r.description,
        "category": r.category,
        "isActive": bool(r.isActive),
        "createdAt": r.createdAt,
        "updatedAt": r.updatedAt,
    }


def _category(value: Any) -> str:
    cat = str(value or "employee").strip().lower()
    if cat not in ROLE_CATEGORIES:
        raise ApiError("VALIDATION_ERROR", "Category must be one of: employee, management, admin")
    return cat


def _load(db, role_id: Any) -> RoleDefinition:
    r = db.execute(select(RoleDefinition).where(RoleDefinition.id == str(role_id or "").strip())).scalar_one_or_none()
    if not r:
        raise ApiError("NOT_FOUND", "Role not found")
    return r


def list_roles(data, auth, db, cfg):
    active_only = as_bool(data.get("activeOnly", True))

    def load():
        q = select(RoleDefinition).order_by(RoleDefinition.category, RoleDefinition.title)
        if active_only:
            q = q.where(RoleDefinition.isActive.is_(True))
        return [serialize_role(r) for r in db.execute(q).scalars().all()]

    return {"roles": cache_get_or_set(ROLES_NS, {"activeOnly": active_only}, load)}


def get(data, auth, db, cfg):
    return {"role": serialize_role(_load(db, data.get("id")))}


def create(data, auth, db, cfg):
    role_id = require_text(data, "id", "Role ID is required").lower()
    if not _ROLE_ID_RE.fullmatch(role_id):
        raise ApiError("VALIDATION_ERROR", "Role ID may only contain lowercase letters, digits, '-' and '_'")
    title = require_text(data, "title", "Role title is required")
    if db.execute(select(RoleDefinition.id).where(RoleDefinition.id == role_id)).first():
        raise ApiError("CONFLICT", "Role with this ID already exists")

    now = iso_utc_now()
    r = RoleDefinition(
        id=role_id,
        title=title,
        description=str(data.get("description") or "").strip(),
        category=_category(data.get("category")),
        isActive=as_bool(data.get("isActive", True)),
        createdAt=now,
        updatedAt=now,
    )
    db.add(r)
    append_audit(db, entityType="ROLE", entityId=role_id, action="ROLE_CREATE", actor=auth, at=now)
    after_commit(db, cache_invalidate, ROLES_NS)
    return ActionResult({"role": serialize_role(r)}, "Role created successfully")


def update(data, auth, db, cfg):
    r = _load(db, data.get("id"))
    if "title" in data:
        r.title = require_text(data, "title", "Role title is required")
    if "description" in data:
        r.description = str(data.get("description") or "").strip()
    if "category" in data:
        r.category = _category(data.get("category"))
    if "isActive" in data:
        r.isActive = as_bool(data.get("isActive"))
    r.updatedAt = iso_utc_now()
    append_audit(db, entityType="ROLE", entityId=r.id, action="ROLE_UPDATE", actor=auth, at=r.updatedAt)
    after_commit(db, cache_invalidate, ROLES_NS)
    return ActionResult({"role": serialize_role(r)}, "Role updated successfully")


def delete(data, auth, db, cfg):
    r = _load(db, data.get("id"))
    in_use = db.execute(
        select(func.count())
        .select_from(Onboarding)
        .where(Onboarding.role == r.id)
        .where(Onboarding.status == "approved")
        .where(Onboarding.employeeStatus.in_(["active", "deactivation_pending"]))
    ).scalar_one()
    if in_use:
        raise ApiError("VALIDATION_ERROR", f"Cannot delete role with {in_use} active users")

    db.delete(r)
    append_audit(db, entityType="ROLE", entityId=r.id, action="ROLE_DELETE", actor=auth)
    after_commit(db, cache_invalidate, ROLES_NS)
    return ActionResult({"id": r.id}, "Role permanently deleted from database")
