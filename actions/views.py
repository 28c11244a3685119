"""
Read-only, role-scoped views over Onboarding records.

Every view narrows rows through `scope_for` first; filters only ever narrow further.
Aadhaar numbers are masked in all list output.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func, or_, select

from actions.helpers import documents_of, outlets_by_id
from actions.lifecycle import EmployeeStatus, Status
from actions.onboarding import serialize_onboarding
from auth import STORE_MANAGER, normalize_role, scope_for
from models import Onboarding, Outlet, RoleDefinition, StaffAccount
from utils import ApiError, as_int, to_iso_utc


PENDING = [Status.SUBMITTED.value, Status.PENDING_APPROVAL.value]
REVIEWED = PENDING + [Status.APPROVED.value, Status.REJECTED.value]
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200
LONG_PENDING_DAYS = 5


def _scoped(q, scope: Optional[set[str]]):
    if scope is None:
        return q
    return q.where(Onboarding.outletId.in_(sorted(scope)))


def _search(q, term: Any):
    s = str(term or "").strip()
    if not s:
        return q
    like = f"%{s}%"
    return q.where(
        or_(
            Onboarding.fullName.ilike(like),
            Onboarding.phone.ilike(like),
            Onboarding.email.ilike(like),
            Onboarding.aadhaarNumber.ilike(like),
            Onboarding.panNumber.ilike(like),
            Onboarding.role.ilike(like),
            Onboarding.designation.ilike(like),
        )
    )


def _status_filter(q, status: Any):
    s = str(status or "").strip().lower()
    if not s or s == "all":
        return q
    if s == "pending":
        return q.where(Onboarding.status.in_(PENDING))
    if s in {EmployeeStatus.DEACTIVATED.value, EmployeeStatus.DEACTIVATION_PENDING.value}:
        return q.where(Onboarding.employeeStatus == s)
    return q.where(Onboarding.status == s)


def _rows(db, q) -> list[Onboarding]:
    return list(db.execute(q.order_by(Onboarding.createdAt.desc())).scalars().all())


def _serialize_rows(db, rows: list[Onboarding]) -> list[dict[str, Any]]:
    outlets = outlets_by_id(db, [r.outletId for r in rows])
    return [serialize_onboarding(r, outlets.get(r.outletId or ""), mask=True) for r in rows]


def _count(db, q) -> int:
    return int(db.execute(select(func.count()).select_from(q.subquery())).scalar_one())


def _deactivation_rows(db, scope) -> list[dict[str, Any]]:
    q = _scoped(
        select(Onboarding)
        .where(Onboarding.status == Status.APPROVED.value)
        .where(Onboarding.employeeStatus == EmployeeStatus.DEACTIVATION_PENDING.value),
        scope,
    )
    rows = list(db.execute(q.order_by(Onboarding.deactivationRequestedAt.desc())).scalars().all())
    requesters = {
        s.userId: s
        for s in db.execute(
            select(StaffAccount).where(StaffAccount.userId.in_(sorted({r.deactivationRequestedBy for r in rows if r.deactivationRequestedBy})))
        ).scalars()
    }
    out = []
    for item, rec in zip(_serialize_rows(db, rows), rows):
        req = requesters.get(rec.deactivationRequestedBy or "")
        item["requestedBy"] = {"id": req.userId, "name": req.name, "email": req.email} if req else {"id": rec.deactivationRequestedBy}
        out.append(item)
    return out


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

def admin_stats(data, auth, db, cfg):
    return {
        "totalUsers": int(db.execute(select(func.count()).select_from(StaffAccount)).scalar_one()),
        "pendingApprovals": _count(db, select(Onboarding.id).where(Onboarding.status.in_(PENDING))),
        "activeOutlets": int(db.execute(select(func.count()).select_from(Outlet).where(Outlet.isActive.is_(True))).scalar_one()),
        "totalRoles": int(db.execute(select(func.count()).select_from(RoleDefinition).where(RoleDefinition.isActive.is_(True))).scalar_one()),
    }


def _admin_tab(q, tab: str):
    if tab == "active":
        return q.where(Onboarding.status == Status.APPROVED.value).where(Onboarding.employeeStatus == EmployeeStatus.ACTIVE.value)
    if tab == "pending":
        return q.where(Onboarding.status.in_(PENDING))
    if tab == "terminated":
        return q.where(or_(Onboarding.status == Status.TERMINATED.value, Onboarding.employeeStatus == EmployeeStatus.TERMINATED.value))
    if tab == "long-pending":
        cutoff = to_iso_utc(datetime.now(timezone.utc) - timedelta(days=LONG_PENDING_DAYS))
        return q.where(Onboarding.status.in_(PENDING)).where(Onboarding.submittedAt < cutoff)
    if tab == "rehire":
        return q.where(Onboarding.employeeStatus == EmployeeStatus.DEACTIVATED.value)
    if tab in {"all", "missing-docs", ""}:
        return q
    raise ApiError("VALIDATION_ERROR", f"Unknown tab: {tab}")


def admin_employees(data, auth, db, cfg):
    tab = str(data.get("tab") or "all").strip().lower()
    page = max(1, as_int(data.get("page"), 1))
    limit = max(1, min(as_int(data.get("limit"), DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE))

    q = select(Onboarding).where(Onboarding.status != Status.DRAFT.value)
    q = _admin_tab(q, tab)
    q = _search(q, data.get("search"))
    q = _status_filter(q, data.get("status"))

    store = str(data.get("store") or "").strip()
    if store:
        outlet_ids = select(Outlet.id).where(or_(Outlet.id == store, Outlet.code == store.upper()))
        q = q.where(Onboarding.outletId.in_(outlet_ids))
    emp_status = str(data.get("employeeStatus") or "").strip().lower()
    if emp_status:
        q = q.where(Onboarding.employeeStatus == emp_status)
    coach = str(data.get("fieldCoach") or "").strip()
    if coach:
        coach_ids = select(StaffAccount.userId).where(or_(StaffAccount.userId == coach, func.lower(StaffAccount.email) == coach.lower()))
        coach_outlets = select(Outlet.id).where(Outlet.fieldCoachId.in_(coach_ids))
        q = q.where(or_(Onboarding.outletId.in_(coach_outlets), func.lower(Onboarding.fieldCoachEmail) == coach.lower()))

    if tab == "missing-docs":
        # Document presence lives in documentsJson, so this tab filters in Python.
        rows = [r for r in _rows(db, q) if not documents_of(r).get("photo")]
        total = len(rows)
        rows = rows[(page - 1) * limit : page * limit]
    else:
        total = _count(db, q)
        rows = list(db.execute(q.order_by(Onboarding.createdAt.desc()).offset((page - 1) * limit).limit(limit)).scalars().all())

    return {
        "employees": _serialize_rows(db, rows),
        "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if total else 0},
    }


def admin_deactivations(data, auth, db, cfg):
    return {"requests": _deactivation_rows(db, None)}


# ---------------------------------------------------------------------------
# Field coach
# ---------------------------------------------------------------------------

def coach_stats(data, auth, db, cfg):
    scope = scope_for(db, auth)
    base = _scoped(select(Onboarding.id), scope)
    return {
        "totalApplications": _count(db, base.where(Onboarding.status.in_(REVIEWED))),
        "pendingReview": _count(db, base.where(Onboarding.status.in_(PENDING))),
        "approved": _count(db, base.where(Onboarding.status == Status.APPROVED.value)),
        "deactivationRequests": _count(db, base.where(Onboarding.employeeStatus == EmployeeStatus.DEACTIVATION_PENDING.value)),
    }


def coach_applications(data, auth, db, cfg):
    q = _scoped(select(Onboarding).where(Onboarding.status.in_(REVIEWED)), scope_for(db, auth))
    q = _status_filter(_search(q, data.get("search")), data.get("status"))
    return {"applications": _serialize_rows(db, _rows(db, q))}


def coach_application(data, auth, db, cfg):
    rec = db.execute(select(Onboarding).where(Onboarding.id == str(data.get("id") or ""))).scalar_one_or_none()
    if not rec:
        raise ApiError("NOT_FOUND", "Application not found")
    scope = scope_for(db, auth)
    if scope is not None and rec.outletId not in scope:
        raise ApiError("FORBIDDEN", "You do not have permission to view this application")
    return {"application": _serialize_rows(db, [rec])[0]}


def coach_deactivations(data, auth, db, cfg):
    return {"requests": _deactivation_rows(db, scope_for(db, auth))}


# ---------------------------------------------------------------------------
# Store manager
# ---------------------------------------------------------------------------

def _manager_scope(db, auth) -> Optional[set[str]]:
    scope = scope_for(db, auth)
    if scope is None:
        return scope
    if not scope and normalize_role(auth.role) == STORE_MANAGER:
        raise ApiError("NOT_FOUND", "No outlet found for this manager")
    return scope


def manager_stats(data, auth, db, cfg):
    base = _scoped(select(Onboarding.id), _manager_scope(db, auth))
    early = [Status.DRAFT.value, Status.IN_PROGRESS.value]
    return {
        "totalOnboardings": _count(db, base.where(Onboarding.status.not_in(early))),
        "inProgress": _count(db, base.where(Onboarding.status.in_(early))),
        "pendingApproval": _count(db, base.where(Onboarding.status.in_(PENDING))),
        "completed": _count(db, base.where(Onboarding.status == Status.APPROVED.value)),
    }


def manager_onboardings(data, auth, db, cfg):
    q = _scoped(select(Onboarding), _manager_scope(db, auth))
    q = _status_filter(_search(q, data.get("search")), data.get("status"))
    return {"onboardings": _serialize_rows(db, _rows(db, q))}


def manager_employees(data, auth, db, cfg):
    q = _scoped(
        select(Onboarding)
        .where(Onboarding.status == Status.APPROVED.value)
        .where(Onboarding.employeeStatus.not_in([EmployeeStatus.DEACTIVATED.value, EmployeeStatus.TERMINATED.value])),
        _manager_scope(db, auth),
    )
    return {"employees": _serialize_rows(db, _rows(db, _search(q, data.get("search"))))}


def manager_deactivations(data, auth, db, cfg):
    return {"requests": _deactivation_rows(db, _manager_scope(db, auth))}


# ---------------------------------------------------------------------------
# Shared dashboard
# ---------------------------------------------------------------------------

def dashboard_stats(data, auth, db, cfg):
    base = _scoped(select(Onboarding.id), scope_for(db, auth))
    return {
        "totalApplications": _count(db, base.where(Onboarding.status.in_(REVIEWED))),
        "pendingReview": _count(db, base.where(Onboarding.status.in_(PENDING))),
        "approved": _count(db, base.where(Onboarding.status == Status.APPROVED.value)),
        "rejected": _count(db, base.where(Onboarding.status == Status.REJECTED.value)),
    }


def dashboard_applications(data, auth, db, cfg):
    q = _scoped(select(Onboarding).where(Onboarding.status.in_(REVIEWED)), scope_for(db, auth))
    q = _status_filter(_search(q, data.get("search")), data.get("status"))
    return {"applications": _serialize_rows(db, _rows(db, q))}
