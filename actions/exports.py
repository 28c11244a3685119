from __future__ import annotations

import csv
import io
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import or_, select

from actions.helpers import ActionResult, append_audit, mask_aadhaar, outlets_by_id
from actions.lifecycle import Status
from models import ExportToken, Onboarding, Outlet
from utils import ApiError, iso_utc_now, json_dumps, json_loads_or, parse_datetime_maybe, sha256_hex, to_iso_utc


_log = logging.getLogger("export")

CSV_HEADER = ["Name", "Phone", "Email", "Aadhaar", "PAN", "Designation", "Store", "Store Code", "Status", "Date of Joining", "Created At"]
_FILTER_KEYS = ("status", "employeeStatus", "store", "fromDate", "toDate")


def _filters(data: dict) -> dict[str, str]:
    return {k: str(data.get(k) or "").strip() for k in _FILTER_KEYS if str(data.get(k) or "").strip()}


def _query(db, filters: dict[str, str]) -> list[Onboarding]:
    q = select(Onboarding)
    status = filters.get("status", "")
    if status and status != "all":
        q = q.where(Onboarding.status == status)
    else:
        q = q.where(Onboarding.status != Status.DRAFT.value)
    if filters.get("employeeStatus"):
        q = q.where(Onboarding.employeeStatus == filters["employeeStatus"])
    if filters.get("store"):
        store = filters["store"]
        q = q.where(Onboarding.outletId.in_(select(Outlet.id).where(or_(Outlet.id == store, Outlet.code == store.upper()))))
    if filters.get("fromDate"):
        q = q.where(Onboarding.createdAt >= filters["fromDate"])
    if filters.get("toDate"):
        # Inclusive of the whole end day.
        q = q.where(Onboarding.createdAt <= f"{filters['toDate']}T23:59:59.999Z")
    return list(db.execute(q.order_by(Onboarding.createdAt.desc())).scalars().all())


def render_csv(db, rows: list[Onboarding]) -> str:
    outlets = outlets_by_id(db, [r.outletId for r in rows])
    buf = io.StringIO()
    buf.write(",".join(CSV_HEADER) + "\n")
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for r in rows:
        o = outlets.get(r.outletId or "")
        writer.writerow(
            [
                r.fullName,
                r.phone,
                r.email,
                mask_aadhaar(r.aadhaarNumber),
                r.panNumber,
                r.designation or r.role,
                o.name if o else "",
                o.code if o else "",
                r.status,
                r.dateOfJoining,
                r.createdAt,
            ]
        )
    return buf.getvalue()


def export_csv(data, auth, db, cfg):
    rows = _query(db, _filters(data))
    append_audit(db, entityType="EXPORT", entityId="CSV", action="EXPORT_CSV", actor=auth, meta={"rows": len(rows), **_filters(data)})
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    return {"filename": f"employees_{stamp}.csv", "content": render_csv(db, rows), "rows": len(rows)}


def _public_payload(db, rows: list[Onboarding]) -> dict[str, Any]:
    outlets = outlets_by_id(db, [r.outletId for r in rows])
    employees = []
    for r in rows:
        o = outlets.get(r.outletId or "")
        employees.append(
            {
                "employee": {
                    "employeeKey": r.employeeKey,
                    "username": r.employeeKey or r.phone,
                    "fullName": r.fullName,
                    "countryCode": "+91",
                    "phone": r.phone,
                    "email": r.email,
                    "designation": r.designation or r.role,
                    "outlet": o.code if o else "",
                    "outletName": o.name if o else "",
                    "city": o.city if o else "",
                    "dateOfJoining": r.dateOfJoining or r.approvalDate,
                    "employeeStatus": r.employeeStatus,
                    "gender": r.gender,
                    "dob": r.dob,
                }
            }
        )
    return {"exportDate": iso_utc_now(), "totalRecords": len(employees), "employees": employees}


def _default_public_filters(filters: dict[str, str]) -> dict[str, str]:
    out = dict(filters)
    out.setdefault("status", Status.APPROVED.value)
    return out


def export_json(data, auth, db, cfg):
    filters = _default_public_filters(_filters(data))
    rows = _query(db, filters)
    append_audit(db, entityType="EXPORT", entityId="JSON", action="EXPORT_JSON", actor=auth, meta={"rows": len(rows), **filters})
    return _public_payload(db, rows)


def create_link(data, auth, db, cfg):
    filters = _default_public_filters(_filters(data))
    raw = secrets.token_urlsafe(32)
    now = datetime.now(timezone.utc)
    expires_at = to_iso_utc(now + timedelta(hours=int(cfg.EXPORT_LINK_TTL_HOURS)))
    db.add(
        ExportToken(
            tokenHash=sha256_hex(raw),
            filtersJson=json_dumps(filters),
            createdBy=auth.userId,
            createdAt=to_iso_utc(now),
            expiresAt=expires_at,
        )
    )
    append_audit(db, entityType="EXPORT", entityId="LINK", action="EXPORT_LINK_CREATE", actor=auth, meta=filters)
    link = f"{cfg.API_URL.rstrip('/')}/public/export-employees/{raw}"
    return ActionResult({"link": link, "expiresAt": expires_at}, "Export link generated successfully")


def public_export(data, auth, db, cfg):
    raw = str(data.get("token") or "").strip()
    row = db.execute(select(ExportToken).where(ExportToken.tokenHash == sha256_hex(raw))).scalar_one_or_none() if raw else None
    if not row:
        raise ApiError("NOT_FOUND", "Invalid or expired export link")

    exp = parse_datetime_maybe(row.expiresAt)
    if not exp or exp < datetime.now(timezone.utc):
        db.delete(row)
        # The cleanup must survive the error response.
        db.commit()
        raise ApiError("EXPIRED", "Export link has expired")

    rows = _query(db, json_loads_or(row.filtersJson, {}))
    _log.info("public export token_id=%s rows=%s", row.id, len(rows))
    return _public_payload(db, rows)
