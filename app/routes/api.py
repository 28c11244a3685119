from __future__ import annotations

import logging
import mimetypes
import os
import re
from typing import Any, Callable, Optional

from flask import Blueprint, Response, current_app, g, request, send_file
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError

from actions import dispatch
from actions.helpers import ActionResult, discard_after_commit_hooks, run_after_commit_hooks
from auth import assert_permission, in_scope, is_public_action, role_or_public, scope_for, validate_session_token
from config import Config
from db import SessionLocal
from models import AuditLog, Onboarding
from services import document_store
from utils import ApiError, as_bool, err, iso_utc_now, json_dumps, now_monotonic, ok, parse_json_body, redact_for_audit


rest_api = Blueprint("rest_api", __name__)

_log = logging.getLogger("api")


def _rest_token() -> str:
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return str(request.headers.get("X-Session-Token") or "").strip()


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _args() -> dict:
    return request.args.to_dict()


def _resolve_auth(db, token: str, action_u: str):
    if not token:
        return None
    if is_public_action(action_u):
        # A stale or blocked session never stands in the way of a public action.
        try:
            ctx = validate_session_token(db, token)
        except ApiError:
            return None
        return ctx if ctx.valid else None
    ctx = validate_session_token(db, token)
    if not ctx.valid:
        raise ApiError("UNAUTHENTICATED", "Invalid or expired session")
    return ctx


def _internal_error_message(cfg: Config, e: Exception) -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    if isinstance(e, DBAPIError):
        base = "Database error"
        orig = re.sub(r"\s+", " ", str(getattr(e, "orig", "") or "")).strip()[:300]
        detail = f": {orig}" if orig and not cfg.IS_PRODUCTION else ""
    else:
        base = "Unexpected error"
        debug = as_bool(os.getenv("DEBUG_ERROR_DETAILS", ""))
        detail = f": {type(e).__name__}: {e}" if debug and not cfg.IS_PRODUCTION else ""
    return f"{base}{detail} (requestId: {request_id})" if request_id else f"{base}{detail}"


def _rest_handle(action: str, data: dict, *, render: Optional[Callable[[Any], Any]] = None):
    """
    Run one action inside one transaction.

    session -> permission -> dispatch -> API_CALL audit -> commit -> post-commit hooks.
    Any failure rolls back, drops the queued hooks and writes an API_ERROR audit row.
    """

    cfg: Config = current_app.config["CFG"]
    token = _rest_token()
    action_u = str(action or "").upper().strip()
    payload = dict(data or {})
    if token:
        payload["_sessionToken"] = token

    db = None
    auth_ctx = None
    try:
        db = SessionLocal()
        auth_ctx = _resolve_auth(db, token, action_u)
        assert_permission(role_or_public(auth_ctx), action_u)

        out = dispatch(action_u, payload, auth_ctx, db, cfg)
        result, message = (out.data, out.message) if isinstance(out, ActionResult) else (out, "")

        db.add(
            AuditLog(
                logId=f"LOG-{os.urandom(16).hex()}",
                entityType="API",
                entityId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                action=action_u,
                fromState="",
                toState="",
                stageTag="API_CALL",
                remark="",
                actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
                actorEmail=str(auth_ctx.email or "") if auth_ctx else "",
                at=iso_utc_now(),
                correlationId=str(getattr(g, "request_id", "") or ""),
                metaJson=json_dumps({"data": redact_for_audit(payload)}),
            )
        )
        db.commit()
        run_after_commit_hooks(db)

        latency_ms = int((now_monotonic() - g.start_ts) * 1000)
        _log.info(
            "request_id=%s action=%s user=%s role=%s latency_ms=%s",
            g.request_id,
            action_u,
            (auth_ctx.userId if auth_ctx else "PUBLIC"),
            (auth_ctx.role if auth_ctx else "PUBLIC"),
            latency_ms,
        )
        if render is not None:
            return render(result)
        return ok(result, message)
    except ApiError as e:
        if db is not None:
            db.rollback()
            discard_after_commit_hooks(db)
        _write_error_audit(action_u, auth_ctx, payload, e)
        return err(e.code, e.message, http_status=e.http_status, details=e.details)
    except Exception as e:
        if db is not None:
            db.rollback()
            discard_after_commit_hooks(db)
        api_err = ApiError("INTERNAL", _internal_error_message(cfg, e), http_status=500)
        _write_error_audit(action_u, auth_ctx, payload, api_err)
        _log.exception("request_id=%s action=%s", getattr(g, "request_id", ""), action_u)
        return err(api_err.code, api_err.message, http_status=api_err.http_status)
    finally:
        if db is not None:
            db.close()


def _write_error_audit(action: str, auth_ctx, data: Any, err_obj: ApiError) -> None:
    db2 = SessionLocal()
    try:
        db2.add(
            AuditLog(
                logId=f"LOG-{os.urandom(16).hex()}",
                entityType="API",
                entityId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                action=str(action or "").upper() or "UNKNOWN",
                fromState="",
                toState="",
                stageTag="API_ERROR",
                remark=f"{err_obj.code}: {err_obj.message}",
                actorUserId=str(auth_ctx.userId) if auth_ctx else "PUBLIC",
                actorRole=str(auth_ctx.role) if auth_ctx else "PUBLIC",
                actorEmail=str(auth_ctx.email or "") if auth_ctx else "",
                at=iso_utc_now(),
                correlationId=str(getattr(g, "request_id", "") or ""),
                metaJson=json_dumps(
                    {
                        "data": redact_for_audit(data or {}),
                        "error": {"code": err_obj.code, "message": err_obj.message},
                    }
                ),
            )
        )
        db2.commit()
    except DBAPIError:
        db2.rollback()
        _log.warning("failed to write API_ERROR audit action=%s", action, exc_info=True)
    finally:
        db2.close()


def _csv_response(out: dict) -> Response:
    return Response(
        out["content"],
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{out["filename"]}"'},
    )


# ---------------------------------------------------------------------------
# Action endpoint: POST /api {action, data}
# ---------------------------------------------------------------------------

@rest_api.post("/api")
def api_route():
    try:
        body = parse_json_body(request.get_data(as_text=True))
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)
    action_u = str(body.get("action") or "").upper().strip()
    if not action_u:
        return err("VALIDATION_ERROR", "Missing action", http_status=400)
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    return _rest_handle(action_u, data)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

@rest_api.post("/api/auth/login")
def rest_auth_login():
    return _rest_handle("AUTH_LOGIN", _body())


@rest_api.post("/api/auth/logout")
def rest_auth_logout():
    return _rest_handle("AUTH_LOGOUT", {})


@rest_api.get("/api/auth/me")
def rest_auth_me():
    return _rest_handle("AUTH_ME", {})


@rest_api.put("/api/auth/update-password")
def rest_auth_update_password():
    body = _body()
    return _rest_handle(
        "AUTH_UPDATE_PASSWORD",
        {"currentPassword": body.get("currentPassword") or "", "newPassword": body.get("newPassword") or ""},
    )


@rest_api.post("/api/auth/register")
def rest_auth_register():
    return _rest_handle("STAFF_REGISTER", _body())


@rest_api.get("/api/auth/users")
def rest_staff_list():
    return _rest_handle("STAFF_LIST", _args())


# ---------------------------------------------------------------------------
# OTP and identity verification
# ---------------------------------------------------------------------------

@rest_api.post("/api/otp/send")
def rest_otp_send():
    return _rest_handle("OTP_SEND", _body())


@rest_api.post("/api/otp/verify")
def rest_otp_verify():
    return _rest_handle("OTP_VERIFY", _body())


@rest_api.post("/api/onboarding/digilocker/initiate")
def rest_digilocker_initiate():
    return _rest_handle("KYC_DIGILOCKER_INITIATE", _body())


@rest_api.post("/api/onboarding/digilocker/status")
def rest_digilocker_status():
    return _rest_handle("KYC_DIGILOCKER_STATUS", _body())


@rest_api.post("/api/onboarding/verify-pan")
def rest_pan_verify():
    return _rest_handle("KYC_PAN_VERIFY", _body())


# ---------------------------------------------------------------------------
# Onboarding (candidate-facing)
# ---------------------------------------------------------------------------

@rest_api.post("/api/onboarding/save-draft")
def rest_onboarding_save_draft():
    return _rest_handle("ONBOARDING_SAVE_DRAFT", _body())


@rest_api.get("/api/onboarding/draft/<phone>")
def rest_onboarding_get_draft(phone: str):
    return _rest_handle("ONBOARDING_GET_DRAFT", {"phone": phone})


@rest_api.get("/api/onboarding/<onboarding_id>")
def rest_onboarding_get(onboarding_id: str):
    return _rest_handle("ONBOARDING_GET", {"id": onboarding_id})


@rest_api.post("/api/onboarding/<onboarding_id>/documents")
def rest_onboarding_attach_document(onboarding_id: str):
    upload = request.files.get("file")
    if upload is not None:
        data = {
            "id": onboarding_id,
            "slot": request.form.get("documentType") or request.form.get("slot") or "",
            "fileBytes": upload.read(),
            "fileName": upload.filename or "",
            "mimeType": upload.mimetype or "",
        }
    else:
        body = _body()
        data = {
            "id": onboarding_id,
            "slot": body.get("documentType") or body.get("slot") or "",
            "fileBase64": body.get("fileBase64") or body.get("file") or "",
            "fileName": body.get("fileName") or "",
            "mimeType": body.get("mimeType") or "",
        }
    return _rest_handle("ONBOARDING_ATTACH_DOCUMENT", data)


@rest_api.post("/api/onboarding/<onboarding_id>/submit")
def rest_onboarding_submit(onboarding_id: str):
    body = _body()
    return _rest_handle("ONBOARDING_SUBMIT", {"id": onboarding_id, "fieldCoachEmail": body.get("fieldCoachEmail") or ""})


@rest_api.post("/api/onboarding/<onboarding_id>/send-approval-email")
def rest_onboarding_send_approval_email(onboarding_id: str):
    body = _body()
    return _rest_handle("ONBOARDING_SEND_APPROVAL_EMAIL", {"id": onboarding_id, "fieldCoachEmail": body.get("fieldCoachEmail") or ""})


@rest_api.get("/api/onboarding/<onboarding_id>/approval")
def rest_approval_token_check(onboarding_id: str):
    return _rest_handle("APPROVAL_TOKEN_CHECK", {"id": onboarding_id, "token": request.args.get("token") or ""})


@rest_api.post("/api/onboarding/<onboarding_id>/approve-by-token")
def rest_approval_token_approve(onboarding_id: str):
    body = _body()
    return _rest_handle("APPROVAL_TOKEN_APPROVE", {"id": onboarding_id, "token": body.get("token") or ""})


@rest_api.post("/api/onboarding/<onboarding_id>/reject-by-token")
def rest_approval_token_reject(onboarding_id: str):
    body = _body()
    return _rest_handle(
        "APPROVAL_TOKEN_REJECT",
        {"id": onboarding_id, "token": body.get("token") or "", "reason": body.get("reason") or ""},
    )


# ---------------------------------------------------------------------------
# Outlets and roles
# ---------------------------------------------------------------------------

@rest_api.get("/api/outlets")
def rest_outlets_active():
    return _rest_handle("OUTLETS_ACTIVE_LIST", {})


@rest_api.get("/api/outlets/all")
def rest_outlets_all():
    return _rest_handle("OUTLET_LIST_ALL", {})


@rest_api.post("/api/outlets/bulk-import")
def rest_outlets_bulk_import():
    return _rest_handle("OUTLET_BULK_IMPORT", {"outlets": _body().get("outlets")})


@rest_api.get("/api/outlets/<outlet_id>")
def rest_outlet_get(outlet_id: str):
    return _rest_handle("OUTLET_GET", {"id": outlet_id})


@rest_api.post("/api/outlets")
def rest_outlet_create():
    return _rest_handle("OUTLET_CREATE", _body())


@rest_api.put("/api/outlets/<outlet_id>")
def rest_outlet_update(outlet_id: str):
    return _rest_handle("OUTLET_UPDATE", {**_body(), "id": outlet_id})


@rest_api.patch("/api/outlets/<outlet_id>/toggle-status")
def rest_outlet_toggle_status(outlet_id: str):
    return _rest_handle("OUTLET_TOGGLE_STATUS", {**_body(), "id": outlet_id})


@rest_api.delete("/api/outlets/<outlet_id>")
def rest_outlet_delete(outlet_id: str):
    return _rest_handle("OUTLET_DELETE", {"id": outlet_id})


@rest_api.get("/api/roles")
def rest_roles_list():
    return _rest_handle("ROLES_LIST", {"activeOnly": request.args.get("activeOnly", "true")})


@rest_api.get("/api/roles/<role_id>")
def rest_role_get(role_id: str):
    return _rest_handle("ROLE_GET", {"id": role_id})


@rest_api.post("/api/roles")
def rest_role_create():
    return _rest_handle("ROLE_CREATE", _body())


@rest_api.put("/api/roles/<role_id>")
def rest_role_update(role_id: str):
    return _rest_handle("ROLE_UPDATE", {**_body(), "id": role_id})


@rest_api.delete("/api/roles/<role_id>")
def rest_role_delete(role_id: str):
    return _rest_handle("ROLE_DELETE", {"id": role_id})


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@rest_api.get("/api/admin/stats")
def rest_admin_stats():
    return _rest_handle("ADMIN_STATS", {})


@rest_api.get("/api/admin/employees")
def rest_admin_employees():
    return _rest_handle("ADMIN_EMPLOYEES_LIST", _args())


@rest_api.get("/api/admin/deactivation-requests")
def rest_admin_deactivations():
    return _rest_handle("ADMIN_DEACTIVATIONS_LIST", {})


@rest_api.post("/api/admin/employees/<onboarding_id>/deactivate")
def rest_admin_deactivate(onboarding_id: str):
    return _rest_handle("EMPLOYEE_DEACTIVATE", {"id": onboarding_id, "reason": _body().get("reason") or ""})


@rest_api.post("/api/admin/employees/<onboarding_id>/terminate")
def rest_admin_terminate(onboarding_id: str):
    return _rest_handle("EMPLOYEE_TERMINATE", {"id": onboarding_id, "reason": _body().get("reason") or ""})


@rest_api.post("/api/admin/employees/<onboarding_id>/rehire")
def rest_admin_rehire(onboarding_id: str):
    return _rest_handle("EMPLOYEE_REHIRE", {"id": onboarding_id})


@rest_api.get("/api/admin/export/csv")
def rest_export_csv():
    return _rest_handle("EXPORT_CSV", _args(), render=_csv_response)


@rest_api.get("/api/admin/export/json")
def rest_export_json():
    return _rest_handle("EXPORT_JSON", _args())


@rest_api.post("/api/admin/export/link")
def rest_export_link():
    return _rest_handle("EXPORT_LINK_CREATE", _body())


# ---------------------------------------------------------------------------
# Field coach
# ---------------------------------------------------------------------------

@rest_api.get("/api/field-coach/stats")
def rest_coach_stats():
    return _rest_handle("COACH_STATS", {})


@rest_api.get("/api/field-coach/applications")
def rest_coach_applications():
    return _rest_handle("COACH_APPLICATIONS_LIST", _args())


@rest_api.get("/api/field-coach/applications/<onboarding_id>")
def rest_coach_application(onboarding_id: str):
    return _rest_handle("COACH_APPLICATION_GET", {"id": onboarding_id})


@rest_api.post("/api/field-coach/applications/<onboarding_id>/approve")
def rest_coach_approve(onboarding_id: str):
    return _rest_handle("APPLICATION_APPROVE", {"id": onboarding_id})


@rest_api.post("/api/field-coach/applications/<onboarding_id>/reject")
def rest_coach_reject(onboarding_id: str):
    return _rest_handle("APPLICATION_REJECT", {"id": onboarding_id, "reason": _body().get("reason") or ""})


@rest_api.get("/api/field-coach/deactivation-requests")
def rest_coach_deactivations():
    return _rest_handle("COACH_DEACTIVATIONS_LIST", {})


@rest_api.post("/api/field-coach/deactivation-requests/<onboarding_id>/approve")
def rest_coach_deactivation_approve(onboarding_id: str):
    return _rest_handle("DEACTIVATION_APPROVE", {"id": onboarding_id})


@rest_api.post("/api/field-coach/deactivation-requests/<onboarding_id>/reject")
def rest_coach_deactivation_reject(onboarding_id: str):
    return _rest_handle("DEACTIVATION_REJECT", {"id": onboarding_id, "reason": _body().get("reason") or ""})


# ---------------------------------------------------------------------------
# Store manager
# ---------------------------------------------------------------------------

@rest_api.get("/api/manager/stats")
def rest_manager_stats():
    return _rest_handle("MANAGER_STATS", {})


@rest_api.get("/api/manager/onboardings")
def rest_manager_onboardings():
    return _rest_handle("MANAGER_ONBOARDINGS_LIST", _args())


@rest_api.get("/api/manager/employees")
def rest_manager_employees():
    return _rest_handle("MANAGER_EMPLOYEES_LIST", _args())


@rest_api.post("/api/manager/employees/<onboarding_id>/deactivate")
def rest_manager_request_deactivation(onboarding_id: str):
    return _rest_handle("DEACTIVATION_REQUEST", {"id": onboarding_id, "reason": _body().get("reason") or ""})


@rest_api.get("/api/manager/deactivation-requests")
def rest_manager_deactivations():
    return _rest_handle("MANAGER_DEACTIVATIONS_LIST", {})


# ---------------------------------------------------------------------------
# Shared dashboard
# ---------------------------------------------------------------------------

@rest_api.get("/api/dashboard/stats")
def rest_dashboard_stats():
    return _rest_handle("DASHBOARD_STATS", {})


@rest_api.get("/api/dashboard/applications")
def rest_dashboard_applications():
    return _rest_handle("DASHBOARD_APPLICATIONS_LIST", _args())


@rest_api.post("/api/dashboard/applications/<onboarding_id>/approve")
def rest_dashboard_approve(onboarding_id: str):
    return _rest_handle("APPLICATION_APPROVE", {"id": onboarding_id})


@rest_api.post("/api/dashboard/applications/<onboarding_id>/reject")
def rest_dashboard_reject(onboarding_id: str):
    return _rest_handle("APPLICATION_REJECT", {"id": onboarding_id, "reason": _body().get("reason") or ""})


# ---------------------------------------------------------------------------
# Public (anonymous) reads
# ---------------------------------------------------------------------------

@rest_api.get("/api/public/employee/<employee_key>")
def rest_public_employee(employee_key: str):
    return _rest_handle("PUBLIC_EMPLOYEE_GET", {"employeeKey": employee_key})


@rest_api.get("/api/public/export-employees/<token>")
def rest_public_export(token: str):
    return _rest_handle("PUBLIC_EXPORT_GET", {"token": token})


# ---------------------------------------------------------------------------
# Stored documents
# ---------------------------------------------------------------------------

@rest_api.get("/files/<ref>")
def files_get(ref: str):
    cfg: Config = current_app.config["CFG"]
    # Query-string tokens let <img src> and download links work.
    token = _rest_token() or str(request.args.get("token") or "").strip()
    if not token:
        return err("UNAUTHENTICATED", "Missing token", http_status=401)

    db = SessionLocal()
    try:
        try:
            auth_ctx = validate_session_token(db, token)
            if not auth_ctx.valid:
                raise ApiError("UNAUTHENTICATED", "Invalid or expired session")
            assert_permission(role_or_public(auth_ctx), "FILES_GET")
            path, download_name = document_store.resolve(cfg, ref)
            # Stored names are "<onboardingId>_<slot>_<file>", which ties a file to its record's outlet.
            onboarding_id = download_name.split("_", 1)[0]
            outlet_id = db.execute(select(Onboarding.outletId).where(Onboarding.id == onboarding_id)).scalar_one_or_none()
            if not in_scope(scope_for(db, auth_ctx), outlet_id):
                raise ApiError("FORBIDDEN", "File not accessible")
            db.commit()
        except ApiError as e:
            db.rollback()
            return err(e.code, e.message, http_status=e.http_status)

        mime, _enc = mimetypes.guess_type(download_name)
        resp = send_file(path, mimetype=mime or "application/octet-stream", as_attachment=False, download_name=download_name)
        resp.headers["X-Content-Type-Options"] = "nosniff"
        return resp
    finally:
        db.close()
