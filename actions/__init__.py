from __future__ import annotations

from typing import Any, Callable

from actions import auth_actions, employment, exports, onboarding, outlets, roles, verification, views
from utils import ApiError, AuthContext


Handler = Callable[[dict, AuthContext, Any, Any], Any]

# Keys mirror auth.STATIC_RBAC_PERMISSIONS except FILES_GET, which the /files route serves directly.
ACTIONS: dict[str, Handler] = {
    # Identity & access
    "AUTH_LOGIN": auth_actions.login,
    "AUTH_LOGOUT": auth_actions.logout,
    "AUTH_ME": auth_actions.me,
    "AUTH_UPDATE_PASSWORD": auth_actions.update_password,
    "STAFF_REGISTER": auth_actions.register_staff,
    "STAFF_LIST": auth_actions.list_staff,
    # Verification
    "OTP_SEND": verification.otp_send,
    "OTP_VERIFY": verification.otp_verify,
    "KYC_DIGILOCKER_INITIATE": verification.digilocker_initiate,
    "KYC_DIGILOCKER_STATUS": verification.digilocker_status,
    "KYC_PAN_VERIFY": verification.pan_verify,
    # Onboarding
    "ONBOARDING_SAVE_DRAFT": onboarding.save_draft,
    "ONBOARDING_GET_DRAFT": onboarding.get_draft,
    "ONBOARDING_GET": onboarding.get_application,
    "ONBOARDING_ATTACH_DOCUMENT": onboarding.attach_document,
    "ONBOARDING_SUBMIT": onboarding.submit,
    "ONBOARDING_SEND_APPROVAL_EMAIL": onboarding.send_approval_email,
    "APPROVAL_TOKEN_CHECK": onboarding.check_approval_token,
    "APPROVAL_TOKEN_APPROVE": onboarding.approve_by_token,
    "APPROVAL_TOKEN_REJECT": onboarding.reject_by_token,
    "APPLICATION_APPROVE": onboarding.approve,
    "APPLICATION_REJECT": onboarding.reject,
    # Employment
    "DEACTIVATION_REQUEST": employment.request_deactivation,
    "DEACTIVATION_APPROVE": employment.approve_deactivation,
    "DEACTIVATION_REJECT": employment.reject_deactivation,
    "EMPLOYEE_DEACTIVATE": employment.deactivate_direct,
    "EMPLOYEE_TERMINATE": employment.terminate,
    "EMPLOYEE_REHIRE": employment.rehire,
    "PUBLIC_EMPLOYEE_GET": employment.public_employee_get,
    # Catalogs
    "OUTLETS_ACTIVE_LIST": outlets.list_active,
    "OUTLET_LIST_ALL": outlets.list_all,
    "OUTLET_GET": outlets.get,
    "OUTLET_CREATE": outlets.create,
    "OUTLET_UPDATE": outlets.update,
    "OUTLET_TOGGLE_STATUS": outlets.toggle_status,
    "OUTLET_DELETE": outlets.delete,
    "OUTLET_BULK_IMPORT": outlets.bulk_import,
    "ROLES_LIST": roles.list_roles,
    "ROLE_GET": roles.get,
    "ROLE_CREATE": roles.create,
    "ROLE_UPDATE": roles.update,
    "ROLE_DELETE": roles.delete,
    # Views
    "ADMIN_STATS": views.admin_stats,
    "ADMIN_EMPLOYEES_LIST": views.admin_employees,
    "ADMIN_DEACTIVATIONS_LIST": views.admin_deactivations,
    "COACH_STATS": views.coach_stats,
    "COACH_APPLICATIONS_LIST": views.coach_applications,
    "COACH_APPLICATION_GET": views.coach_application,
    "COACH_DEACTIVATIONS_LIST": views.coach_deactivations,
    "MANAGER_STATS": views.manager_stats,
    "MANAGER_ONBOARDINGS_LIST": views.manager_onboardings,
    "MANAGER_EMPLOYEES_LIST": views.manager_employees,
    "MANAGER_DEACTIVATIONS_LIST": views.manager_deactivations,
    "DASHBOARD_STATS": views.dashboard_stats,
    "DASHBOARD_APPLICATIONS_LIST": views.dashboard_applications,
    # Export
    "EXPORT_CSV": exports.export_csv,
    "EXPORT_JSON": exports.export_json,
    "EXPORT_LINK_CREATE": exports.create_link,
    "PUBLIC_EXPORT_GET": exports.public_export,
}


def dispatch(action: str, data: dict, auth: AuthContext | None, db, cfg) -> Any:
    handler = ACTIONS.get(str(action or "").upper().strip())
    if handler is None:
        raise ApiError("VALIDATION_ERROR", f"Unknown action: {action}")
    return handler(data or {}, auth, db, cfg)
