from __future__ import annotations

import pytest

from actions import ACTIONS
from actions.lifecycle import can_transition, can_transition_employee
from auth import PUBLIC_ACTIONS, STATIC_RBAC_PERMISSIONS
from utils import ApiError


def test_every_permissioned_action_has_a_handler():
    # FILES_GET is served by the /files route, not the action dispatcher.
    assert set(ACTIONS) == set(STATIC_RBAC_PERMISSIONS) - {"FILES_GET"}


def test_public_surface_is_candidate_facing_only():
    assert PUBLIC_ACTIONS == {
        "AUTH_LOGIN",
        "OTP_SEND",
        "OTP_VERIFY",
        "KYC_DIGILOCKER_INITIATE",
        "KYC_DIGILOCKER_STATUS",
        "KYC_PAN_VERIFY",
        "ONBOARDING_SAVE_DRAFT",
        "ONBOARDING_GET_DRAFT",
        "ONBOARDING_ATTACH_DOCUMENT",
        "ONBOARDING_SUBMIT",
        "APPROVAL_TOKEN_CHECK",
        "APPROVAL_TOKEN_APPROVE",
        "APPROVAL_TOKEN_REJECT",
        "OUTLETS_ACTIVE_LIST",
        "ROLES_LIST",
        "PUBLIC_EMPLOYEE_GET",
        "PUBLIC_EXPORT_GET",
    }


def test_status_machine_edges():
    assert can_transition("draft", "submitted")
    assert can_transition("pending_approval", "approved")
    assert can_transition("approved", "terminated")
    assert not can_transition("rejected", "approved")
    assert not can_transition("draft", "approved")
    assert not can_transition("terminated", "approved")

    assert can_transition_employee("active", "deactivation_pending")
    assert can_transition_employee("deactivated", "active")
    assert not can_transition_employee("terminated", "active")


def test_unknown_status_is_invalid_state():
    with pytest.raises(ApiError) as ei:
        can_transition("archived", "approved")
    assert ei.value.code == "INVALID_STATE"
