"""
Tests for the role assignment entry point.
"""

import pytest

from authz.assignment import assign_user_role
from authz.exceptions import NetworkError


def payload(target, role, requester, facility=None):
    body = {"targetUserId": target, "role": role, "requestingUserId": requester}
    if facility is not None:
        body["facilityId"] = facility
    return body


# ── Tests: refusals ──────────────────────────────────────────────────

@pytest.mark.parametrize("body, status, error", [
    ({}, 400, "Missing required fields: targetUserId, role, requestingUserId"),
    (None, 400, "Missing required fields: targetUserId, role, requestingUserId"),
    (payload("user-1", "janitor", "admin-1", "1"), 400, "Invalid role: janitor"),
    (payload("user-1", "doctor", "admin-1"), 400, "Facility ID is required for non-administrator roles"),
    (payload("user-1", "doctor", "ghost", "1"), 404, "Requesting user not found"),
    (payload("user-1", "doctor", "inactive-1", "1"), 403, "Could not validate requesting user permissions"),
    (payload("user-1", "doctor", "conflict-1", "1"), 403, "Could not validate requesting user permissions"),
    (payload("user-1", "user", "doc-1", "1"), 403, "Insufficient permissions to assign roles"),
    (payload("user-1", "administrator", "sup-1"), 403, "Cannot assign a role higher than your own"),
    (payload("user-1", "doctor", "sup-1", "2"), 403, "Cannot assign roles to users in other facilities"),
    (payload("ghost", "doctor", "admin-1", "1"), 404, "Target user not found"),
    (payload("admin-1", "user", "sup-1", "1"), 403, "Cannot change the role of a higher-level user"),
    (payload("doc-2", "doctor", "sup-1", "1"), 403, "Cannot assign roles to users in other facilities"),
    (payload("user-1", ["doctor"], "admin-1", "1"), 400, "Invalid role: must be a role name"),
    (payload("user-1", {"name": "doctor"}, "admin-1", "1"), 400, "Invalid role: must be a role name"),
])
def test_refusals(engine, body, status, error):
    result, code = assign_user_role(engine, body)
    assert code == status
    assert result == {"success": False, "error": error}


def test_unknown_target_is_not_revealed_to_unauthorized_requester(engine):
    result, code = assign_user_role(engine, payload("ghost", "user", "doc-1", "1"))
    assert code == 403
    assert result["error"] == "Insufficient permissions to assign roles"


def test_supervisor_cannot_demote_administrator(engine):
    result, code = assign_user_role(engine, payload("admin-1", "user", "sup-1", "1"))
    assert code == 403

    info = engine.role_manager.get_user_role_info("admin-1")
    assert info.role == "administrator"
    assert engine.identity.get_user("admin-1").labels == ["administrator"]


def test_administrator_reassigns_supervisor(engine):
    result, code = assign_user_role(engine, payload("sup-1", "doctor", "admin-1", "1"))
    assert code == 200
    assert result["roleChange"]["previous"] == {"role": "supervisor", "facilityId": "1"}


def test_identity_outage_is_503(engine, monkeypatch):
    def broken(user_id, timeout=None):
        raise NetworkError("identity store unreachable")

    monkeypatch.setattr(engine.role_manager, "get_user_role_info", broken)
    result, code = assign_user_role(engine, payload("user-1", "doctor", "admin-1", "1"))
    assert code == 503
    assert result["error"] == "Identity provider unavailable"


# ── Tests: success ───────────────────────────────────────────────────

def test_supervisor_assigns_doctor_in_own_facility(engine):
    result, code = assign_user_role(engine, payload("user-1", "doctor", "sup-1", "1"))
    assert code == 200
    assert result["success"] is True
    assert result["message"] == "Role doctor assigned successfully"
    assert result["roleChange"] == {
        "previous": {"role": "user", "facilityId": "1"},
        "current": {"role": "doctor", "facilityId": "1"},
    }
    assert result["userInfo"]["role"] == "doctor"


def test_administrator_assigns_administrator(engine):
    result, code = assign_user_role(engine, payload("doc-2", "administrator", "admin-1"))
    assert code == 200
    assert result["roleChange"]["current"] == {"role": "administrator", "facilityId": None}
    assert engine.validator.check_permission("doc-2", "patients", "delete").allowed


def test_assignment_is_visible_to_cached_decisions(engine):
    assert not engine.validator.check_permission("user-1", "patients", "update").allowed

    _, code = assign_user_role(engine, payload("user-1", "doctor", "sup-1", "1"))
    assert code == 200

    decision = engine.validator.check_permission("user-1", "patients", "update")
    assert decision.allowed
    assert decision.reason == "facility access granted"
