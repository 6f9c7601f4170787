"""
Role assignment entry point: validates the request against the hierarchy
and returns a ``(body, status)`` pair ready for an HTTP response.
"""

from typing import Any, Dict, Mapping, Optional, Tuple

from loguru import logger

from authz.exceptions import (
    FacilityRestriction,
    InvalidRoleError,
    InvalidUserContext,
    MissingFacilityError,
    NetworkError,
    NotFoundError,
    PermissionDenied,
    PrivilegeEscalationError,
)
from authz.role_manager import normalize_facility_id

REQUIRED_FIELDS = ("targetUserId", "role", "requestingUserId")


def _error(message: str, status: int) -> Tuple[Dict[str, Any], int]:
    return {"success": False, "error": message}, status


def assign_user_role(engine, payload: Optional[Mapping[str, Any]]) -> Tuple[Dict[str, Any], int]:
    """Assign ``payload["role"]`` to ``payload["targetUserId"]`` on behalf of the requester."""
    payload = payload or {}
    if any(not payload.get(name) for name in REQUIRED_FIELDS):
        return _error("Missing required fields: targetUserId, role, requestingUserId", 400)

    target_id = str(payload["targetUserId"])
    requester_id = str(payload["requestingUserId"])
    role = payload["role"]
    if not isinstance(role, str):
        return _error("Invalid role: must be a role name", 400)
    facility_id = normalize_facility_id(payload.get("facilityId"))

    catalog = engine.config_store.catalog
    if not catalog.has_role(role):
        return _error(f"Invalid role: {role}", 400)
    if not catalog.get(role).all_facilities and facility_id is None:
        return _error("Facility ID is required for non-administrator roles", 400)

    role_manager = engine.role_manager
    try:
        try:
            requester = role_manager.get_user_context(requester_id)
        except NotFoundError:
            return _error("Requesting user not found", 404)

        try:
            engine.validator.validate_role_assignment(requester, role, facility_id)
        except InvalidUserContext:
            return _error("Could not validate requesting user permissions", 403)
        except (InvalidRoleError, MissingFacilityError) as e:
            return _error(str(e), 400)
        except (PermissionDenied, PrivilegeEscalationError, FacilityRestriction) as e:
            logger.warning(f"Role assignment by {requester_id} refused: {e.reason}")
            return _error(str(e), 403)

        try:
            previous = role_manager.get_user_role_info(target_id)
        except NotFoundError:
            return _error("Target user not found", 404)

        try:
            engine.validator.validate_role_change(requester, previous)
        except (PrivilegeEscalationError, FacilityRestriction) as e:
            logger.warning(f"Role change for {target_id} by {requester_id} refused: {e.reason}")
            return _error(str(e), 403)

        try:
            result = role_manager.assign_role(target_id, role, facility_id)
        except NotFoundError:
            return _error("Target user not found", 404)

        current = role_manager.get_user_role_info(target_id)
    except NetworkError as e:
        logger.error(f"Role assignment for {target_id} failed: {e}")
        return _error("Identity provider unavailable", 503)

    logger.info(f"Role change for {target_id}: {previous.role} -> {current.role} (by {requester_id})")
    body = {
        "success": True,
        "message": result["message"],
        "userId": target_id,
        "roleChange": {
            "previous": {"role": previous.role, "facilityId": previous.facility_id},
            "current": {"role": current.role, "facilityId": current.facility_id},
        },
        "userInfo": current.to_dict(),
    }
    return body, 200
