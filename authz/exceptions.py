"""
Error taxonomy for the authorization engine.

Validation problems are normally folded into deny decisions carrying a
reason string; the exceptions below are raised where an operation cannot
produce a decision (role assignment, configuration loading, infrastructure).
"""


class AuthorizationError(Exception):
    """Base class; ``reason`` is the machine-distinguishable code."""

    reason = "authorization_error"

    def __init__(self, message: str = "", reason: str = None):
        super().__init__(message or self.reason)
        if reason:
            self.reason = reason


class InvalidUserContext(AuthorizationError):
    reason = "invalid_user_context"


class InvalidResourceOrOperation(AuthorizationError):
    reason = "invalid_resource_or_operation"


class ConfigurationError(AuthorizationError):
    reason = "configuration_error"


class PermissionDenied(AuthorizationError):
    reason = "permission_denied_for_role"


class FacilityRestriction(AuthorizationError):
    reason = "facility access restriction"


class NotFoundError(AuthorizationError):
    reason = "not_found"


class InvalidRoleError(AuthorizationError):
    reason = "invalid_role"


class MissingFacilityError(AuthorizationError):
    reason = "missing_facility"


class PrivilegeEscalationError(AuthorizationError):
    reason = "privilege_escalation"


class NetworkError(AuthorizationError):
    """Identity provider or storage layer could not be reached."""
    reason = "network_error"


class IdentityTimeoutError(NetworkError):
    reason = "identity_timeout"
