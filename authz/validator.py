"""
Permission validator – the request-level allow/deny decision point.

Decision order for check_permission / evaluate:

1. unknown, inactive or facility-less (non-global) user -> invalid_user_context
2. unparseable resource path or operation            -> invalid_resource_or_operation
3. unrestricted or all-facility role                  -> allow, all_facilities
4. delete without an explicit delete entry            -> delete operation not permitted
5. matrix lookup fails                                 -> permission_denied_for_role
6. resource facility differs from the user's          -> facility access restriction
7. otherwise                                           -> allow, own_facility
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional

from loguru import logger

from authz.cache import TTLCache
from authz.catalog import RoleCatalog, RoleDefinition
from authz.config import DECISION_CACHE_TTL_SECONDS
from authz.exceptions import (
    ConfigurationError,
    FacilityRestriction,
    IdentityTimeoutError,
    InvalidRoleError,
    InvalidUserContext,
    MissingFacilityError,
    NotFoundError,
    PermissionDenied,
    PrivilegeEscalationError,
)
from authz.models import Operation, PermissionDecision, ResourceContext, RoleInfo, Scope, UserContext
from authz.role_manager import RoleManager, normalize_facility_id

REASON_INVALID_USER_CONTEXT = "invalid_user_context"
REASON_INVALID_RESOURCE = "invalid_resource_or_operation"
REASON_ADMINISTRATOR = "administrator access granted"
REASON_DELETE_NOT_PERMITTED = "delete operation not permitted"
REASON_ROLE_DENIED = "permission_denied_for_role"
REASON_FACILITY_RESTRICTION = "facility access restriction"
REASON_FACILITY_GRANTED = "facility access granted"
REASON_CONFIGURATION_ERROR = "configuration_error"


def parse_resource(resource_path, catalog: RoleCatalog) -> Optional[str]:
    """Resolve ``patients``, ``patients/<id>`` or a databases/.../collections path."""
    if not isinstance(resource_path, str):
        return None
    path = resource_path.strip().strip("/")
    if catalog.is_resource(path):
        return path
    parts = path.split("/")
    candidate = None
    if parts[0] == "databases":
        if len(parts) in (4, 6) and parts[2] == "collections":
            if len(parts) == 4 or (parts[4] == "documents" and parts[5]):
                candidate = parts[3]
    elif len(parts) == 2 and parts[1]:
        candidate = parts[0]
    return candidate if catalog.is_resource(candidate) else None


def role_allows(definition: RoleDefinition, resource: str, operation: Operation) -> bool:
    """Facility-agnostic matrix decision (steps 3-5) for one role."""
    if definition.is_unrestricted or definition.all_facilities:
        return True
    if operation is Operation.DELETE and not definition.grants_explicitly(resource, operation):
        return False
    return operation in definition.operations_for(resource)


class PermissionValidator:
    """Allow/deny decisions with a short-lived per-user decision cache."""

    def __init__(
        self,
        role_manager: RoleManager,
        config_store,
        ttl: int = DECISION_CACHE_TTL_SECONDS,
        cache_enabled: bool = True,
    ):
        self.role_manager = role_manager
        self.config_store = config_store
        self.cache_enabled = cache_enabled
        self._cache = TTLCache("decisions", ttl)
        role_manager.add_invalidation_listener(self._on_invalidate)

    def _on_invalidate(self, user_id: Optional[str]) -> None:
        if user_id is None:
            self._cache.clear()
        else:
            self._cache.invalidate(user_id)

    @property
    def cache(self) -> TTLCache:
        return self._cache

    # ── Decisions ────────────────────────────────────────────────────

    def check_permission(
        self,
        user_id: Optional[str],
        resource_path: str,
        operation,
        user_context: Optional[UserContext] = None,
        resource_context: Optional[ResourceContext] = None,
        timeout: Optional[float] = None,
    ) -> PermissionDecision:
        """Decide whether *user_id* may perform *operation* on *resource_path*.

        Validation problems come back as deny decisions; identity-provider
        outages (other than timeouts) propagate as NetworkError.
        """
        owner = user_id or (user_context.user_id if user_context else None)
        if not owner or not isinstance(owner, str):
            return self._log(PermissionDecision.deny(REASON_INVALID_USER_CONTEXT))
        generation = self._cache.generation(owner)

        if user_context is None:
            try:
                user_context = self.role_manager.get_user_context(owner, timeout=timeout)
            except IdentityTimeoutError as e:
                return self._log(PermissionDecision.deny(REASON_CONFIGURATION_ERROR, error=str(e)))
            except (NotFoundError, InvalidUserContext):
                return self._log(PermissionDecision.deny(REASON_INVALID_USER_CONTEXT, userId=owner))
        elif user_id and user_context.user_id != user_id:
            return self._log(PermissionDecision.deny(REASON_INVALID_USER_CONTEXT, userId=owner))

        target = resource_context.facility_id if resource_context else None
        key = (
            user_context.role, user_context.facility_id, user_context.active,
            str(resource_path), str(getattr(operation, "value", operation)),
            resource_context is not None, str(target),
        )
        if self.cache_enabled:
            cached = self._cache.get(owner, key)
            if cached is not None:
                return cached.restamped()

        try:
            decision = self.evaluate(user_context, resource_path, operation, resource_context)
        except ConfigurationError as e:
            return self._log(PermissionDecision.deny(REASON_CONFIGURATION_ERROR, error=str(e)))

        if self.cache_enabled:
            self._cache.set(owner, key, decision, generation=generation)
        return self._log(decision, user_context)

    def evaluate(
        self,
        user: Optional[UserContext],
        resource_path: str,
        operation,
        resource_context: Optional[ResourceContext] = None,
    ) -> PermissionDecision:
        """Uncached decision for an already-resolved user."""
        catalog = self.config_store.catalog
        definition = self.role_manager.role_definition(user)
        if definition is None:
            return PermissionDecision.deny(REASON_INVALID_USER_CONTEXT)
        own_facility = normalize_facility_id(user.facility_id)
        if not definition.all_facilities and own_facility is None:
            return PermissionDecision.deny(REASON_INVALID_USER_CONTEXT, detail="missing facility")

        resource = parse_resource(resource_path, catalog)
        op = Operation.parse(operation)
        if resource is None or op is None:
            return PermissionDecision.deny(REASON_INVALID_RESOURCE)

        details = {"role": definition.name, "resource": resource, "operation": op.value}
        if definition.is_unrestricted or definition.all_facilities:
            return PermissionDecision.allow(Scope.ALL_FACILITIES, REASON_ADMINISTRATOR, **details)

        if op is Operation.DELETE and not definition.grants_explicitly(resource, op):
            return PermissionDecision.deny(REASON_DELETE_NOT_PERMITTED, **details)

        if not self.role_manager.has_permission(user, resource, op):
            return PermissionDecision.deny(REASON_ROLE_DENIED, **details)

        if resource_context is not None and resource_context.facility_id is not None:
            if normalize_facility_id(resource_context.facility_id) != own_facility:
                return PermissionDecision.deny(REASON_FACILITY_RESTRICTION, **details)

        return PermissionDecision.allow(
            Scope.OWN_FACILITY, REASON_FACILITY_GRANTED, facilityId=own_facility, **details
        )

    def role_allows(self, role: str, resource: str, operation: Operation) -> bool:
        """Matrix decision for a role name, shared with grant construction."""
        catalog = self.config_store.catalog
        definition = catalog.find(role)
        if definition is None or not catalog.is_resource(resource):
            return False
        return role_allows(definition, resource, operation)

    def validate_collection_access(self, user: Optional[UserContext], resource: str) -> Dict[str, Any]:
        """Which operations the user's role may even attempt on *resource*."""
        catalog = self.config_store.catalog
        definition = self.role_manager.role_definition(user)
        if definition is None or not catalog.is_resource(resource):
            return {"hasAccess": False, "operations": []}
        operations = [op.value for op in Operation if role_allows(definition, resource, op)]
        return {"hasAccess": bool(operations), "operations": operations}

    def validate_batch_permissions(
        self, user_id: str, requests: Iterable[Mapping[str, Any]]
    ) -> Dict[str, Any]:
        """Check several {resource, operation, facilityId?} requests at once."""
        try:
            user = self.role_manager.get_user_context(user_id)
        except (NotFoundError, InvalidUserContext):
            user = None

        results: List[Dict[str, Any]] = []
        for request in requests:
            if not isinstance(request, Mapping):
                results.append({
                    "resource": None,
                    "operation": None,
                    "allowed": False,
                    "reason": REASON_INVALID_RESOURCE,
                })
                continue
            context = None
            if request.get("facilityId") is not None:
                context = ResourceContext(facility_id=request.get("facilityId"))
            if user is None:
                decision = PermissionDecision.deny(REASON_INVALID_USER_CONTEXT)
            else:
                decision = self.check_permission(
                    user_id, request.get("resource"), request.get("operation"),
                    user_context=user, resource_context=context,
                )
            results.append({
                "resource": request.get("resource"),
                "operation": request.get("operation"),
                "allowed": decision.allowed,
                "reason": decision.reason,
            })

        allowed = sum(1 for r in results if r["allowed"])
        return {
            "userId": user_id,
            "results": results,
            "summary": {"total": len(results), "allowed": allowed, "denied": len(results) - allowed},
        }

    # ── Role assignment hierarchy ────────────────────────────────────

    def validate_role_assignment(self, requester: Optional[UserContext], target_role: str, facility_id=None) -> None:
        """Raise if *requester* may not give *target_role* at *facility_id*."""
        catalog = self.config_store.catalog
        requester_definition = self.role_manager.role_definition(requester)
        if requester_definition is None:
            raise InvalidUserContext("Could not validate requesting user permissions")
        if not catalog.has_role(target_role):
            raise InvalidRoleError(f"Invalid role: {target_role}")

        facility_id = normalize_facility_id(facility_id)
        if not catalog.get(target_role).all_facilities and facility_id is None:
            raise MissingFacilityError("Facility ID is required for non-administrator roles")

        if not self.evaluate(requester, "users", Operation.UPDATE).allowed:
            raise PermissionDenied("Insufficient permissions to assign roles")
        if not catalog.can_assign(requester.role, target_role):
            raise PrivilegeEscalationError("Cannot assign a role higher than your own")
        if not requester_definition.all_facilities:
            if facility_id is None or facility_id != normalize_facility_id(requester.facility_id):
                raise FacilityRestriction("Cannot assign roles to users in other facilities")

    def validate_role_change(self, requester: UserContext, current: RoleInfo) -> None:
        """Raise if *requester* may not replace the role *current* already holds."""
        catalog = self.config_store.catalog
        if current.role is not None and not catalog.can_assign(requester.role, current.role):
            raise PrivilegeEscalationError("Cannot change the role of a higher-level user")
        requester_definition = self.role_manager.role_definition(requester)
        if requester_definition is None or requester_definition.all_facilities:
            return
        target_facility = normalize_facility_id(current.facility_id)
        if target_facility is not None and target_facility != normalize_facility_id(requester.facility_id):
            raise FacilityRestriction("Cannot assign roles to users in other facilities")

    # ── Housekeeping ─────────────────────────────────────────────────

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self._cache.stats()

    @staticmethod
    def _log(decision: PermissionDecision, user: Optional[UserContext] = None) -> PermissionDecision:
        who = user.user_id if user else "anonymous"
        if decision.allowed:
            logger.debug(f"Allowed {dict(decision.details)} for {who} ({decision.reason})")
        else:
            logger.warning(f"Denied {dict(decision.details)} for {who}: {decision.reason}")
        return decision
