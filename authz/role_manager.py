"""
Role manager – resolving users to role/facility and the core matrix checks.
"""

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Dict, List, Optional

from loguru import logger

from authz.catalog import (
    RoleCatalog,
    RoleDefinition,
    facility_label,
    parse_facility_label,
    strip_role_labels,
)
from authz.config import ACTIVE_USER_STATUSES, ROLE_CACHE_TTL_SECONDS
from authz.cache import TTLCache
from authz.exceptions import (
    IdentityTimeoutError,
    InvalidRoleError,
    InvalidUserContext,
    MissingFacilityError,
)
from authz.models import IdentityRecord, Operation, RoleInfo, UserContext

_lookup_pool = ThreadPoolExecutor(max_workers=8, thread_name_prefix="identity")


def normalize_facility_id(value) -> Optional[str]:
    """Facility ids are compared as trimmed strings; blanks mean 'none'."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def extract_role(labels: List[str], catalog: RoleCatalog) -> Optional[str]:
    """The single role label carried by a user; ambiguous or absent -> None."""
    roles = {label for label in labels if catalog.has_role(label)}
    if len(roles) == 1:
        return roles.pop()
    if len(roles) > 1:
        logger.warning(f"User carries conflicting role labels {sorted(roles)}; treating as no role")
    return None


def extract_facility(labels: List[str]) -> Optional[str]:
    for label in labels:
        facility_id = parse_facility_label(label)
        if facility_id:
            return facility_id
    return None


class RoleManager:
    """Resolves identities and answers has_permission / validate_facility_access."""

    def __init__(self, config_store, identity_provider, ttl: int = ROLE_CACHE_TTL_SECONDS):
        self.config_store = config_store
        self.identity = identity_provider
        self._cache = TTLCache("role-info", ttl)
        self._listeners: List[Callable[[Optional[str]], None]] = []
        config_store.add_reload_listener(lambda _version: self.clear_cache())

    @property
    def catalog(self) -> RoleCatalog:
        return self.config_store.catalog

    @property
    def cache(self) -> TTLCache:
        return self._cache

    # ── Resolution ───────────────────────────────────────────────────

    def get_user_role_info(self, user_id: str, timeout: Optional[float] = None) -> RoleInfo:
        """Resolve *user_id* to role, facility and capabilities (cached per user)."""
        if not user_id or not isinstance(user_id, str):
            raise InvalidUserContext("User ID is required")

        cached = self._cache.get(user_id)
        if cached is not None:
            return cached

        generation = self._cache.generation(user_id)
        record = self._fetch_user(user_id, timeout)
        info = self._build_role_info(record, self.catalog)
        self._cache.set(user_id, None, info, generation=generation)
        return info

    def get_user_context(self, user_id: str, timeout: Optional[float] = None) -> UserContext:
        return self.get_user_role_info(user_id, timeout=timeout).to_user_context()

    def _fetch_user(self, user_id: str, timeout: Optional[float]) -> IdentityRecord:
        if timeout is None:
            return self.identity.get_user(user_id)
        future = _lookup_pool.submit(self.identity.get_user, user_id)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            raise IdentityTimeoutError(f"Identity lookup for {user_id} exceeded {timeout}s")

    @staticmethod
    def _build_role_info(record: IdentityRecord, catalog: RoleCatalog) -> RoleInfo:
        role = extract_role(record.labels, catalog)
        definition = catalog.find(role)
        return RoleInfo(
            user_id=record.id,
            role=role,
            facility_id=extract_facility(record.labels),
            labels=tuple(record.labels),
            email=record.email,
            active=record.status.strip().lower() in ACTIVE_USER_STATUSES,
            permissions=definition.matrix() if definition else {},
            special_permissions=definition.special_permissions if definition else frozenset(),
            data_access=definition.data_access.value if definition else "facility_only",
            can_access_multiple_facilities=bool(definition and definition.can_access_multiple_facilities),
        )

    # ── Checks ───────────────────────────────────────────────────────

    def role_definition(self, user: Optional[UserContext]) -> Optional[RoleDefinition]:
        """Catalog entry for an authenticated, active user; None otherwise."""
        if user is None or not user.active:
            return None
        return self.catalog.find(user.role)

    def has_permission(self, user: Optional[UserContext], resource: str, operation) -> bool:
        definition = self.role_definition(user)
        op = Operation.parse(operation)
        if definition is None or op is None or not self.catalog.is_resource(resource):
            return False
        if definition.is_unrestricted:
            return True
        return op in definition.operations_for(resource)

    def validate_facility_access(self, user: Optional[UserContext], facility_id) -> bool:
        definition = self.role_definition(user)
        if definition is None:
            return False
        if definition.all_facilities:
            return True
        own = normalize_facility_id(user.facility_id)
        if own is None:
            return False
        return own == normalize_facility_id(facility_id)

    def can_access_multiple_facilities(self, user: Optional[UserContext]) -> bool:
        definition = self.role_definition(user)
        return bool(definition and definition.can_access_multiple_facilities)

    def has_special_permission(self, user: Optional[UserContext], name: str) -> bool:
        definition = self.role_definition(user)
        return bool(definition and name in definition.special_permissions)

    # ── Assignment ───────────────────────────────────────────────────

    def assign_role(self, user_id: str, role: str, facility_id=None) -> Dict[str, object]:
        """Persist a role/facility for *user_id* and drop its cached state.

        Hierarchy rules are enforced by PermissionValidator before this is
        called; here only the input shape is validated.
        """
        catalog = self.catalog
        if not catalog.has_role(role):
            raise InvalidRoleError(f"Invalid role: {role}")
        facility_id = normalize_facility_id(facility_id)
        if not catalog.get(role).all_facilities and facility_id is None:
            raise MissingFacilityError("Facility ID is required for non-administrator roles")

        record = self.identity.get_user(user_id)
        labels = strip_role_labels(record.labels, catalog) + [role]
        if facility_id is not None:
            labels.append(facility_label(facility_id))
        self.identity.update_labels(user_id, labels)
        self.invalidate_user(user_id)

        logger.info(f"Assigned role {role} (facility {facility_id}) to user {user_id}")
        return {
            "success": True,
            "message": f"Role {role} assigned successfully",
            "userId": user_id,
            "role": role,
            "facilityId": facility_id,
        }

    def remove_role(self, user_id: str) -> Dict[str, object]:
        """Strip role and facility labels; the user is then denied everywhere."""
        record = self.identity.get_user(user_id)
        self.identity.update_labels(user_id, strip_role_labels(record.labels, self.catalog))
        self.invalidate_user(user_id)
        logger.info(f"Removed role from user {user_id}")
        return {"success": True, "message": "Role removed", "userId": user_id}

    # ── Cache management ─────────────────────────────────────────────

    def add_invalidation_listener(self, listener: Callable[[Optional[str]], None]) -> None:
        """*listener(user_id)* runs on every invalidation; None means 'all users'."""
        self._listeners.append(listener)

    def invalidate_user(self, user_id: str) -> None:
        self._cache.invalidate(user_id)
        for listener in list(self._listeners):
            listener(user_id)

    def clear_cache(self) -> None:
        self._cache.clear()
        for listener in list(self._listeners):
            listener(None)
