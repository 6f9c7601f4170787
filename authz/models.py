"""
Domain dataclasses used across the authorization engine.
"""

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple


class Operation(str, enum.Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value) -> Optional["Operation"]:
        """Return the Operation for *value*, or None when it is not one."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class DataAccess(str, enum.Enum):
    ALL_FACILITIES = "all_facilities"
    FACILITY_ONLY = "facility_only"


class Scope(str, enum.Enum):
    ALL_FACILITIES = "all_facilities"
    OWN_FACILITY = "own_facility"
    NONE = "none"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class UserContext:
    """Per-request projection of an authenticated user."""
    user_id: str
    role: Optional[str]
    facility_id: Optional[str] = None
    labels: Tuple[str, ...] = ()
    active: bool = True


@dataclass(frozen=True)
class ResourceContext:
    """Hint about the resource being accessed (e.g. a document's facility)."""
    facility_id: Optional[str] = None


@dataclass
class RoleInfo:
    """A resolved user decorated with catalog data."""
    user_id: str
    role: Optional[str]
    facility_id: Optional[str]
    labels: Tuple[str, ...] = ()
    email: Optional[str] = None
    active: bool = True
    permissions: Dict[str, List[str]] = field(default_factory=dict)
    special_permissions: FrozenSet[str] = frozenset()
    data_access: str = DataAccess.FACILITY_ONLY.value
    can_access_multiple_facilities: bool = False

    def to_user_context(self) -> UserContext:
        return UserContext(
            user_id=self.user_id,
            role=self.role,
            facility_id=self.facility_id,
            labels=tuple(self.labels),
            active=self.active,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "role": self.role,
            "facilityId": self.facility_id,
            "email": self.email,
            "active": self.active,
            "permissions": self.permissions,
            "specialPermissions": sorted(self.special_permissions),
            "dataAccess": self.data_access,
            "canAccessMultipleFacilities": self.can_access_multiple_facilities,
        }


@dataclass(frozen=True)
class PermissionDecision:
    """Result of a single permission check. Not cached by value."""
    allowed: bool
    scope: Scope
    reason: str
    evaluated_at: datetime = field(default_factory=_utcnow)
    details: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls, scope: Scope, reason: str, **details) -> "PermissionDecision":
        return cls(allowed=True, scope=scope, reason=reason, details=details)

    @classmethod
    def deny(cls, reason: str, **details) -> "PermissionDecision":
        return cls(allowed=False, scope=Scope.NONE, reason=reason, details=details)

    def restamped(self) -> "PermissionDecision":
        """Copy with a fresh evaluation timestamp (used for cache hits)."""
        return replace(self, evaluated_at=_utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "scope": self.scope.value,
            "reason": self.reason,
            "evaluatedAt": self.evaluated_at.isoformat(),
            "details": dict(self.details),
        }

    def public_view(self) -> Dict[str, Any]:
        """What an end user may see: no reason detail on denials."""
        if self.allowed:
            return {"allowed": True, "scope": self.scope.value}
        return {"allowed": False, "error": "not authorized"}


@dataclass(frozen=True)
class QueryFilter:
    """Equality predicate on a document field."""
    field: str
    value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "op": "equal", "value": self.value}


@dataclass(frozen=True)
class QueryDescriptor:
    """A storage-ready query with the facility scope already applied."""
    resource: str
    filters: Tuple[QueryFilter, ...]
    scope: Scope
    limit: int
    offset: int = 0
    order_by: Optional[str] = None

    def filter_values(self, field_name: str) -> List[Any]:
        return [f.value for f in self.filters if f.field == field_name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "filters": [f.to_dict() for f in self.filters],
            "scope": self.scope.value,
            "limit": self.limit,
            "offset": self.offset,
            "orderBy": self.order_by,
        }


@dataclass
class IdentityRecord:
    """User as seen by the external identity provider."""
    id: str
    email: Optional[str]
    labels: List[str]
    status: str = "active"


@dataclass
class StoredDocument:
    """Document as returned by the storage layer."""
    id: str
    collection: str
    data: Dict[str, Any]
    grants: List[str] = field(default_factory=list)
    facility_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.data)
        out["id"] = self.id
        out["grants"] = list(self.grants)
        return out
