"""
Role catalog – immutable role definitions, hierarchy and permission matrix.

Raw configuration sections are validated with pydantic models and then
frozen into RoleDefinition / SecurityRule values used at runtime.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Annotated, Any, Dict, FrozenSet, Iterable, List, Literal, Mapping, Optional, Union

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StringConstraints,
    ValidationError,
    field_validator,
    model_validator,
)

from authz.config import FACILITY_GROUP_PREFIX, FACILITY_LABEL_PREFIX
from authz.exceptions import ConfigurationError, NotFoundError
from authz.models import DataAccess, Operation

WILDCARD = "*"
ALL_OPERATIONS = frozenset(Operation)
DEFAULT_FACILITY_FIELD = "facilityId"


@dataclass(frozen=True)
class RoleDefinition:
    """One catalog entry. Never mutated; a reload builds new instances."""
    name: str
    level: int
    permissions: Mapping[str, FrozenSet[Operation]]
    data_access: DataAccess
    description: str = ""
    special_permissions: FrozenSet[str] = frozenset()
    can_access_multiple_facilities: bool = False
    is_unrestricted: bool = False
    wildcard_operations: FrozenSet[Operation] = frozenset()
    wildcard_resources: FrozenSet[str] = frozenset()

    @property
    def all_facilities(self) -> bool:
        return self.data_access is DataAccess.ALL_FACILITIES

    def operations_for(self, resource: str) -> FrozenSet[Operation]:
        """Operations on *resource* from explicit entries and wildcards."""
        if self.is_unrestricted or resource in self.wildcard_resources:
            return ALL_OPERATIONS
        return self.permissions.get(resource, frozenset()) | self.wildcard_operations

    def grants_explicitly(self, resource: str, operation: Operation) -> bool:
        return operation in self.permissions.get(resource, frozenset())

    def matrix(self) -> Dict[str, List[str]]:
        return {
            res: sorted(op.value for op in ops)
            for res, ops in sorted(self.permissions.items())
        }


@dataclass(frozen=True)
class SecurityRule:
    """Per-resource storage settings."""
    resource: str
    facility_field: str = DEFAULT_FACILITY_FIELD
    document_security: bool = True


@dataclass(frozen=True)
class RoleCatalog:
    roles: Mapping[str, RoleDefinition]
    resources: FrozenSet[str]
    security_rules: Mapping[str, SecurityRule] = field(default_factory=dict)

    # ── Lookup ───────────────────────────────────────────────────────

    def get(self, role: str) -> RoleDefinition:
        try:
            return self.roles[role]
        except (KeyError, TypeError):
            raise NotFoundError(f"Unknown role: {role}")

    def find(self, role: Optional[str]) -> Optional[RoleDefinition]:
        if not isinstance(role, str):
            return None
        return self.roles.get(role)

    def has_role(self, role: Optional[str]) -> bool:
        return isinstance(role, str) and role in self.roles

    def is_resource(self, resource: Optional[str]) -> bool:
        return isinstance(resource, str) and resource in self.resources

    def level(self, role: Optional[str]) -> int:
        definition = self.find(role)
        return definition.level if definition else 0

    def role_names(self) -> List[str]:
        return sorted(self.roles, key=lambda r: (-self.roles[r].level, r))

    def security_rule(self, resource: str) -> SecurityRule:
        return self.security_rules.get(resource) or SecurityRule(resource)

    def multi_facility_roles(self) -> List[str]:
        return [r for r in self.role_names() if self.roles[r].can_access_multiple_facilities]

    @property
    def administrator_role(self) -> str:
        """Highest-level unrestricted role; receives grants on every document."""
        unrestricted = [r for r in self.role_names() if self.roles[r].is_unrestricted]
        return unrestricted[0]

    # ── Hierarchy ────────────────────────────────────────────────────

    def can_assign(self, assigner: str, target: str) -> bool:
        """Equal levels may assign each other; lower may never assign higher."""
        if not (self.has_role(assigner) and self.has_role(target)):
            return False
        return self.roles[assigner].level >= self.roles[target].level

    # ── Construction ─────────────────────────────────────────────────

    @classmethod
    def from_config(cls, sections: Mapping[str, Any]) -> "RoleCatalog":
        """Build a catalog from raw configuration sections or raise ConfigurationError."""
        try:
            parsed = CatalogSections.model_validate(sections)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid role configuration: {_describe(e)}")

        roles = {name: _build_role(name, entry) for name, entry in parsed.roles.items()}
        rules = {
            resource: SecurityRule(resource, entry.facility_field, entry.document_security)
            for resource, entry in (parsed.security_rules or {}).items()
        }
        return cls(
            roles=MappingProxyType(roles),
            resources=frozenset(parsed.resources),
            security_rules=MappingProxyType(rules),
        )


# ── Configuration models ─────────────────────────────────────────────

def _normalize_operation(value):
    return value.strip().lower() if isinstance(value, str) else value


Name = Annotated[str, StringConstraints(strict=True, strip_whitespace=True, min_length=1)]
OperationEntry = Annotated[Union[Literal["*"], Operation], BeforeValidator(_normalize_operation)]


class RoleEntry(BaseModel):
    """One role as written in the ``roles`` section."""

    model_config = ConfigDict(populate_by_name=True)

    level: StrictInt = Field(ge=1)
    description: str = ""
    permissions: Dict[str, List[OperationEntry]] = Field(default_factory=dict)
    data_access: DataAccess = Field(DataAccess.FACILITY_ONLY, alias="dataAccess")
    can_access_multiple_facilities: Optional[StrictBool] = Field(None, alias="canAccessMultipleFacilities")
    special_permissions: List[str] = Field(default_factory=list, alias="specialPermissions")
    unrestricted: StrictBool = False

    @model_validator(mode="after")
    def check_multi_facility(self):
        all_facilities = self.data_access is DataAccess.ALL_FACILITIES
        if self.can_access_multiple_facilities is None:
            self.can_access_multiple_facilities = all_facilities
        elif self.can_access_multiple_facilities != all_facilities:
            raise ValueError("canAccessMultipleFacilities disagrees with dataAccess")
        return self


class SecurityRuleEntry(BaseModel):
    """Storage settings for one resource in the ``security_rules`` section."""

    model_config = ConfigDict(populate_by_name=True)

    facility_field: Name = Field(DEFAULT_FACILITY_FIELD, alias="facilityField")
    document_security: StrictBool = Field(True, alias="documentSecurity")


class CatalogSections(BaseModel):
    """The ``resources``, ``roles`` and ``security_rules`` sections together."""

    resources: List[Name] = Field(min_length=1)
    roles: Dict[Name, RoleEntry] = Field(min_length=1)
    security_rules: Optional[Dict[str, SecurityRuleEntry]] = None

    @field_validator("resources")
    @classmethod
    def check_resources(cls, resources):
        if WILDCARD in resources:
            raise ValueError("'*' is not a resource name")
        if len(set(resources)) != len(resources):
            raise ValueError("duplicate resource names")
        return resources

    @model_validator(mode="after")
    def check_cross_references(self):
        known = set(self.resources)
        for name, role in self.roles.items():
            for resource in role.permissions:
                if resource != WILDCARD and resource not in known:
                    raise ValueError(f"Role '{name}': unknown resource '{resource}'")
        for resource in self.security_rules or {}:
            if resource not in known:
                raise ValueError(f"Security rule for unknown resource '{resource}'")

        unrestricted = [name for name, role in self.roles.items() if role.unrestricted]
        if not unrestricted:
            raise ValueError("Catalog must define an unrestricted administrator role")
        top_level = max(role.level for role in self.roles.values())
        for name in unrestricted:
            role = self.roles[name]
            if role.level != top_level:
                raise ValueError(f"Unrestricted role '{name}' must sit at the top of the hierarchy")
            if role.data_access is not DataAccess.ALL_FACILITIES:
                raise ValueError(f"Unrestricted role '{name}' must have all_facilities data access")
        return self


def _describe(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        where = ".".join(str(part) for part in item["loc"]) or "configuration"
        problems.append(f"{where}: {item['msg']}")
    return "; ".join(problems)


def _build_role(name: str, entry: RoleEntry) -> RoleDefinition:
    permissions: Dict[str, FrozenSet[Operation]] = {}
    wildcard_operations: FrozenSet[Operation] = frozenset()
    wildcard_resources = set()
    for resource, ops in entry.permissions.items():
        explicit = frozenset(op for op in ops if op != WILDCARD)
        if resource == WILDCARD:
            wildcard_operations = ALL_OPERATIONS if WILDCARD in ops else explicit
            continue
        if WILDCARD in ops:
            # "*" never stands in for an explicit delete grant.
            wildcard_resources.add(resource)
        permissions[resource] = explicit

    return RoleDefinition(
        name=name,
        level=entry.level,
        permissions=MappingProxyType(permissions),
        data_access=entry.data_access,
        description=entry.description,
        special_permissions=frozenset(entry.special_permissions),
        can_access_multiple_facilities=bool(entry.can_access_multiple_facilities),
        is_unrestricted=entry.unrestricted,
        wildcard_operations=wildcard_operations,
        wildcard_resources=frozenset(wildcard_resources),
    )



# ── Facility labels / groups ─────────────────────────────────────────

def facility_label(facility_id: str) -> str:
    return f"{FACILITY_LABEL_PREFIX}{facility_id}"


def parse_facility_label(label: Optional[str]) -> Optional[str]:
    """Facility id carried by a ``facility_<id>`` label, else None."""
    if not label or not label.startswith(FACILITY_LABEL_PREFIX):
        return None
    return label[len(FACILITY_LABEL_PREFIX):] or None


def facility_group(facility_id: str) -> str:
    return f"{FACILITY_GROUP_PREFIX}{facility_id}"


def strip_role_labels(labels: Iterable[str], catalog: RoleCatalog) -> List[str]:
    """Labels with every role and facility label removed."""
    return [
        label for label in labels
        if label not in catalog.roles and parse_facility_label(label) is None
    ]
