"""
Grant vocabulary shared with the storage layer.

A grant is an (operation, principal) pair rendered as
``<operation>:<kind>:<id>``, for example ``read:role:administrator``,
``read:group:facility-1`` or ``update:group:facility-1/doctor``.
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Set, Tuple

from authz.catalog import facility_group
from authz.config import FACILITY_GROUP_PREFIX
from authz.models import Operation, UserContext

PRINCIPAL_KINDS = ("role", "group", "user")


@dataclass(frozen=True)
class Grant:
    operation: Operation
    kind: str
    principal: str

    def __post_init__(self):
        if self.kind not in PRINCIPAL_KINDS:
            raise ValueError(f"Unknown principal kind: {self.kind}")
        if not self.principal:
            raise ValueError("Grant principal must not be empty")

    def __str__(self) -> str:
        return f"{self.operation.value}:{self.kind}:{self.principal}"

    @classmethod
    def parse(cls, text: str) -> "Grant":
        parts = text.split(":", 2) if isinstance(text, str) else []
        if len(parts) != 3:
            raise ValueError(f"Malformed grant: {text!r}")
        op = Operation.parse(parts[0])
        if op is None:
            raise ValueError(f"Malformed grant operation: {text!r}")
        return cls(op, parts[1], parts[2])

    # ── Constructors ─────────────────────────────────────────────────

    @classmethod
    def to_role(cls, operation: Operation, role: str) -> "Grant":
        return cls(operation, "role", role)

    @classmethod
    def to_group(cls, operation: Operation, group: str) -> "Grant":
        return cls(operation, "group", group)

    @classmethod
    def to_facility(cls, operation: Operation, facility_id: str, role: Optional[str] = None) -> "Grant":
        group = facility_group(facility_id)
        return cls(operation, "group", f"{group}/{role}" if role else group)

    @classmethod
    def to_user(cls, operation: Operation, user_id: str) -> "Grant":
        return cls(operation, "user", user_id)


def principals_for(user: UserContext) -> Set[Tuple[str, str]]:
    """Every (kind, principal) a user acts as."""
    principals = {("user", user.user_id)}
    if user.role:
        principals.add(("role", user.role))
    if user.facility_id:
        group = facility_group(user.facility_id)
        principals.add(("group", group))
        if user.role:
            principals.add(("group", f"{group}/{user.role}"))
    # Facility groups come only from the resolved facility, never from raw labels.
    for label in user.labels:
        if not label.startswith(FACILITY_GROUP_PREFIX):
            principals.add(("group", label))
    return principals


class GrantSet:
    """Ordered, de-duplicated collection of grants."""

    def __init__(self, grants: Iterable[Grant] = ()):
        seen = []
        for grant in grants:
            if grant not in seen:
                seen.append(grant)
        self._grants: Tuple[Grant, ...] = tuple(seen)

    @classmethod
    def parse(cls, texts: Iterable[str]) -> "GrantSet":
        return cls(Grant.parse(t) for t in texts)

    def __iter__(self) -> Iterator[Grant]:
        return iter(self._grants)

    def __len__(self) -> int:
        return len(self._grants)

    def __contains__(self, grant) -> bool:
        return grant in self._grants

    def __eq__(self, other) -> bool:
        if not isinstance(other, GrantSet):
            return NotImplemented
        return set(self._grants) == set(other._grants)

    def __repr__(self) -> str:
        return f"GrantSet({self.to_list()!r})"

    def grants_for(self, operation: Operation) -> List[Grant]:
        return [g for g in self._grants if g.operation is operation]

    def admits(self, user: UserContext, operation: Operation) -> bool:
        principals = principals_for(user)
        return any((g.kind, g.principal) in principals for g in self.grants_for(operation))

    def to_list(self) -> List[str]:
        return [str(g) for g in self._grants]
