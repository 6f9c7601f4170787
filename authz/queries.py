"""
Facility-scoped queries: list/read requests are rewritten so that
facility-only roles can never see another facility's documents.
"""

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from loguru import logger

from authz.config import DATABASE_ID, QUERY_DEFAULT_LIMIT, QUERY_MAX_LIMIT
from authz.exceptions import InvalidResourceOrOperation, InvalidUserContext, PermissionDenied
from authz.models import Operation, QueryDescriptor, QueryFilter, Scope, UserContext
from authz.role_manager import normalize_facility_id
from authz.validator import REASON_INVALID_USER_CONTEXT, PermissionValidator

RawFilters = Union[None, Mapping[str, Any], Iterable[Any]]


# ── Helper functions ─────────────────────────────────────────────────

def normalize_filters(raw_filters: RawFilters) -> List[QueryFilter]:
    """Accept ``{field: value}``, QueryFilter objects or ``{"field", "value"}`` dicts."""
    if raw_filters is None:
        return []
    if isinstance(raw_filters, Mapping):
        return [QueryFilter(str(k), v) for k, v in raw_filters.items()]
    filters = []
    for item in raw_filters:
        if isinstance(item, QueryFilter):
            filters.append(item)
        elif isinstance(item, Mapping) and "field" in item:
            filters.append(QueryFilter(str(item["field"]), item.get("value")))
        else:
            raise InvalidResourceOrOperation(f"Unsupported filter: {item!r}")
    return filters


def clamp_limit(limit: Optional[int]) -> int:
    """Default to QUERY_DEFAULT_LIMIT and never exceed QUERY_MAX_LIMIT."""
    try:
        value = int(limit) if limit is not None else QUERY_DEFAULT_LIMIT
    except (TypeError, ValueError):
        value = QUERY_DEFAULT_LIMIT
    if value < 1:
        value = QUERY_DEFAULT_LIMIT
    return min(value, QUERY_MAX_LIMIT)


# ── Query builder ────────────────────────────────────────────────────

class FacilityScopedQueries:
    def __init__(self, validator: PermissionValidator, storage=None, database: str = DATABASE_ID):
        self.validator = validator
        self.role_manager = validator.role_manager
        self.config_store = validator.config_store
        self.storage = storage
        self.database = database

    def build_secure_query(
        self,
        user: Optional[UserContext],
        resource: str,
        raw_filters: RawFilters = None,
        limit: Optional[int] = None,
        offset: int = 0,
        order_by: Optional[str] = None,
    ) -> QueryDescriptor:
        """Caller filters plus, for facility-only roles, the facility filter."""
        catalog = self.config_store.catalog
        definition = self.role_manager.role_definition(user)
        if definition is None:
            raise InvalidUserContext("Could not determine user role")
        if not catalog.is_resource(resource):
            raise InvalidResourceOrOperation(f"Unknown resource: {resource}")

        decision = self.validator.evaluate(user, resource, Operation.READ)
        if not decision.allowed:
            if decision.reason == REASON_INVALID_USER_CONTEXT:
                raise InvalidUserContext("User has no facility assigned")
            raise PermissionDenied(f"Cannot read {resource}", reason=decision.reason)

        filters = normalize_filters(raw_filters)
        if definition.all_facilities:
            scope = Scope.ALL_FACILITIES
        else:
            scope = Scope.OWN_FACILITY
            field = catalog.security_rule(resource).facility_field
            facility_filter = QueryFilter(field, normalize_facility_id(user.facility_id))
            if facility_filter not in filters:
                filters.append(facility_filter)

        return QueryDescriptor(
            resource=resource,
            filters=tuple(filters),
            scope=scope,
            limit=clamp_limit(limit),
            offset=max(0, int(offset or 0)),
            order_by=order_by,
        )

    def execute_secure_query(self, storage, database: str, collection: str, descriptor: QueryDescriptor):
        return storage.list_documents(
            database,
            collection,
            descriptor.filters,
            limit=descriptor.limit,
            offset=descriptor.offset,
            order_by=descriptor.order_by,
        )

    def query_for_user(
        self,
        user_id: str,
        resource: str,
        raw_filters: RawFilters = None,
        limit: Optional[int] = None,
        offset: int = 0,
        order_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Resolve the user, build the scoped query and run it."""
        user = self.role_manager.get_user_context(user_id)
        descriptor = self.build_secure_query(user, resource, raw_filters, limit, offset, order_by)
        docs = self.execute_secure_query(self.storage, self.database, resource, descriptor)
        logger.debug(
            f"Query on {resource} for {user_id}: {len(descriptor.filters)} filters, {len(docs)} results"
        )
        return {
            "documents": [d.to_dict() for d in docs],
            "total": len(docs),
            "query": descriptor.to_dict(),
            "facilityScope": descriptor.scope.value,
        }
