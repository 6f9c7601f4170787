"""
Document-level security: grants written onto new documents and the access
check run before reads and mutations of a single document.

Every update/delete grant is derived from PermissionValidator.evaluate for
the role at the document's facility, so the stored grants and the later
check cannot disagree.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger

from authz.config import DATABASE_ID
from authz.exceptions import (
    FacilityRestriction,
    InvalidResourceOrOperation,
    InvalidUserContext,
    PermissionDenied,
)
from authz.grants import Grant, GrantSet
from authz.models import Operation, PermissionDecision, ResourceContext, StoredDocument, UserContext
from authz.role_manager import normalize_facility_id
from authz.validator import (
    REASON_FACILITY_RESTRICTION,
    REASON_INVALID_RESOURCE,
    REASON_INVALID_USER_CONTEXT,
    PermissionValidator,
)

REASON_INVALID_DOCUMENT_FACILITY = "invalid_document_facility"
REASON_DOCUMENT_GRANT_MISSING = "document_grant_missing"

WRITE_OPERATIONS = (Operation.UPDATE, Operation.DELETE)


def _raise_for(decision: PermissionDecision, message: str):
    if decision.reason == REASON_FACILITY_RESTRICTION:
        raise FacilityRestriction(message)
    if decision.reason == REASON_INVALID_USER_CONTEXT:
        raise InvalidUserContext(message)
    if decision.reason == REASON_INVALID_RESOURCE:
        raise InvalidResourceOrOperation(message)
    raise PermissionDenied(message, reason=decision.reason)


class DocumentSecurity:
    def __init__(self, validator: PermissionValidator, storage=None, audit_log=None, database: str = DATABASE_ID):
        self.validator = validator
        self.role_manager = validator.role_manager
        self.config_store = validator.config_store
        self.storage = storage
        self.audit_log = audit_log
        self.database = database

    # ── Facility helpers ─────────────────────────────────────────────

    def facility_field(self, resource: str) -> str:
        return self.config_store.catalog.security_rule(resource).facility_field

    def document_facility(self, resource: str, document: StoredDocument) -> Optional[str]:
        """Facility a stored document belongs to; None when absent or unparseable."""
        field = self.facility_field(resource)
        if field == "id":
            return normalize_facility_id(document.id)
        value = document.data.get(field)
        if value is None:
            value = document.facility_id
        return normalize_facility_id(value)

    def _target_facility(self, user: UserContext, resource: str, data: Mapping[str, Any]) -> Optional[str]:
        field = self.facility_field(resource)
        requested = normalize_facility_id(data.get(field)) if field != "id" else normalize_facility_id(data.get("id"))
        definition = self.role_manager.role_definition(user)
        if definition is not None and definition.all_facilities and requested is not None:
            return requested
        if requested is not None and requested != normalize_facility_id(user.facility_id):
            raise FacilityRestriction("Cannot create documents for another facility")
        return normalize_facility_id(user.facility_id)

    # ── Grants ───────────────────────────────────────────────────────

    def generate_document_permissions(
        self, user: UserContext, resource: str, new_document: Mapping[str, Any]
    ) -> GrantSet:
        """Grants for a document *user* is about to create in *resource*."""
        facility_id = self._target_facility(user, resource, new_document)
        context = ResourceContext(facility_id=facility_id)

        decision = self.validator.evaluate(user, resource, Operation.CREATE, context)
        if not decision.allowed:
            _raise_for(decision, f"Cannot create documents in {resource}")

        grants = self._shared_grants(resource, facility_id)
        grants.append(Grant.to_user(Operation.READ, user.user_id))
        if self.validator.evaluate(user, resource, Operation.UPDATE, context).allowed:
            grants.append(Grant.to_user(Operation.UPDATE, user.user_id))
        return GrantSet(grants)

    def _shared_grants(self, resource: str, facility_id: Optional[str]) -> List[Grant]:
        """Role and facility-group grants for a document at *facility_id*."""
        catalog = self.config_store.catalog
        context = ResourceContext(facility_id=facility_id)
        admin = catalog.administrator_role
        grants = [Grant.to_role(op, admin) for op in (Operation.READ, Operation.UPDATE, Operation.DELETE)]

        if facility_id is not None:
            grants.append(Grant.to_facility(Operation.READ, facility_id))

        for role in catalog.role_names():
            definition = catalog.get(role)
            if definition.all_facilities:
                for op in (Operation.READ,) + WRITE_OPERATIONS:
                    if self.validator.role_allows(role, resource, op):
                        grants.append(Grant.to_role(op, role))
                continue
            if facility_id is None:
                continue
            member = UserContext(user_id=f"role:{role}", role=role, facility_id=facility_id)
            for op in WRITE_OPERATIONS:
                if self.validator.evaluate(member, resource, op, context).allowed:
                    grants.append(Grant.to_facility(op, facility_id, role))
        return grants

    def regrant_for_facility(self, resource: str, document: StoredDocument, facility_id: str) -> GrantSet:
        """Grants for *document* after it moves to *facility_id*; user grants are kept."""
        try:
            kept = [g for g in GrantSet.parse(document.grants) if g.kind == "user"]
        except ValueError as e:
            logger.warning(f"Dropping malformed grants on {resource}/{document.id}: {e}")
            kept = []
        return GrantSet(self._shared_grants(resource, facility_id) + kept)

    # ── Access checks ────────────────────────────────────────────────

    def check_document_access(
        self,
        user: Optional[UserContext],
        document: StoredDocument,
        operation,
        resource: Optional[str] = None,
    ) -> PermissionDecision:
        """Decide whether *user* may perform *operation* on a stored document.

        Pure decision: nothing is written. Callers that act on the decision
        record it with audit().
        """
        return self._check(user, document, operation, resource or document.collection)

    def audit(self, user, resource: str, operation, decision: PermissionDecision, document_id=None) -> None:
        if self.audit_log is not None:
            self.audit_log.record(user, resource, operation, decision, document_id=document_id)

    def _check(self, user, document, operation, resource) -> PermissionDecision:
        definition = self.role_manager.role_definition(user)
        if definition is None:
            return PermissionDecision.deny(REASON_INVALID_USER_CONTEXT)
        if definition.is_unrestricted:
            return self.validator.check_permission(user.user_id, resource, operation, user_context=user)

        facility_id = self.document_facility(resource, document)
        if facility_id is None:
            logger.warning(f"Document {resource}/{document.id} has no usable facility; denying {user.user_id}")
            return PermissionDecision.deny(REASON_INVALID_DOCUMENT_FACILITY, documentId=document.id)

        decision = self.validator.check_permission(
            user.user_id, resource, operation,
            user_context=user, resource_context=ResourceContext(facility_id=facility_id),
        )
        if not decision.allowed or not document.grants:
            return decision

        try:
            grants = GrantSet.parse(document.grants)
        except ValueError as e:
            logger.warning(f"Document {resource}/{document.id} carries malformed grants: {e}")
            return PermissionDecision.deny(REASON_DOCUMENT_GRANT_MISSING, documentId=document.id)
        if not grants.admits(user, Operation.parse(operation)):
            logger.warning(f"No stored grant admits {user.user_id} to {operation} {resource}/{document.id}")
            return PermissionDecision.deny(REASON_DOCUMENT_GRANT_MISSING, documentId=document.id)
        return decision

    # ── Secure writes ────────────────────────────────────────────────

    def prepare_document(self, user: UserContext, resource: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        """Stamp facility and creator/updater metadata onto new document data."""
        prepared = dict(data)
        field = self.facility_field(resource)
        if field != "id":
            prepared[field] = self._target_facility(user, resource, data)
        now = datetime.now(timezone.utc).isoformat()
        prepared["createdBy"] = user.user_id
        prepared["createdAt"] = now
        prepared["updatedBy"] = user.user_id
        prepared["updatedAt"] = now
        return prepared

    def create_document(
        self,
        user: UserContext,
        resource: str,
        data: Mapping[str, Any],
        document_id: Optional[str] = None,
    ) -> StoredDocument:
        document_id = document_id or (data.get("id") if self.facility_field(resource) == "id" else None)
        prepared = self.prepare_document(user, resource, data)
        grants = self.generate_document_permissions(user, resource, prepared)
        document = self.storage.create_document(
            self.database, resource, str(document_id or uuid.uuid4().hex), prepared, grants.to_list()
        )
        logger.info(f"{user.user_id} created {resource}/{document.id} with {len(grants)} grants")
        return document

    def update_document(
        self, user: UserContext, resource: str, document_id: str, changes: Mapping[str, Any]
    ) -> StoredDocument:
        document = self.storage.get_document(self.database, resource, document_id)
        decision = self.check_document_access(user, document, Operation.UPDATE, resource)
        self.audit(user, resource, Operation.UPDATE, decision, document_id=document.id)
        if not decision.allowed:
            _raise_for(decision, f"Cannot update {resource}/{document_id}")

        grants = None
        field = self.facility_field(resource)
        if field != "id" and field in changes:
            target = normalize_facility_id(changes[field])
            if target != self.document_facility(resource, document):
                definition = self.role_manager.role_definition(user)
                if target is None or not definition.all_facilities:
                    raise FacilityRestriction("Cannot move documents to another facility")
                grants = self.regrant_for_facility(resource, document, target).to_list()
                logger.info(f"{user.user_id} moved {resource}/{document_id} to facility {target}")

        updated = dict(document.data)
        updated.update(changes)
        updated["updatedBy"] = user.user_id
        updated["updatedAt"] = datetime.now(timezone.utc).isoformat()
        return self.storage.update_document(self.database, resource, document_id, updated, grants=grants)

    def delete_document(self, user: UserContext, resource: str, document_id: str) -> None:
        document = self.storage.get_document(self.database, resource, document_id)
        decision = self.check_document_access(user, document, Operation.DELETE, resource)
        self.audit(user, resource, Operation.DELETE, decision, document_id=document.id)
        if not decision.allowed:
            _raise_for(decision, f"Cannot delete {resource}/{document_id}")
        self.storage.delete_document(self.database, resource, document_id)
        logger.info(f"{user.user_id} deleted {resource}/{document_id}")

    def get_document_security_info(self, resource: str, document_id: str) -> Dict[str, Any]:
        document = self.storage.get_document(self.database, resource, document_id)
        return {
            "facilityId": self.document_facility(resource, document),
            "createdBy": document.data.get("createdBy"),
            "createdAt": document.data.get("createdAt"),
            "updatedBy": document.data.get("updatedBy"),
            "updatedAt": document.data.get("updatedAt"),
            "grants": list(document.grants),
        }
