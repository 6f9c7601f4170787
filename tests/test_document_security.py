"""
Tests for DocumentSecurity – grant generation, the document access check
and the secure create/update/delete helpers.
"""

import pytest

from authz.audit import AccessAuditLog
from authz.config import AUDIT_COLLECTION, DATABASE_ID
from authz.document_security import DocumentSecurity
from authz.exceptions import FacilityRestriction, NetworkError, NotFoundError, PermissionDenied
from authz.grants import Grant, GrantSet
from authz.models import Operation, PermissionDecision, ResourceContext, StoredDocument

from conftest import ctx

ADMIN = ctx("admin-1", "administrator")
DOCTOR_1 = ctx("doc-1", "doctor", "1")
DOCTOR_2 = ctx("doc-2", "doctor", "2")
SUPERVISOR_1 = ctx("sup-1", "supervisor", "1")
USER_1 = ctx("user-1", "user", "1")


# ── Helpers / Fakes ──────────────────────────────────────────────────

class FailingStorage:
    def create_document(self, *args, **kwargs):
        raise NetworkError("storage unreachable")


class RecordingStorage:
    """Storage that only remembers what was asked of it."""
    def __init__(self):
        self.calls = []

    def create_document(self, *args, **kwargs):
        self.calls.append(("create_document", args))

    def update_document(self, *args, **kwargs):
        self.calls.append(("update_document", args))


def new_document_for(resource, facility_id="1"):
    if resource == "facilities":
        return {"id": facility_id, "name": "Clinic"}
    return {"facilityId": facility_id}


# ── Tests: grant generation ──────────────────────────────────────────

def test_doctor_grants(validator):
    security = DocumentSecurity(validator)
    grants = security.generate_document_permissions(DOCTOR_1, "patients", {"name": "A"})
    assert set(grants.to_list()) == {
        "read:role:administrator",
        "update:role:administrator",
        "delete:role:administrator",
        "read:group:facility-1",
        "update:group:facility-1/supervisor",
        "update:group:facility-1/doctor",
        "read:user:doc-1",
        "update:user:doc-1",
    }


def test_creator_may_not_target_other_facility(validator):
    security = DocumentSecurity(validator)
    with pytest.raises(FacilityRestriction):
        security.generate_document_permissions(DOCTOR_1, "patients", {"facilityId": "2"})


def test_creator_needs_create_permission(validator):
    security = DocumentSecurity(validator)
    with pytest.raises(PermissionDenied):
        security.generate_document_permissions(USER_1, "patients", {})


def test_administrator_may_target_any_facility(validator):
    grants = DocumentSecurity(validator).generate_document_permissions(ADMIN, "patients", {"facilityId": "9"})
    assert Grant.to_facility(Operation.READ, "9") in grants


def test_grants_match_checks_for_every_role_and_resource(validator, config_store):
    """A role is granted update/delete exactly when the check allows it."""
    security = DocumentSecurity(validator)
    catalog = config_store.catalog
    for resource in sorted(catalog.resources):
        grants = security.generate_document_permissions(ADMIN, resource, new_document_for(resource))
        for role in catalog.role_names():
            member = ctx(f"member-{role}", role, "1")
            for op in (Operation.UPDATE, Operation.DELETE):
                allowed = validator.evaluate(member, resource, op, ResourceContext("1")).allowed
                assert grants.admits(member, op) == allowed, (resource, role, op)


def test_grants_never_exceed_creator_role(validator, config_store):
    security = DocumentSecurity(validator)
    for resource in sorted(config_store.catalog.resources):
        try:
            grants = security.generate_document_permissions(DOCTOR_1, resource, {})
        except PermissionDenied:
            continue
        for op in (Operation.UPDATE, Operation.DELETE):
            if grants.admits(DOCTOR_1, op):
                assert validator.evaluate(DOCTOR_1, resource, op, ResourceContext("1")).allowed


# ── Tests: document access ───────────────────────────────────────────

def stored(data, grants=(), document_id="d1", collection="patients"):
    return StoredDocument(id=document_id, collection=collection, data=data, grants=list(grants))


def test_missing_or_unparseable_facility_fails_closed(validator, config_store):
    security = DocumentSecurity(validator)
    documents = [stored({}), stored({"facilityId": None}), stored({"facilityId": "   "}), stored({"facilityId": {}})]
    for document in documents:
        for role in config_store.catalog.role_names():
            if role == "administrator":
                continue
            user = ctx(f"u-{role}", role, "1")
            decision = security.check_document_access(user, document, "read")
            assert not decision.allowed
            assert decision.reason == "invalid_document_facility"


def test_administrator_always_passes(validator):
    security = DocumentSecurity(validator)
    assert security.check_document_access(ADMIN, stored({}), "delete").allowed
    assert security.check_document_access(ADMIN, stored({"facilityId": "7"}, ["read:user:x"]), "update").allowed


def test_facility_match_required(validator):
    security = DocumentSecurity(validator)
    document = stored({"facilityId": "1"})
    assert security.check_document_access(DOCTOR_1, document, "read").allowed
    decision = security.check_document_access(DOCTOR_2, document, "read")
    assert decision.reason == "facility access restriction"


def test_stored_grants_must_admit_user(validator):
    security = DocumentSecurity(validator)
    document = stored({"facilityId": "1"}, ["read:user:someone-else"])
    decision = security.check_document_access(DOCTOR_1, document, "read")
    assert decision.reason == "document_grant_missing"


def test_malformed_grants_deny(validator):
    security = DocumentSecurity(validator)
    decision = security.check_document_access(DOCTOR_1, stored({"facilityId": "1"}, ["garbage"]), "read")
    assert decision.reason == "document_grant_missing"


def test_facility_documents_use_their_id(validator):
    security = DocumentSecurity(validator)
    facility = stored({"name": "Clinic"}, document_id="1", collection="facilities")
    assert security.check_document_access(DOCTOR_1, facility, "read").allowed
    assert not security.check_document_access(DOCTOR_2, facility, "read").allowed


# ── Tests: secure writes (SQLite) ────────────────────────────────────

def test_create_and_check_round_trip(engine):
    docs = engine.documents
    patient = docs.create_document(DOCTOR_1, "patients", {"name": "Ada"})

    assert patient.facility_id == "1"
    assert patient.data["createdBy"] == "doc-1"
    assert "update:group:facility-1/doctor" in patient.grants

    assert docs.check_document_access(DOCTOR_1, patient, "read").allowed
    assert docs.check_document_access(USER_1, patient, "read").allowed
    assert docs.check_document_access(SUPERVISOR_1, patient, "update").allowed
    assert not docs.check_document_access(USER_1, patient, "update").allowed
    assert not docs.check_document_access(DOCTOR_2, patient, "read").allowed


def test_update_document(engine):
    docs = engine.documents
    patient = docs.create_document(DOCTOR_1, "patients", {"name": "Ada"})

    updated = docs.update_document(SUPERVISOR_1, "patients", patient.id, {"name": "Ada L."})
    assert updated.data["name"] == "Ada L."
    assert updated.data["updatedBy"] == "sup-1"
    assert updated.grants == patient.grants

    with pytest.raises(PermissionDenied):
        docs.update_document(USER_1, "patients", patient.id, {"name": "x"})
    with pytest.raises(FacilityRestriction):
        docs.update_document(DOCTOR_2, "patients", patient.id, {"name": "x"})
    with pytest.raises(FacilityRestriction):
        docs.update_document(DOCTOR_1, "patients", patient.id, {"facilityId": "2"})


def test_administrator_moves_document_with_its_grants(engine):
    docs = engine.documents
    patient = docs.create_document(DOCTOR_1, "patients", {"name": "Ada"})

    moved = docs.update_document(ADMIN, "patients", patient.id, {"facilityId": "2"})
    assert moved.facility_id == "2"
    assert "update:group:facility-2/doctor" in moved.grants
    assert not any("facility-1" in g for g in moved.grants)
    assert "read:user:doc-1" in moved.grants

    assert docs.check_document_access(DOCTOR_2, moved, "update").allowed
    assert not docs.check_document_access(DOCTOR_1, moved, "read").allowed
    updated = docs.update_document(DOCTOR_2, "patients", patient.id, {"name": "Ada L."})
    assert updated.data["name"] == "Ada L."


def test_documents_cannot_move_to_a_blank_facility(engine):
    docs = engine.documents
    patient = docs.create_document(DOCTOR_1, "patients", {"name": "Ada"})

    with pytest.raises(FacilityRestriction):
        docs.update_document(ADMIN, "patients", patient.id, {"facilityId": "  "})
    stored_patient = engine.storage.get_document(DATABASE_ID, "patients", patient.id)
    assert stored_patient.facility_id == "1"
    assert stored_patient.grants == patient.grants


def test_delete_document(engine):
    docs = engine.documents
    patient = docs.create_document(DOCTOR_1, "patients", {"name": "Ada"})

    with pytest.raises(PermissionDenied) as e:
        docs.delete_document(DOCTOR_1, "patients", patient.id)
    assert e.value.reason == "delete operation not permitted"

    docs.delete_document(ADMIN, "patients", patient.id)
    with pytest.raises(NotFoundError):
        engine.storage.get_document(DATABASE_ID, "patients", patient.id)


def test_create_facility_uses_id(engine):
    facility = engine.documents.create_document(ADMIN, "facilities", {"id": "3", "name": "North"})
    assert facility.id == "3"
    assert facility.facility_id == "3"
    assert engine.documents.check_document_access(ctx("d3", "doctor", "3"), facility, "read").allowed


def test_security_info(engine):
    patient = engine.documents.create_document(DOCTOR_1, "patients", {"name": "Ada"})
    info = engine.documents.get_document_security_info("patients", patient.id)
    assert info["facilityId"] == "1"
    assert info["createdBy"] == "doc-1"
    assert GrantSet.parse(info["grants"]) == GrantSet.parse(patient.grants)


# ── Tests: audit log ─────────────────────────────────────────────────

def test_refused_update_is_audited(engine):
    patient = engine.documents.create_document(DOCTOR_1, "patients", {"name": "Ada"})
    with pytest.raises(FacilityRestriction):
        engine.documents.update_document(DOCTOR_2, "patients", patient.id, {"name": "x"})

    entries = engine.storage.list_documents(DATABASE_ID, AUDIT_COLLECTION, [{"field": "userId", "value": "doc-2"}])
    assert len(entries) == 1
    assert entries[0].data["allowed"] is False
    assert entries[0].data["reason"] == "facility access restriction"
    assert entries[0].data["operation"] == "update"
    assert entries[0].data["documentId"] == patient.id


def test_access_check_writes_nothing(validator):
    storage = RecordingStorage()
    security = DocumentSecurity(validator, storage=storage, audit_log=AccessAuditLog(storage))
    document = stored({"facilityId": "1"})

    for user in (DOCTOR_1, DOCTOR_2, ADMIN):
        security.check_document_access(user, document, "read")
    assert storage.calls == []

    security.audit(DOCTOR_1, "patients", "read", PermissionDecision.deny("x"), document_id=document.id)
    assert [name for name, _ in storage.calls] == ["create_document"]


def test_audit_failures_never_change_decisions():
    log = AccessAuditLog(FailingStorage())
    decision = PermissionDecision.deny("facility access restriction")
    assert log.record(DOCTOR_1, "patients", "read", decision, document_id="d1") is None


def test_disabled_audit_log_writes_nothing():
    log = AccessAuditLog(FailingStorage(), enabled=False)
    assert log.record(DOCTOR_1, "patients", "read", PermissionDecision.deny("x")) is None
