"""
Tests for the collection permissions migrator and its CLI.
"""

import json

import pytest

from authz.config import DATABASE_ID
from authz.exceptions import InvalidResourceOrOperation, NetworkError
from authz.migrator import PermissionsMigrator, build_collection_permissions
from scripts import migrate_permissions


# ── Helpers / Fakes ──────────────────────────────────────────────────

class RecordingStorage:
    """In-memory collections; counts update_collection calls."""
    def __init__(self, collections, fail_on=None):
        self.collections = {
            cid: {"id": cid, "name": cid, "grants": list(grants), "documentSecurity": True, "enabled": True}
            for cid, grants in collections.items()
        }
        self.updates = []
        self.fail_on = fail_on

    def list_collections(self, database):
        return [dict(c) for _, c in sorted(self.collections.items())]

    def get_collection(self, database, collection_id):
        return dict(self.collections[collection_id])

    def update_collection(self, database, collection_id, grants, document_security=None, name=None):
        if collection_id == self.fail_on:
            self.fail_on = None
            raise NetworkError("storage unreachable")
        self.updates.append(collection_id)
        self.collections[collection_id]["grants"] = list(grants)
        if document_security is not None:
            self.collections[collection_id]["documentSecurity"] = document_security
        return dict(self.collections[collection_id])


# ── Tests: grant computation ─────────────────────────────────────────

def test_document_secured_collection_grants(config_store):
    catalog = config_store.catalog
    grants = build_collection_permissions("patients", catalog.roles, catalog.security_rule("patients"))
    assert set(grants.to_list()) == {
        "create:role:administrator",
        "read:role:administrator",
        "update:role:administrator",
        "delete:role:administrator",
        "create:role:supervisor",
        "create:role:doctor",
    }


def test_plain_collection_grants(config_store):
    catalog = config_store.catalog
    grants = build_collection_permissions("vaccines", catalog.roles, catalog.security_rule("vaccines"))
    listed = set(grants.to_list())
    assert {"read:role:supervisor", "update:role:supervisor", "read:role:doctor", "read:role:user"} <= listed
    assert "update:role:doctor" not in listed
    assert not any(g.startswith("delete:") and not g.endswith(":administrator") for g in listed)


# ── Tests: validation / migration ────────────────────────────────────

def test_validate_current_state(config_store):
    storage = RecordingStorage({"patients": [], "legacy_stuff": []})
    report = PermissionsMigrator(config_store, storage).validate_current_state()
    assert report.known == ["patients"]
    assert report.unknown == ["legacy_stuff"]
    assert "vaccines" in report.missing
    assert not report.valid


def test_dry_run_writes_nothing_and_matches_wet_run(config_store):
    dry_storage = RecordingStorage({"patients": ["read:any"], "vaccines": []})
    dry = PermissionsMigrator(config_store, dry_storage).migrate_all(dry_run=True)
    assert dry_storage.updates == []
    assert all(not r.applied for r in dry)

    wet_storage = RecordingStorage({"patients": ["read:any"], "vaccines": []})
    wet = PermissionsMigrator(config_store, wet_storage).migrate_all(dry_run=False)
    assert sorted(wet_storage.updates) == ["patients", "vaccines"]
    assert [set(r.new_grants) for r in dry] == [set(r.new_grants) for r in wet]
    assert set(wet_storage.collections["patients"]["grants"]) == set(wet[0].new_grants)


def test_dry_run_is_idempotent(config_store):
    storage = RecordingStorage({"patients": []})
    migrator = PermissionsMigrator(config_store, storage)
    first = migrator.migrate_collection_permissions("patients", dry_run=True)
    second = migrator.migrate_collection_permissions("patients", dry_run=True)
    assert first.new_grants == second.new_grants
    assert storage.updates == []
    assert len(migrator.migration_log) == 2


def test_unknown_resource_is_rejected(config_store):
    migrator = PermissionsMigrator(config_store, RecordingStorage({}))
    with pytest.raises(InvalidResourceOrOperation):
        migrator.migrate_collection_permissions("bogus")


def test_failed_migration_rolls_back(config_store):
    storage = RecordingStorage({"patients": ["read:any"], "vaccines": ["read:any"]}, fail_on="vaccines")
    migrator = PermissionsMigrator(config_store, storage)

    with pytest.raises(NetworkError):
        migrator.migrate_all(dry_run=False)

    assert storage.collections["patients"]["grants"] == ["read:any"]
    assert storage.collections["vaccines"]["grants"] == ["read:any"]


def test_backup_and_rollback_file(config_store, tmp_path):
    storage = RecordingStorage({"patients": ["read:any"], "legacy": ["read:any"]})
    migrator = PermissionsMigrator(config_store, storage)
    path = tmp_path / "backup.json"

    backup = migrator.backup_current_permissions(str(path))
    assert list(backup["collections"]) == ["patients"]
    assert json.loads(path.read_text())["collections"]["patients"]["grants"] == ["read:any"]

    migrator.migrate_collection_permissions("patients", dry_run=False)
    assert storage.collections["patients"]["grants"] != ["read:any"]

    outcome = migrator.rollback(str(path))
    assert outcome == {"restored": ["patients"], "failed": []}
    assert storage.collections["patients"]["grants"] == ["read:any"]


# ── Tests: SQLite + CLI ──────────────────────────────────────────────

def test_migrate_all_on_sqlite(engine):
    results = engine.migrator.migrate_all(dry_run=False)
    assert len(results) == len(engine.config_store.catalog.resources)
    stored = engine.storage.get_collection(DATABASE_ID, "patients")
    assert "create:role:doctor" in stored["grants"]


def test_cli_dry_run(engine, capsys):
    assert migrate_permissions.main(["--dry-run"], engine=engine) == 0
    out = capsys.readouterr().out
    assert "DRY-RUN" in out
    assert "create:role:doctor" in out
    assert engine.storage.get_collection(DATABASE_ID, "patients")["grants"] == []


def test_cli_single_collection_with_backup_and_rollback(engine, tmp_path):
    path = str(tmp_path / "backup.json")
    assert migrate_permissions.main(["--collection", "patients", "--backup", path], engine=engine) == 0
    assert engine.storage.get_collection(DATABASE_ID, "patients")["grants"] != []

    assert migrate_permissions.main(["--rollback", path], engine=engine) == 0
    assert engine.storage.get_collection(DATABASE_ID, "patients")["grants"] == []


def test_cli_unknown_collection_fails(engine, capsys):
    assert migrate_permissions.main(["--collection", "bogus"], engine=engine) == 1
    assert "Migration failed" in capsys.readouterr().err
