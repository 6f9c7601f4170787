"""
Collection permissions migrator – computes baseline collection grants from
the role catalog and applies them through the storage layer.

Not on the request path; run from scripts/migrate_permissions.py.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from loguru import logger

from authz.catalog import RoleDefinition, SecurityRule
from authz.config import DATABASE_ID, MIGRATION_DRY_RUN
from authz.exceptions import AuthorizationError, InvalidResourceOrOperation, NotFoundError
from authz.grants import Grant, GrantSet
from authz.models import Operation
from authz.validator import role_allows


@dataclass
class ValidationReport:
    known: List[str] = field(default_factory=list)
    unknown: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.missing

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "known": self.known, "unknown": self.unknown, "missing": self.missing}


@dataclass
class MigrationResult:
    resource: str
    dry_run: bool
    old_grants: List[str]
    new_grants: List[str]
    document_security: bool
    applied: bool = False

    @property
    def changed(self) -> bool:
        return set(self.old_grants) != set(self.new_grants)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "dryRun": self.dry_run,
            "oldGrants": self.old_grants,
            "newGrants": self.new_grants,
            "documentSecurity": self.document_security,
            "applied": self.applied,
            "changed": self.changed,
        }


def build_collection_permissions(
    resource: str,
    role_permissions: Mapping[str, RoleDefinition],
    security_rules: SecurityRule,
) -> GrantSet:
    """Collection-wide baseline grants for *resource*.

    All-facility roles get role grants for every operation they are allowed.
    Facility-only roles get role grants too, except that on collections with
    document security their read/update/delete come from per-document grants,
    so only create is granted at collection level.
    """
    ordered = sorted(role_permissions.values(), key=lambda d: (-d.level, d.name))
    grants = []
    for definition in ordered:
        for op in Operation:
            if not role_allows(definition, resource, op):
                continue
            if (
                not definition.all_facilities
                and security_rules.document_security
                and op is not Operation.CREATE
            ):
                continue
            grants.append(Grant.to_role(op, definition.name))
    return GrantSet(grants)


class PermissionsMigrator:
    def __init__(self, config_store, storage, database: str = DATABASE_ID, dry_run: bool = MIGRATION_DRY_RUN):
        self.config_store = config_store
        self.storage = storage
        self.database = database
        self.dry_run = dry_run
        self.migration_log: List[MigrationResult] = []

    # ==================== VALIDATION ====================

    def validate_current_state(self) -> ValidationReport:
        """Compare existing collections with the catalog's resource list."""
        catalog = self.config_store.catalog
        existing = [c["id"] for c in self.storage.list_collections(self.database)]
        report = ValidationReport(
            known=sorted(c for c in existing if catalog.is_resource(c)),
            unknown=sorted(c for c in existing if not catalog.is_resource(c)),
            missing=sorted(r for r in catalog.resources if r not in existing),
        )
        for name in report.missing:
            logger.warning(f"Collection '{name}' not found in database {self.database}")
        for name in report.unknown:
            logger.info(f"Collection '{name}' is not a catalog resource; leaving it alone")
        return report

    # ==================== MIGRATION ====================

    def migrate_collection_permissions(self, resource: str, dry_run: Optional[bool] = None) -> MigrationResult:
        """Compute the target grants and apply them unless running dry."""
        dry_run = self.dry_run if dry_run is None else dry_run
        catalog = self.config_store.catalog
        if not catalog.is_resource(resource):
            raise InvalidResourceOrOperation(f"Unknown resource: {resource}")

        collection = self.storage.get_collection(self.database, resource)
        rule = catalog.security_rule(resource)
        grants = build_collection_permissions(resource, catalog.roles, rule)
        result = MigrationResult(
            resource=resource,
            dry_run=dry_run,
            old_grants=list(collection["grants"]),
            new_grants=grants.to_list(),
            document_security=rule.document_security,
        )

        if dry_run:
            logger.info(f"DRY-RUN: would update {resource} with {len(grants)} grants")
        else:
            self.storage.update_collection(
                self.database, resource, result.new_grants, document_security=rule.document_security
            )
            result.applied = True
            logger.info(f"Updated permissions for collection {resource} ({len(grants)} grants)")

        self.migration_log.append(result)
        return result

    def migrate_all(self, dry_run: Optional[bool] = None) -> List[MigrationResult]:
        """Migrate every existing catalog collection; roll back on failure."""
        dry_run = self.dry_run if dry_run is None else dry_run
        report = self.validate_current_state()
        backup = None if dry_run else self.backup_current_permissions()

        results = []
        for resource in report.known:
            try:
                results.append(self.migrate_collection_permissions(resource, dry_run=dry_run))
            except AuthorizationError as e:
                logger.error(f"Failed to migrate collection {resource}: {e}")
                if backup is not None:
                    logger.info("Attempting automatic rollback")
                    self.rollback(backup)
                raise
        return results

    # ==================== BACKUP / ROLLBACK ====================

    def backup_current_permissions(self, path: Optional[str] = None) -> Dict[str, Any]:
        """Snapshot catalog collections' grants; written to *path* when given."""
        catalog = self.config_store.catalog
        backup: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": self.database,
            "collections": {},
        }
        for collection in self.storage.list_collections(self.database):
            if not catalog.is_resource(collection["id"]):
                continue
            backup["collections"][collection["id"]] = {
                "grants": list(collection["grants"]),
                "documentSecurity": collection["documentSecurity"],
            }
        if path:
            with open(path, "w", encoding="utf-8") as fp:
                json.dump(backup, fp, indent=2)
            logger.info(f"Backup written to {path}")
        return backup

    def rollback(self, backup: Union[str, Mapping[str, Any]]) -> Dict[str, List[str]]:
        """Restore grants from a backup dict or a backup file path."""
        if isinstance(backup, str):
            with open(backup, encoding="utf-8") as fp:
                backup = json.load(fp)

        restored, failed = [], []
        for collection_id, saved in (backup.get("collections") or {}).items():
            try:
                self.storage.update_collection(
                    self.database,
                    collection_id,
                    saved.get("grants") or [],
                    document_security=bool(saved.get("documentSecurity", True)),
                )
                restored.append(collection_id)
            except (NotFoundError, ValueError) as e:
                logger.error(f"Rollback of {collection_id} failed: {e}")
                failed.append(collection_id)
        logger.info(f"Rollback restored {len(restored)} collections, {len(failed)} failed")
        return {"restored": restored, "failed": failed}
