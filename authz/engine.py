"""
Wiring: builds the configuration store, role manager, validator and the
document/query/migration services around one database engine.
"""

from dataclasses import dataclass
from typing import Optional

from authz.audit import AccessAuditLog
from authz.config import CACHE_SWEEP_INTERVAL_SECONDS, DATABASE_ID
from authz.config_store import ConfigurationStore
from authz.database import init_engine
from authz.document_security import DocumentSecurity
from authz.identity import SqlIdentityProvider
from authz.migrator import PermissionsMigrator
from authz.queries import FacilityScopedQueries
from authz.role_manager import RoleManager
from authz.storage import SqlDocumentStore
from authz.validator import PermissionValidator


@dataclass
class AuthorizationEngine:
    config_store: ConfigurationStore
    identity: object
    storage: SqlDocumentStore
    role_manager: RoleManager
    validator: PermissionValidator
    documents: DocumentSecurity
    queries: FacilityScopedQueries
    migrator: PermissionsMigrator
    audit_log: AccessAuditLog
    database: str = DATABASE_ID

    def start_sweepers(self, interval: float = CACHE_SWEEP_INTERVAL_SECONDS) -> None:
        self.role_manager.cache.start_sweeper(interval)
        self.validator.cache.start_sweeper(interval)

    def stop_sweepers(self) -> None:
        self.role_manager.cache.stop_sweeper()
        self.validator.cache.stop_sweeper()


def build_engine(
    db_engine=None,
    source=None,
    identity=None,
    storage=None,
    database: str = DATABASE_ID,
    audit: bool = True,
    start_sweepers: bool = False,
) -> AuthorizationEngine:
    """Load configuration (fatal on error) and assemble the services."""
    if db_engine is None and (identity is None or storage is None):
        db_engine = init_engine()

    config_store = ConfigurationStore(source)
    catalog = config_store.load()

    if identity is None:
        identity = SqlIdentityProvider(db_engine)
    if storage is None:
        storage = SqlDocumentStore(
            db_engine,
            facility_fields={r: catalog.security_rule(r).facility_field for r in catalog.resources},
        )

    role_manager = RoleManager(config_store, identity)
    validator = PermissionValidator(role_manager, config_store)
    audit_log = AccessAuditLog(storage, database=database, enabled=audit)
    engine = AuthorizationEngine(
        config_store=config_store,
        identity=identity,
        storage=storage,
        role_manager=role_manager,
        validator=validator,
        documents=DocumentSecurity(validator, storage, audit_log, database=database),
        queries=FacilityScopedQueries(validator, storage, database=database),
        migrator=PermissionsMigrator(config_store, storage, database=database),
        audit_log=audit_log,
        database=database,
    )
    if start_sweepers:
        engine.start_sweepers()
    return engine
