"""
Shared fixtures: a loaded configuration store, an in-memory identity
provider seeded with one user per interesting shape, and a full engine on
in-memory SQLite.
"""

import pytest

from authz.config import DATABASE_ID
from authz.config_store import ConfigurationStore, DictConfigSource
from authz.database import memory_engine
from authz.engine import build_engine
from authz.identity import InMemoryIdentityProvider
from authz.models import IdentityRecord, UserContext
from authz.role_manager import RoleManager
from authz.validator import PermissionValidator

SEED_USERS = [
    ("admin-1", ["administrator"], "active"),
    ("sup-1", ["supervisor", "facility_1"], "active"),
    ("sup-2", ["supervisor", "facility_2"], "active"),
    ("doc-1", ["doctor", "facility_1"], "active"),
    ("doc-2", ["doctor", "facility_2"], "active"),
    ("user-1", ["user", "facility_1"], "active"),
    ("nofac-1", ["doctor"], "active"),
    ("inactive-1", ["doctor", "facility_1"], "blocked"),
    ("conflict-1", ["doctor", "supervisor", "facility_1"], "active"),
    ("nobody-1", [], "active"),
]


def ctx(user_id, role, facility_id=None, active=True):
    """Build a UserContext without going through the identity provider."""
    return UserContext(user_id=user_id, role=role, facility_id=facility_id, active=active)


@pytest.fixture
def config_store():
    store = ConfigurationStore(DictConfigSource())
    store.load()
    return store


@pytest.fixture
def identity():
    return InMemoryIdentityProvider([
        IdentityRecord(id=uid, email=f"{uid}@example.org", labels=list(labels), status=status)
        for uid, labels, status in SEED_USERS
    ])


@pytest.fixture
def role_manager(config_store, identity):
    return RoleManager(config_store, identity)


@pytest.fixture
def validator(role_manager, config_store):
    return PermissionValidator(role_manager, config_store)


@pytest.fixture
def engine():
    """Full engine on in-memory SQLite with seeded users and collections."""
    eng = build_engine(memory_engine(), source=DictConfigSource())
    for uid, labels, status in SEED_USERS:
        eng.identity.add_user(uid, email=f"{uid}@example.org", labels=labels, status=status)
    catalog = eng.config_store.catalog
    for resource in sorted(catalog.resources):
        eng.storage.create_collection(
            DATABASE_ID, resource,
            document_security=catalog.security_rule(resource).document_security,
        )
    return eng
