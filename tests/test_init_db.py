"""
Tests for the database initialisation script.
"""

from authz.config import DATABASE_ID
from authz.database import memory_engine, missing_tables
from authz.defaults import RESOURCES
from authz.identity import SqlIdentityProvider
from authz.storage import SqlDocumentStore
from scripts import init_db


def test_init_db_creates_collections_and_admin(capsys):
    db = memory_engine()
    assert init_db.main(["--admin", "root", "--email", "root@example.org"], db_engine=db) == 0

    assert missing_tables(db) == []
    collections = {c["id"]: c for c in SqlDocumentStore(db).list_collections(DATABASE_ID)}
    assert set(collections) == set(RESOURCES)
    assert collections["vaccines"]["documentSecurity"] is False
    assert SqlIdentityProvider(db).get_user("root").labels == ["administrator"]
    assert "Administrator created: root" in capsys.readouterr().out


def test_init_db_is_rerunnable_but_admin_is_unique(capsys):
    db = memory_engine()
    assert init_db.main([], db_engine=db) == 0
    assert init_db.main(["--admin", "root"], db_engine=db) == 0
    capsys.readouterr()

    assert init_db.main(["--admin", "root"], db_engine=db) == 1
    captured = capsys.readouterr()
    assert "Collection created" not in captured.out
    assert "Could not create administrator" in captured.err
