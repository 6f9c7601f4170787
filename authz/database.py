"""
Database engine initialisation and table definitions for the identity and
document stores.
"""

import sys
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    create_engine,
    inspect,
    text,
)
from sqlalchemy.pool import StaticPool

from authz.config import get_env

metadata = MetaData()

portal_users = Table(
    "portal_users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(255)),
    Column("labels", JSON, nullable=False, default=list),
    Column("status", String(32), nullable=False, default="active"),
)

collections = Table(
    "collections",
    metadata,
    Column("database_id", String(64), primary_key=True),
    Column("collection_id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("grants", JSON, nullable=False, default=list),
    Column("document_security", Boolean, nullable=False, default=True),
    Column("enabled", Boolean, nullable=False, default=True),
)

documents = Table(
    "documents",
    metadata,
    Column("database_id", String(64), primary_key=True),
    Column("collection_id", String(64), primary_key=True),
    Column("document_id", String(64), primary_key=True),
    Column("facility_id", String(64), index=True),
    Column("data", JSON, nullable=False),
    Column("grants", JSON, nullable=False, default=list),
    Column("created_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
)


def init_engine(db_uri: Optional[str] = None):
    """Create a SQLAlchemy engine and verify the connection."""
    db_uri = db_uri or get_env("DB_URI")
    engine = create_engine(db_uri, echo=False, future=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        print("ERROR: could not connect to DB:", e, file=sys.stderr)
        sys.exit(1)
    print("[init] Connected to DB.")
    return engine


def memory_engine():
    """Single-connection in-memory SQLite engine (local runs and tests)."""
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_schema(engine)
    return engine


def create_schema(engine) -> None:
    """Create the identity and document tables if they do not exist."""
    metadata.create_all(engine)


def missing_tables(engine) -> List[str]:
    """Names of required tables absent from the connected database."""
    existing = set(inspect(engine).get_table_names())
    return sorted(t for t in metadata.tables if t not in existing)
