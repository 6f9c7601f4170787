"""
Identity providers: the portal_users table and an in-memory stand-in.
"""

import threading
from typing import Dict, List, Optional

from sqlalchemy import exc, insert, select, update

from authz.database import portal_users
from authz.exceptions import IdentityTimeoutError, NetworkError, NotFoundError
from authz.models import IdentityRecord


class SqlIdentityProvider:
    """Look up users and persist their role/facility labels via SQLAlchemy."""

    def __init__(self, engine):
        self.engine = engine

    def get_user(self, user_id: str) -> IdentityRecord:
        """Return the user's identity record or raise NotFoundError."""
        sql = select(
            portal_users.c.id, portal_users.c.email,
            portal_users.c.labels, portal_users.c.status,
        ).where(portal_users.c.id == str(user_id))
        try:
            with self.engine.connect() as conn:
                row = conn.execute(sql).mappings().first()
        except exc.TimeoutError as e:
            raise IdentityTimeoutError(f"Identity lookup timed out for user {user_id}: {e}")
        except exc.SQLAlchemyError as e:
            raise NetworkError(f"Identity lookup failed for user {user_id}: {e}")

        if not row:
            raise NotFoundError("User not found")

        return IdentityRecord(
            id=str(row["id"]),
            email=row["email"],
            labels=[str(label) for label in (row["labels"] or [])],
            status=str(row["status"] or "active"),
        )

    def update_labels(self, user_id: str, labels: List[str]) -> None:
        sql = (
            update(portal_users)
            .where(portal_users.c.id == str(user_id))
            .values(labels=list(labels))
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(sql)
        except exc.TimeoutError as e:
            raise IdentityTimeoutError(f"Label update timed out for user {user_id}: {e}")
        except exc.SQLAlchemyError as e:
            raise NetworkError(f"Label update failed for user {user_id}: {e}")
        if result.rowcount == 0:
            raise NotFoundError("User not found")

    def add_user(
        self,
        user_id: str,
        email: Optional[str] = None,
        labels: Optional[List[str]] = None,
        status: str = "active",
    ) -> IdentityRecord:
        """Insert a user row (seeding and tests)."""
        record = IdentityRecord(id=str(user_id), email=email, labels=list(labels or []), status=status)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(portal_users).values(
                        id=record.id, email=record.email,
                        labels=record.labels, status=record.status,
                    )
                )
        except exc.IntegrityError:
            raise ValueError(f"User already exists: {user_id}")
        except exc.SQLAlchemyError as e:
            raise NetworkError(f"Could not create user {user_id}: {e}")
        return record


class InMemoryIdentityProvider:
    """Dictionary-backed identity provider for local runs and tests."""

    def __init__(self, users: Optional[List[IdentityRecord]] = None):
        self._users: Dict[str, IdentityRecord] = {}
        self._lock = threading.Lock()
        for record in users or []:
            self._users[record.id] = record
        self.lookups = 0

    def get_user(self, user_id: str) -> IdentityRecord:
        self.lookups += 1
        with self._lock:
            record = self._users.get(str(user_id))
            if record is None:
                raise NotFoundError("User not found")
            return IdentityRecord(record.id, record.email, list(record.labels), record.status)

    def update_labels(self, user_id: str, labels: List[str]) -> None:
        with self._lock:
            record = self._users.get(str(user_id))
            if record is None:
                raise NotFoundError("User not found")
            self._users[record.id] = IdentityRecord(record.id, record.email, list(labels), record.status)

    def add_user(
        self,
        user_id: str,
        email: Optional[str] = None,
        labels: Optional[List[str]] = None,
        status: str = "active",
    ) -> IdentityRecord:
        record = IdentityRecord(id=str(user_id), email=email, labels=list(labels or []), status=status)
        with self._lock:
            self._users[record.id] = record
        return record
