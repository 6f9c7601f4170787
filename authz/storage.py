"""
Document storage on SQLAlchemy Core: documents with stored grants, and the
collection-level settings the permissions migrator administers.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import and_, delete, exc, insert, select, update

from authz.database import collections, documents
from authz.exceptions import NetworkError, NotFoundError
from authz.models import QueryFilter, StoredDocument

DEFAULT_FACILITY_FIELD = "facilityId"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_filter(item) -> QueryFilter:
    if isinstance(item, QueryFilter):
        return item
    if isinstance(item, Mapping) and "field" in item:
        return QueryFilter(item["field"], item.get("value"))
    raise ValueError(f"Unsupported filter: {item!r}")


class SqlDocumentStore:
    """Storage layer used by DocumentSecurity, secure queries and the migrator.

    ``facility_fields`` maps a collection to the data field holding its
    facility id; the value ``"id"`` means the document id itself is the
    facility id. That field is mirrored into the indexed ``facility_id``
    column so facility filters run in SQL.
    """

    def __init__(self, engine, facility_fields: Optional[Mapping[str, str]] = None):
        self.engine = engine
        self.facility_fields = dict(facility_fields or {})

    def facility_field(self, collection: str) -> str:
        return self.facility_fields.get(collection, DEFAULT_FACILITY_FIELD)

    def _facility_of(self, collection: str, document_id: str, data: Mapping[str, Any]) -> Optional[str]:
        field = self.facility_field(collection)
        value = document_id if field == "id" else data.get(field)
        return None if value is None else str(value)

    def _execute(self, statement, write: bool = False):
        try:
            if write:
                with self.engine.begin() as conn:
                    return conn.execute(statement).rowcount
            with self.engine.connect() as conn:
                return conn.execute(statement).mappings().all()
        except exc.IntegrityError as e:
            raise ValueError(f"Storage constraint violated: {e.orig}")
        except exc.SQLAlchemyError as e:
            raise NetworkError(f"Storage call failed: {e}")

    @staticmethod
    def _to_document(row) -> StoredDocument:
        return StoredDocument(
            id=row["document_id"],
            collection=row["collection_id"],
            data=dict(row["data"] or {}),
            grants=list(row["grants"] or []),
            facility_id=row["facility_id"],
        )

    # ── Documents ────────────────────────────────────────────────────

    def create_document(
        self,
        database: str,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        grants: Iterable[str] = (),
    ) -> StoredDocument:
        now = _now()
        self._execute(
            insert(documents).values(
                database_id=database,
                collection_id=collection,
                document_id=str(document_id),
                facility_id=self._facility_of(collection, str(document_id), data),
                data=dict(data),
                grants=list(grants),
                created_at=now,
                updated_at=now,
            ),
            write=True,
        )
        return self.get_document(database, collection, document_id)

    def get_document(self, database: str, collection: str, document_id: str) -> StoredDocument:
        rows = self._execute(
            select(documents).where(and_(
                documents.c.database_id == database,
                documents.c.collection_id == collection,
                documents.c.document_id == str(document_id),
            ))
        )
        if not rows:
            raise NotFoundError("Document not found")
        return self._to_document(rows[0])

    def update_document(
        self,
        database: str,
        collection: str,
        document_id: str,
        data: Mapping[str, Any],
        grants: Optional[Iterable[str]] = None,
    ) -> StoredDocument:
        """Replace the document data; grants are only touched when given."""
        values = {
            "data": dict(data),
            "facility_id": self._facility_of(collection, str(document_id), data),
            "updated_at": _now(),
        }
        if grants is not None:
            values["grants"] = list(grants)
        rowcount = self._execute(
            update(documents).where(and_(
                documents.c.database_id == database,
                documents.c.collection_id == collection,
                documents.c.document_id == str(document_id),
            )).values(**values),
            write=True,
        )
        if rowcount == 0:
            raise NotFoundError("Document not found")
        return self.get_document(database, collection, document_id)

    def delete_document(self, database: str, collection: str, document_id: str) -> None:
        rowcount = self._execute(
            delete(documents).where(and_(
                documents.c.database_id == database,
                documents.c.collection_id == collection,
                documents.c.document_id == str(document_id),
            )),
            write=True,
        )
        if rowcount == 0:
            raise NotFoundError("Document not found")

    def list_documents(
        self,
        database: str,
        collection: str,
        filters: Iterable[Any] = (),
        limit: Optional[int] = None,
        offset: int = 0,
        order_by: Optional[str] = None,
    ) -> List[StoredDocument]:
        """Documents matching every equality filter (filters are AND-ed)."""
        facility_field = self.facility_field(collection)
        sql = select(documents).where(and_(
            documents.c.database_id == database,
            documents.c.collection_id == collection,
        ))
        remaining: List[QueryFilter] = []
        for f in map(_as_filter, filters):
            if f.field == facility_field:
                sql = sql.where(documents.c.facility_id == (None if f.value is None else str(f.value)))
            elif f.field == "id":
                sql = sql.where(documents.c.document_id == str(f.value))
            else:
                remaining.append(f)

        sql = sql.order_by(documents.c.document_id)
        in_sql = not remaining and not order_by
        if in_sql:
            if offset:
                sql = sql.offset(offset)
            if limit is not None:
                sql = sql.limit(limit)

        docs = [self._to_document(row) for row in self._execute(sql)]
        if in_sql:
            return docs

        docs = [d for d in docs if all(d.data.get(f.field) == f.value for f in remaining)]
        if order_by:
            descending = order_by.startswith("-")
            key = order_by.lstrip("-")
            docs.sort(key=lambda d: (d.data.get(key) is None, str(d.data.get(key))), reverse=descending)
        end = None if limit is None else offset + limit
        return docs[offset:end]

    # ── Collections ──────────────────────────────────────────────────

    @staticmethod
    def _collection_dict(row) -> Dict[str, Any]:
        return {
            "id": row["collection_id"],
            "name": row["name"],
            "grants": list(row["grants"] or []),
            "documentSecurity": bool(row["document_security"]),
            "enabled": bool(row["enabled"]),
        }

    def list_collections(self, database: str) -> List[Dict[str, Any]]:
        rows = self._execute(
            select(collections)
            .where(collections.c.database_id == database)
            .order_by(collections.c.collection_id)
        )
        return [self._collection_dict(row) for row in rows]

    def get_collection(self, database: str, collection_id: str) -> Dict[str, Any]:
        rows = self._execute(
            select(collections).where(and_(
                collections.c.database_id == database,
                collections.c.collection_id == collection_id,
            ))
        )
        if not rows:
            raise NotFoundError(f"Collection not found: {collection_id}")
        return self._collection_dict(rows[0])

    def create_collection(
        self,
        database: str,
        collection_id: str,
        name: Optional[str] = None,
        grants: Iterable[str] = (),
        document_security: bool = True,
    ) -> Dict[str, Any]:
        self._execute(
            insert(collections).values(
                database_id=database,
                collection_id=collection_id,
                name=name or collection_id,
                grants=list(grants),
                document_security=document_security,
                enabled=True,
            ),
            write=True,
        )
        return self.get_collection(database, collection_id)

    def update_collection(
        self,
        database: str,
        collection_id: str,
        grants: Iterable[str],
        document_security: Optional[bool] = None,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        values: Dict[str, Any] = {"grants": list(grants)}
        if document_security is not None:
            values["document_security"] = document_security
        if name is not None:
            values["name"] = name
        rowcount = self._execute(
            update(collections).where(and_(
                collections.c.database_id == database,
                collections.c.collection_id == collection_id,
            )).values(**values),
            write=True,
        )
        if rowcount == 0:
            raise NotFoundError(f"Collection not found: {collection_id}")
        return self.get_collection(database, collection_id)
