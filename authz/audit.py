"""
Access audit log – one document per document-access decision.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger

from authz.config import AUDIT_COLLECTION, DATABASE_ID
from authz.exceptions import AuthorizationError
from authz.models import PermissionDecision, UserContext


class AccessAuditLog:
    """Writes audit entries through the storage layer; failures never block."""

    def __init__(self, storage, database: str = DATABASE_ID, collection: str = AUDIT_COLLECTION, enabled: bool = True):
        self.storage = storage
        self.database = database
        self.collection = collection
        self.enabled = enabled

    def record(
        self,
        user: Optional[UserContext],
        resource: str,
        operation: str,
        decision: PermissionDecision,
        document_id: Optional[str] = None,
        **extra: Any,
    ) -> Optional[str]:
        """Persist one entry and return its id, or None when it was not written."""
        if not self.enabled:
            return None
        entry: Dict[str, Any] = {
            "userId": user.user_id if user else None,
            "role": user.role if user else None,
            "facilityId": user.facility_id if user else None,
            "operation": str(getattr(operation, "value", operation)),
            "collection": resource,
            "documentId": document_id,
            "allowed": decision.allowed,
            "reason": decision.reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        entry.update(extra)
        entry_id = uuid.uuid4().hex
        try:
            self.storage.create_document(self.database, self.collection, entry_id, entry)
        except (AuthorizationError, ValueError) as e:
            logger.error(f"Audit log write failed for {entry['userId']} on {resource}: {e}")
            return None
        return entry_id
