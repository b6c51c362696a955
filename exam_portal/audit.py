import logging
from typing import Any, Dict, List, Optional

from .clock import Clock
from .database import Store
from .schemas import AuditLog

logger = logging.getLogger(__name__)


class AuditTrail:
    def __init__(self, store: Store, clock: Clock):
        self.store = store
        self.clock = clock

    def record(
        self,
        action: str,
        status: str,
        user_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> str:
        entry = AuditLog(
            action=action,
            status=status,
            timestamp=self.clock.now(),
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            ip_address=ip_address,
            details=details,
        )
        logger.info("audit action=%s status=%s user=%s details=%s", action, status, user_id, details)
        return self.store.create_document("auditlog", entry)

    def latest(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self.store.get_documents("auditlog", sort=[("timestamp", -1)], limit=limit)
