"""
One-time login codes.

Per subject the code moves NoCodeActive -> CodeIssued -> (Consumed | Expired).
Issuing again replaces the stored code, which invalidates the previous one.
Only the bcrypt hash of a code is ever stored.
"""

import logging
import secrets
import threading
import weakref
from datetime import timedelta

from .clock import Clock, as_utc
from .database import Store
from .errors import ErrorCode, PortalError
from .schemas import OneTimeCode
from .security import PasswordHasher

logger = logging.getLogger(__name__)

COLLECTION = "onetimecode"


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


class OneTimeCodeManager:
    def __init__(self, store: Store, hasher: PasswordHasher, clock: Clock, ttl: timedelta = timedelta(minutes=5)):
        self.store = store
        self.hasher = hasher
        self.clock = clock
        self.ttl = ttl
        self._guard = threading.Lock()
        # a lock lives only while some caller holds it
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, subject_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(subject_id)
            if lock is None:
                lock = self._locks[subject_id] = threading.Lock()
            return lock

    def issue(self, subject_id: str) -> str:
        """Store a fresh code for ``subject_id`` and return it in the clear for delivery."""
        code = generate_code()
        code_hash = self.hasher.hash(code)
        now = self.clock.now()
        record = OneTimeCode(subject_id=subject_id, code_hash=code_hash, issued_at=now, expires_at=now + self.ttl)
        with self._lock_for(subject_id):
            self.store.put_document(COLLECTION, subject_id, record)
        logger.debug("Issued login code for %s", subject_id)
        return code

    def verify(self, subject_id: str, candidate: str) -> bool:
        """Consume the active code. Raises on a missing, expired or wrong code."""
        with self._lock_for(subject_id):
            record = self.store.get_document(COLLECTION, subject_id)
            if not record or not record.get("code_hash") or not record.get("expires_at"):
                raise PortalError(ErrorCode.NO_ACTIVE_CODE, "No active code", subject_id=subject_id)
            if self.clock.now() > as_utc(record["expires_at"]):
                raise PortalError(ErrorCode.EXPIRED, "Code expired", subject_id=subject_id)
            if not self.hasher.verify(candidate, record["code_hash"]):
                raise PortalError(ErrorCode.MISMATCH, "Code mismatch", subject_id=subject_id)
            # compare-and-delete so a code can only be consumed once
            taken = self.store.delete_documents(COLLECTION, {"_id": subject_id, "code_hash": record["code_hash"]})
            if not taken:
                raise PortalError(ErrorCode.NO_ACTIVE_CODE, "Code already consumed", subject_id=subject_id)
        return True
