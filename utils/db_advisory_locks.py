"""
Transaction-scoped database advisory locks.

PostgreSQL: ``pg_advisory_xact_lock`` keyed by a namespaced hash, released
automatically at commit or rollback. SQLite already serializes writers per
database file, so the lock degrades to a no-op there.
"""

import hashlib
import logging

from sqlalchemy import text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class DBAdvisoryLockService:
    """Serializes critical sections (per referrer, per job) across instances"""

    ESCROW_NAMESPACE = 0x45534352  # 'ESCR'

    @staticmethod
    def _generate_lock_id(key: str) -> int:
        key_hash = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return int(key_hash[:8], 16) & 0x7FFFFFFF

    def acquire_xact_lock(self, session: Session, lock_key: str) -> bool:
        """Block until the lock is held for the rest of the current transaction"""
        dialect = session.get_bind().dialect.name
        if dialect != "postgresql":
            logger.debug(f"DB_LOCK_NOOP: {lock_key} on {dialect}")
            return True

        lock_id = self._generate_lock_id(lock_key)
        session.execute(
            text("SELECT pg_advisory_xact_lock(:namespace, :lock_id)"),
            {"namespace": self.ESCROW_NAMESPACE, "lock_id": lock_id},
        )
        logger.debug(f"🔒 DB_LOCK_ACQUIRED: {lock_key} (ID: {lock_id})")
        return True

    def referrer_lock(self, session: Session, referrer_id) -> bool:
        return self.acquire_xact_lock(session, f"referral_reward:{referrer_id}")

    def job_allocation_lock(self, session: Session, job_id) -> bool:
        return self.acquire_xact_lock(session, f"job_allocation:{job_id}")


advisory_locks = DBAdvisoryLockService()
