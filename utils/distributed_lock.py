"""
Distributed Lock Service for scheduled sweeps
Keeps two scheduler instances from running the same sweep at the same time by
implementing database-backed lock rows
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from database import SessionLocal
from models import DistributedLock, utcnow

logger = logging.getLogger(__name__)


class LockResult:
    """Result of lock acquisition attempt"""

    def __init__(self, acquired: bool, lock_key: str, error: Optional[str] = None):
        self.acquired = acquired
        self.lock_key = lock_key
        self.error = error

    def __bool__(self):
        return self.acquired


class DistributedLockService:
    """Lock rows with a unique name; an IntegrityError on insert means someone else holds it"""

    def __init__(self, session_factory: Optional[sessionmaker] = None, default_timeout: int = 300):
        self.session_factory = session_factory or SessionLocal
        self.default_timeout = default_timeout
        self.service_id = f"lockservice_{uuid.uuid4().hex[:12]}"

    def try_acquire(self, lock_name: str, timeout: Optional[int] = None,
                    metadata: Optional[Dict[str, Any]] = None,
                    now: Optional[datetime] = None) -> LockResult:
        lock_timeout = timeout or self.default_timeout
        current = now or utcnow()
        session = self.session_factory()
        try:
            record = DistributedLock(
                lock_name=lock_name,
                locked_by=self.service_id,
                locked_at=current,
                expires_at=current + timedelta(seconds=lock_timeout),
                lock_metadata=metadata,
            )
            try:
                session.add(record)
                session.commit()
                logger.info(f"DISTRIBUTED_LOCK_ACQUIRED: Key={lock_name}, Service={self.service_id}")
                return LockResult(True, lock_name)
            except IntegrityError:
                session.rollback()

            existing = session.query(DistributedLock).filter(
                DistributedLock.lock_name == lock_name
            ).first()
            if existing is not None and existing.expires_at <= current:
                logger.warning(
                    f"EXPIRED_LOCK_CLEANUP: Key={lock_name}, Expired={existing.expires_at}, "
                    f"Service={existing.locked_by}"
                )
                # Only delete the exact expired row so a fresh holder is never evicted
                deleted = session.query(DistributedLock).filter(
                    DistributedLock.id == existing.id,
                    DistributedLock.expires_at <= current,
                ).delete(synchronize_session=False)
                session.commit()
                if deleted:
                    return self.try_acquire(lock_name, lock_timeout, metadata, current)

            holder = existing.locked_by if existing is not None else "unknown"
            logger.info(f"DISTRIBUTED_LOCK_COLLISION: Key={lock_name}, Holder={holder}")
            return LockResult(False, lock_name, error=f"Lock held by {holder}")
        finally:
            session.close()

    def release(self, lock_name: str):
        session = self.session_factory()
        try:
            session.query(DistributedLock).filter(
                DistributedLock.lock_name == lock_name,
                DistributedLock.locked_by == self.service_id,
            ).delete(synchronize_session=False)
            session.commit()
            logger.debug(f"DISTRIBUTED_LOCK_RELEASED: Key={lock_name}")
        finally:
            session.close()

    @contextmanager
    def acquire(self, lock_name: str, timeout: Optional[int] = None,
                metadata: Optional[Dict[str, Any]] = None,
                now: Optional[datetime] = None):
        """
        Usage:
            with lock_service.acquire("sweep:auto_release") as lock:
                if lock.acquired:
                    ...
        """
        result = self.try_acquire(lock_name, timeout, metadata, now)
        try:
            yield result
        finally:
            if result.acquired:
                self.release(lock_name)
