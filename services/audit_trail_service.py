"""
Audit Trail Service - signed, append-only records of every state change
Writes inside a SAVEPOINT so a failing audit insert never blocks the financial transition
"""

import hashlib
import hmac
import json
import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Deque, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import AuditCategory, AuditLog, AuditSeverity, utcnow
from utils.atomic_transactions import atomic_transaction

logger = logging.getLogger(__name__)
audit_error_logger = logging.getLogger("audit.errors")


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return str(value)


class AuditTrailService:
    """Service for signed audit trail management"""

    # Actions whose severity never drops below the listed level
    SEVERITY_ESCALATION = {
        "payment_refunded": AuditSeverity.HIGH.value,
        "escrow_released": AuditSeverity.HIGH.value,
        "escrow_auto_released": AuditSeverity.HIGH.value,
        "dispute_opened": AuditSeverity.HIGH.value,
        "dispute_resolved": AuditSeverity.HIGH.value,
        "contract_deleted": AuditSeverity.CRITICAL.value,
        "commission_rate_changed": AuditSeverity.HIGH.value,
        "membership_changed": AuditSeverity.HIGH.value,
        "user_role_changed": AuditSeverity.CRITICAL.value,
    }

    SEVERITY_ORDER = [
        AuditSeverity.LOW.value,
        AuditSeverity.MEDIUM.value,
        AuditSeverity.HIGH.value,
        AuditSeverity.CRITICAL.value,
    ]

    RETAINED_SEVERITIES = (AuditSeverity.HIGH.value, AuditSeverity.CRITICAL.value)

    SIGNED_FIELDS = (
        "performed_by", "action", "category", "severity", "target_model",
        "target_id", "description", "changes", "extra_data", "created_at",
    )

    def __init__(self, signing_key: Optional[str] = None,
                 session_factory: Optional[sessionmaker] = None,
                 max_retry_queue: int = 1000):
        self.signing_key = (signing_key or Config.AUDIT_SIGNING_KEY).encode("utf-8")
        self.session_factory = session_factory
        self.retry_queue: Deque[Dict[str, Any]] = deque(maxlen=max_retry_queue)

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def _canonical(self, payload: Dict[str, Any]) -> str:
        signed = {field: payload.get(field) for field in self.SIGNED_FIELDS}
        return json.dumps(signed, sort_keys=True, separators=(",", ":"), default=_json_default)

    def sign(self, payload: Dict[str, Any]) -> str:
        return hmac.new(self.signing_key, self._canonical(payload).encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_signature(self, entry: AuditLog) -> bool:
        """Detects any tampering with a stored entry"""
        payload = {field: getattr(entry, field) for field in self.SIGNED_FIELDS}
        return hmac.compare_digest(self.sign(payload), entry.signature or "")

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    @staticmethod
    def diff(before: Dict[str, Any], after: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Field-level changes between two snapshots"""
        changes = []
        for field in sorted(set(before) | set(after)):
            old_value, new_value = before.get(field), after.get(field)
            if old_value != new_value:
                changes.append({
                    "field": field,
                    "old_value": _json_default(old_value) if old_value is not None else None,
                    "new_value": _json_default(new_value) if new_value is not None else None,
                })
        return changes

    def _resolve_severity(self, action: str, requested: Optional[str]) -> str:
        severity = requested or AuditSeverity.LOW.value
        floor = self.SEVERITY_ESCALATION.get(action)
        if floor and self.SEVERITY_ORDER.index(floor) > self.SEVERITY_ORDER.index(severity):
            return floor
        return severity

    def build_payload(
        self,
        *,
        performed_by: Any,
        action: str,
        target_model: str,
        target_id: Any,
        category: str = AuditCategory.SYSTEM.value,
        severity: Optional[str] = None,
        description: Optional[str] = None,
        changes: Optional[List[Dict[str, Any]]] = None,
        extra_data: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        created_at = (now or utcnow()).astimezone(timezone.utc).replace(microsecond=0)
        payload = {
            "performed_by": str(performed_by),
            "action": action,
            "category": category,
            "severity": self._resolve_severity(action, severity),
            "target_model": target_model,
            "target_id": str(target_id),
            "description": description,
            "changes": json.loads(json.dumps(changes or [], default=_json_default)),
            "extra_data": json.loads(json.dumps(extra_data or {}, default=_json_default)),
            "ip_address": ip_address,
            "user_agent": user_agent,
            "created_at": created_at,
        }
        payload["signature"] = self.sign(payload)
        return payload

    def record(self, session: Session, **fields) -> Optional[AuditLog]:
        """
        Append one entry within the caller's transaction.

        Failures are logged on ``audit.errors`` and queued for the retry
        sweep; they never propagate to the financial operation.
        """
        payload = self.build_payload(**fields)
        try:
            with session.begin_nested():
                entry = AuditLog(**payload)
                session.add(entry)
                session.flush()
            logger.debug(f"AUDIT_RECORDED: {payload['action']} {payload['target_model']}#{payload['target_id']}")
            return entry
        except SQLAlchemyError as e:
            audit_error_logger.error(
                f"AUDIT_WRITE_FAILED: action={payload['action']} "
                f"target={payload['target_model']}#{payload['target_id']} error={e}"
            )
            self.retry_queue.append(payload)
            return None

    def flush_retry_queue(self, session_factory: Optional[sessionmaker] = None) -> int:
        """Re-attempt queued entries; returns how many were written"""
        written = 0
        factory = session_factory or self.session_factory
        while self.retry_queue:
            payload = self.retry_queue[0]
            try:
                with atomic_transaction(session_factory=factory) as session:
                    session.add(AuditLog(**payload))
            except SQLAlchemyError as e:
                audit_error_logger.error(f"AUDIT_RETRY_FAILED: action={payload['action']} error={e}")
                break
            self.retry_queue.popleft()
            written += 1
        if written:
            logger.info(f"AUDIT_RETRY: wrote {written} queued entries")
        return written

    # ------------------------------------------------------------------
    # Queries and retention
    # ------------------------------------------------------------------

    @staticmethod
    def history_for(session: Session, target_model: str, target_id: Any) -> List[AuditLog]:
        return (
            session.query(AuditLog)
            .filter(AuditLog.target_model == target_model, AuditLog.target_id == str(target_id))
            .order_by(AuditLog.created_at.asc(), AuditLog.id.asc())
            .all()
        )

    @staticmethod
    def entries_by(session: Session, performed_by: Any, limit: int = 100) -> List[AuditLog]:
        return (
            session.query(AuditLog)
            .filter(AuditLog.performed_by == str(performed_by))
            .order_by(AuditLog.created_at.desc())
            .limit(limit)
            .all()
        )

    def cleanup_expired(self, session: Session, now: Optional[datetime] = None,
                        retention_days: Optional[int] = None) -> int:
        """Delete low/medium entries past retention; high and critical are kept"""
        days = retention_days if retention_days is not None else Config.AUDIT_RETENTION_DAYS
        cutoff = (now or utcnow()) - timedelta(days=days)
        deleted = (
            session.query(AuditLog)
            .filter(
                AuditLog.created_at < cutoff,
                AuditLog.severity.notin_(self.RETAINED_SEVERITIES),
            )
            .delete(synchronize_session=False)
        )
        logger.info(f"AUDIT_RETENTION: removed {deleted} entries older than {cutoff.isoformat()}")
        return deleted
