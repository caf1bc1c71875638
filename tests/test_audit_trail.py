"""
Tests for the signed audit trail: signatures, severity floors, failure
isolation, retry queue and retention
"""

from datetime import timedelta
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from models import AuditCategory, AuditLog, AuditSeverity, User
from services.audit_trail_service import AuditTrailService


def record(audit, session, now, **overrides):
    fields = {
        "performed_by": 1,
        "action": "contract_created",
        "category": AuditCategory.CONTRACT.value,
        "target_model": "Contract",
        "target_id": 42,
        "description": "created",
        "now": now,
    }
    fields.update(overrides)
    return audit.record(session, **fields)


class TestSigning:

    def test_entry_signature_verifies(self, audit, session_factory, now):
        with session_factory() as session:
            entry = record(audit, session, now, changes=[{"field": "status", "old_value": "draft",
                                                          "new_value": "pending"}])
            session.commit()

        with session_factory() as session:
            stored = session.get(AuditLog, entry.id)
            assert audit.verify_signature(stored) is True

    def test_tampering_is_detected(self, audit, session_factory, now):
        with session_factory() as session:
            entry = record(audit, session, now)
            session.commit()

        with session_factory() as session:
            stored = session.get(AuditLog, entry.id)
            stored.description = "something else"
            assert audit.verify_signature(stored) is False

    def test_other_key_does_not_verify(self, audit, session_factory, now):
        with session_factory() as session:
            entry = record(audit, session, now)
            session.commit()

        other = AuditTrailService(signing_key="another-key")
        assert other.verify_signature(entry) is False


class TestSeverity:

    def test_financial_actions_escalate(self, audit, now):
        payload = audit.build_payload(performed_by="system", action="escrow_released",
                                      target_model="Payment", target_id=1,
                                      severity=AuditSeverity.LOW.value, now=now)
        assert payload["severity"] == AuditSeverity.HIGH.value

    def test_deletion_is_critical(self, audit, now):
        payload = audit.build_payload(performed_by=1, action="contract_deleted",
                                      target_model="Contract", target_id=1, now=now)
        assert payload["severity"] == AuditSeverity.CRITICAL.value

    def test_requested_severity_above_floor_is_kept(self, audit, now):
        payload = audit.build_payload(performed_by=1, action="payment_refunded", target_model="Payment",
                                      target_id=1, severity=AuditSeverity.CRITICAL.value, now=now)
        assert payload["severity"] == AuditSeverity.CRITICAL.value

    def test_diff_lists_only_changes(self):
        changes = AuditTrailService.diff({"status": "draft", "price": 10}, {"status": "pending", "price": 10})
        assert changes == [{"field": "status", "old_value": "draft", "new_value": "pending"}]


class TestFailureIsolation:
    """A failing audit insert never aborts the surrounding financial write"""

    def test_failed_write_is_queued_and_outer_transaction_survives(self, audit, session_factory, now, reload):
        with session_factory() as session:
            user = User(email="audit@example.com")
            session.add(user)
            session.flush()
            with patch.object(session, "flush", side_effect=OperationalError("INSERT", {}, Exception("disk full"))):
                assert record(audit, session, now) is None
            session.commit()
            user_id = user.id

        assert reload(User, user_id) is not None
        assert len(audit.retry_queue) == 1

        assert audit.flush_retry_queue() == 1
        assert len(audit.retry_queue) == 0
        with session_factory() as session:
            assert session.query(AuditLog).count() == 1


class TestQueriesAndRetention:

    def test_history_for_target(self, audit, session_factory, now):
        with session_factory() as session:
            record(audit, session, now, action="contract_created")
            record(audit, session, now + timedelta(minutes=1), action="contract_submitted")
            record(audit, session, now, target_id=99)
            session.commit()

            history = AuditTrailService.history_for(session, "Contract", 42)
            assert [e.action for e in history] == ["contract_created", "contract_submitted"]
            assert len(AuditTrailService.entries_by(session, 1)) == 3

    def test_retention_keeps_high_and_critical(self, audit, session_factory, now):
        old = now - timedelta(days=120)
        with session_factory() as session:
            record(audit, session, old, action="contract_created")
            record(audit, session, old, action="escrow_released")
            record(audit, session, old, action="contract_deleted")
            record(audit, session, now, action="contract_submitted")
            session.commit()

            deleted = audit.cleanup_expired(session, now=now, retention_days=90)
            session.commit()

            assert deleted == 1
            remaining = sorted(e.action for e in session.query(AuditLog).all())
            assert remaining == ["contract_deleted", "contract_submitted", "escrow_released"]
