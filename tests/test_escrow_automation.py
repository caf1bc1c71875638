"""
Tests for the time-driven sweeps

Every sweep is called with an explicit ``now`` so windows are exercised
without touching the wall clock.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from jobs.escrow_automation import AUTO_RELEASE_ACTOR, EscrowAutomation
from models import AuditLog, Contract, ContractStatus, EscrowState, Payment, PaymentStatus
from services.notification_service import NotificationEvent
from utils.distributed_lock import DistributedLockService
from utils.exceptions import InvalidTransition


class TestAutoRelease:

    @pytest.mark.asyncio
    async def test_releases_after_window_once(self, escrow_flow, automation, notifier, reload, now):
        contract, payment_id = await escrow_flow.awaiting_approval()

        report = await automation.run_auto_release(now=now + timedelta(days=8))
        again = await automation.run_auto_release(now=now + timedelta(days=8, hours=1))

        assert report.processed == 1
        assert report.contract_ids == [contract.id]
        assert again.processed == 0
        payment = reload(Payment, payment_id)
        assert payment.status == PaymentStatus.COMPLETED.value
        assert payment.escrow_auto_released is True
        assert payment.escrow_released_by == AUTO_RELEASE_ACTOR
        stored = reload(Contract, contract.id)
        assert stored.status == ContractStatus.COMPLETED.value
        assert stored.escrow_status == EscrowState.RELEASED.value
        assert sorted(notifier.recipients(NotificationEvent.ESCROW_AUTO_RELEASED)) == sorted(
            [contract.requester_id, contract.worker_id]
        )

    @pytest.mark.asyncio
    async def test_not_before_window(self, escrow_flow, automation, reload, now):
        contract, payment_id = await escrow_flow.awaiting_approval()

        report = await automation.run_auto_release(now=now + timedelta(days=6))

        assert report.processed == 0
        assert reload(Payment, payment_id).status == PaymentStatus.HELD_ESCROW.value

    @pytest.mark.asyncio
    async def test_disputed_contract_is_left_alone(self, escrow_flow, automation, contracts, reload, now):
        contract, payment_id = await escrow_flow.awaiting_approval()
        contracts.open_dispute(contract.id, contract.requester_id, "not finished", now=now)

        report = await automation.run_auto_release(now=now + timedelta(days=10))

        assert report.processed == 0
        assert reload(Payment, payment_id).status == PaymentStatus.HELD_ESCROW.value

    @pytest.mark.asyncio
    async def test_claimed_contract_cannot_be_disputed(self, escrow_flow, contracts, session_factory, now):
        contract, _ = await escrow_flow.awaiting_approval()
        with session_factory() as session:
            session.execute(
                update(Contract).where(Contract.id == contract.id)
                .values(auto_release_claimed_by="sweeper_other", auto_release_claimed_at=now)
            )
            session.commit()

        with pytest.raises(InvalidTransition):
            contracts.open_dispute(contract.id, contract.requester_id, "too late", now=now)

    @pytest.mark.asyncio
    async def test_stale_claim_is_taken_over(self, escrow_flow, automation, session_factory, reload, now):
        contract, payment_id = await escrow_flow.awaiting_approval()
        with session_factory() as session:
            session.execute(
                update(Contract).where(Contract.id == contract.id)
                .values(auto_release_claimed_by="sweeper_crashed", auto_release_claimed_at=now)
            )
            session.commit()

        report = await automation.run_auto_release(now=now + timedelta(days=8))

        assert report.processed == 1
        assert reload(Payment, payment_id).status == PaymentStatus.COMPLETED.value


class TestReminders:

    @pytest.mark.asyncio
    async def test_reminder_sent_once_to_requester(self, escrow_flow, automation, notifier, fetch_all, now):
        contract, _ = await escrow_flow.awaiting_approval()

        early = await automation.run_reminders(now=now + timedelta(days=4))
        first = await automation.run_reminders(now=now + timedelta(days=6))
        second = await automation.run_reminders(now=now + timedelta(days=6, hours=12))

        assert (early.processed, first.processed, second.processed) == (0, 1, 0)
        reminders = notifier.of(NotificationEvent.APPROVAL_REMINDER)
        assert [r[0] for r in reminders] == [contract.requester_id]
        assert reminders[0][2]["auto_release_at"] == (now + timedelta(days=7)).isoformat()
        assert len(fetch_all(AuditLog, AuditLog.action == "approval_reminder_sent")) == 1

    @pytest.mark.asyncio
    async def test_no_reminder_past_auto_release(self, escrow_flow, automation, notifier, now):
        await escrow_flow.awaiting_approval()

        report = await automation.run_reminders(now=now + timedelta(days=8))

        assert report.processed == 0
        assert notifier.of(NotificationEvent.APPROVAL_REMINDER) == []

    @pytest.mark.asyncio
    async def test_non_escrow_contract_gets_no_reminder(self, escrow_flow, automation, contracts, notifier, now):
        contract = escrow_flow.accepted(escrow_enabled=False)
        contracts.start_work(contract.id, now=now)
        contracts.mark_work_complete(contract.id, contract.worker_id, now=now)

        report = await automation.run_reminders(now=now + timedelta(days=6))

        assert report.processed == 0
        assert notifier.of(NotificationEvent.APPROVAL_REMINDER) == []


class TestOverdue:

    @pytest.mark.asyncio
    async def test_flagged_once(self, escrow_flow, automation, notifier, reload, now):
        contract, _ = await escrow_flow.funded(duration_days=14)

        before_end = await automation.run_overdue(now=now + timedelta(days=13))
        first = await automation.run_overdue(now=now + timedelta(days=15))
        second = await automation.run_overdue(now=now + timedelta(days=16))

        assert (before_end.processed, first.processed, second.processed) == (0, 1, 0)
        assert len(notifier.of(NotificationEvent.CONTRACT_OVERDUE)) == 2
        stored = reload(Contract, contract.id)
        assert stored.overdue_notified_at == now + timedelta(days=15)
        assert stored.status == ContractStatus.IN_PROGRESS.value


class TestPairingExpiry:

    @pytest.mark.asyncio
    async def test_unpaired_contract_is_cancelled(self, escrow_flow, automation, contracts, notifier, reload, now):
        contract = escrow_flow.draft()
        contracts.submit_for_acceptance(contract.id, contract.requester_id, now=now)

        early = await automation.run_pairing_expiry(now=now + timedelta(minutes=10))
        report = await automation.run_pairing_expiry(now=now + timedelta(hours=1))

        assert early.processed == 0
        assert report.processed == 1
        stored = reload(Contract, contract.id)
        assert stored.status == ContractStatus.CANCELLED.value
        assert stored.cancellation_reason == "pairing_expired"
        assert len(notifier.of(NotificationEvent.PAIRING_EXPIRED)) == 2

    @pytest.mark.asyncio
    async def test_held_escrow_is_refunded(self, escrow_flow, automation, contracts, orchestrator,
                                           fake_gateway, reload, now):
        contract = escrow_flow.draft()
        contracts.submit_for_acceptance(contract.id, contract.requester_id, now=now)
        order = await orchestrator.create_contract_payment_order(contract.id, now=now)
        await orchestrator.capture_contract_payment(order["order_id"], now=now)

        report = await automation.run_pairing_expiry(now=now + timedelta(hours=1))

        assert report.processed == 1
        assert reload(Payment, order["payment_id"]).status == PaymentStatus.REFUNDED.value
        stored = reload(Contract, contract.id)
        assert stored.status == ContractStatus.CANCELLED.value
        assert stored.escrow_status == EscrowState.REFUNDED.value
        assert fake_gateway.refunds == [f"CAP-{order['order_id']}"]


class TestScheduledStarts:

    @pytest.mark.asyncio
    async def test_non_escrow_contract_starts_on_start_date(self, escrow_flow, automation, reload, now):
        contract = escrow_flow.accepted(escrow_enabled=False)

        report = await automation.run_scheduled_starts(now=now + timedelta(minutes=1))

        assert report.processed == 1
        assert reload(Contract, contract.id).status == ContractStatus.IN_PROGRESS.value

    @pytest.mark.asyncio
    async def test_escrow_contract_waits_for_payment(self, escrow_flow, automation, reload, now):
        contract = escrow_flow.accepted()

        report = await automation.run_scheduled_starts(now=now + timedelta(days=1))

        assert report.processed == 0
        assert reload(Contract, contract.id).status == ContractStatus.ACCEPTED.value


class TestStaleOrders:

    @pytest.mark.asyncio
    async def test_abandoned_order_fails(self, escrow_flow, automation, orchestrator, reload, now):
        contract = escrow_flow.accepted()
        order = await orchestrator.create_contract_payment_order(contract.id, now=now)

        kept = await automation.run_stale_orders(now=now + timedelta(hours=1))
        expired = await automation.run_stale_orders(now=now + timedelta(hours=80))

        assert kept.processed == 0
        assert expired.processed == 1
        assert reload(Payment, order["payment_id"]).status == PaymentStatus.FAILED.value


class TestSweepCoordination:

    @pytest.mark.asyncio
    async def test_sweep_skips_when_lock_is_held(self, escrow_flow, automation, session_factory, reload, now):
        contract, payment_id = await escrow_flow.awaiting_approval()
        sweep_time = now + timedelta(days=8)
        other_instance = DistributedLockService(session_factory=session_factory)
        assert other_instance.try_acquire("sweep:auto_release", timeout=300, now=sweep_time).acquired

        report = await automation.run_auto_release(now=sweep_time)

        assert report.lock_acquired is False
        assert reload(Payment, payment_id).status == PaymentStatus.HELD_ESCROW.value

    @pytest.mark.asyncio
    async def test_expired_lock_is_reclaimed(self, escrow_flow, automation, session_factory, now):
        await escrow_flow.awaiting_approval()
        sweep_time = now + timedelta(days=8)
        crashed = DistributedLockService(session_factory=session_factory)
        crashed.try_acquire("sweep:auto_release", timeout=60, now=sweep_time - timedelta(hours=1))

        report = await automation.run_auto_release(now=sweep_time)

        assert report.lock_acquired is True
        assert report.processed == 1

    @pytest.mark.asyncio
    async def test_time_budget_defers_remaining_work(self, escrow_flow, orchestrator, session_factory, reload, now):
        contract, payment_id = await escrow_flow.awaiting_approval()
        automation = EscrowAutomation(orchestrator, session_factory=session_factory,
                                      time_budget_seconds=0, clock=lambda: 100.0)

        report = await automation.run_auto_release(now=now + timedelta(days=8))

        assert report.budget_exhausted is True
        assert report.processed == 0
        assert reload(Payment, payment_id).status == PaymentStatus.HELD_ESCROW.value

    @pytest.mark.asyncio
    async def test_run_all_reports_every_sweep(self, automation, now):
        reports = await automation.run_all(now=now)

        assert set(reports) == {
            "pairing_expiry", "scheduled_start", "approval_reminder", "auto_release",
            "overdue", "stale_orders", "audit_retry", "audit_retention",
        }
        assert all(r.lock_acquired for r in reports.values())
