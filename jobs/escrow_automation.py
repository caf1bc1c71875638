"""
Escrow automation sweeps
Auto-release, approval reminders, overdue flags, pairing expiry, scheduled
starts, stale orders and audit housekeeping.

Every sweep takes ``now`` explicitly, runs under a per-sweep DistributedLock,
claims each contract with a conditional UPDATE before acting on it, and stops
after a batch size or time budget; whatever is left is picked up next tick.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import sessionmaker

from config import Config
from models import AuditCategory, Contract, ContractStatus, EscrowState, utcnow
from services.escrow_orchestrator import EscrowOrchestrator
from services.notification_service import NotificationEvent
from utils.atomic_transactions import atomic_transaction
from utils.distributed_lock import DistributedLockService
from utils.optimistic_locking import guarded_update

logger = logging.getLogger(__name__)

AUTO_RELEASE_ACTOR = "system:auto_release"


@dataclass
class SweepReport:
    name: str
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    lock_acquired: bool = True
    budget_exhausted: bool = False
    contract_ids: List[int] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": self.errors,
            "lock_acquired": self.lock_acquired,
            "budget_exhausted": self.budget_exhausted,
        }


class EscrowAutomation:
    """Time-driven contract maintenance, safe to run from several instances"""

    def __init__(self, orchestrator: EscrowOrchestrator,
                 session_factory: Optional[sessionmaker] = None,
                 lock_service: Optional[DistributedLockService] = None,
                 batch_size: Optional[int] = None,
                 time_budget_seconds: Optional[float] = None,
                 claim_timeout: timedelta = timedelta(hours=1),
                 clock: Optional[Callable[[], float]] = None):
        self.orchestrator = orchestrator
        self.session_factory = session_factory or orchestrator.session_factory
        self.locks = lock_service or DistributedLockService(session_factory=self.session_factory)
        self.batch_size = batch_size or Config.SWEEP_BATCH_SIZE
        self.time_budget = time_budget_seconds if time_budget_seconds is not None else Config.SWEEP_TIME_BUDGET_SECONDS
        self.claim_timeout = claim_timeout
        self.clock = clock or time.monotonic
        self.instance_id = f"sweeper_{uuid.uuid4().hex[:12]}"

    @property
    def contracts(self):
        return self.orchestrator.contracts

    @property
    def ledger(self):
        return self.orchestrator.ledger

    @property
    def audit(self):
        return self.orchestrator.audit

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    async def _run(self, name: str, now: datetime,
                   body: Callable[[SweepReport, datetime, float], Awaitable[None]]) -> SweepReport:
        report = SweepReport(name)
        lock_timeout = max(60, int(self.time_budget) * 2)
        with self.locks.acquire(f"sweep:{name}", timeout=lock_timeout,
                                metadata={"instance": self.instance_id}, now=now) as lock:
            if not lock.acquired:
                logger.info(f"SWEEP_SKIPPED: {name} already running elsewhere ({lock.error})")
                report.lock_acquired = False
                return report
            deadline = self.clock() + self.time_budget
            await body(report, now, deadline)

        if report.processed or report.errors or report.budget_exhausted:
            logger.info(
                f"SWEEP_DONE: {name} processed={report.processed} skipped={report.skipped} "
                f"errors={report.errors} budget_exhausted={report.budget_exhausted}"
            )
        return report

    def _out_of_time(self, report: SweepReport, deadline: float) -> bool:
        if self.clock() >= deadline:
            report.budget_exhausted = True
            logger.warning(f"⚠️ SWEEP_TIME_BUDGET: {report.name} stopping, rest deferred to next run")
            return True
        return False

    def _select_ids(self, *criteria, order_by) -> List[int]:
        with atomic_transaction(session_factory=self.session_factory) as s:
            return [
                cid for (cid,) in s.query(Contract.id)
                .filter(Contract.is_deleted.is_(False), *criteria)
                .order_by(order_by, Contract.id.asc())
                .limit(self.batch_size)
            ]

    def _claim(self, contract_id: int, expected_status: str, values: Dict[str, Any],
               extra_criteria, action: Optional[str] = None, now: Optional[datetime] = None) -> bool:
        with atomic_transaction(session_factory=self.session_factory) as s:
            claimed = guarded_update(
                s, Contract, contract_id,
                expected_status=expected_status,
                values=values,
                extra_criteria=extra_criteria,
            )
            if claimed and action:
                self.audit.record(
                    s,
                    performed_by="system",
                    action=action,
                    category=AuditCategory.CONTRACT.value,
                    target_model="Contract",
                    target_id=contract_id,
                    description=action.replace("_", " "),
                    now=now,
                )
            return claimed

    # ------------------------------------------------------------------
    # auto-release
    # ------------------------------------------------------------------

    async def run_auto_release(self, now: Optional[datetime] = None) -> SweepReport:
        return await self._run("auto_release", now or utcnow(), self._auto_release)

    async def _auto_release(self, report: SweepReport, now: datetime, deadline: float):
        cutoff = now - timedelta(days=Config.ESCROW_AUTO_RELEASE_DAYS)
        stale_claim = now - self.claim_timeout
        unclaimed = or_(Contract.auto_release_claimed_by.is_(None), Contract.auto_release_claimed_at < stale_claim)

        candidates = self._select_ids(
            Contract.status == ContractStatus.WAITING_APPROVAL.value,
            Contract.escrow_enabled.is_(True),
            Contract.escrow_released.is_(False),
            Contract.escrow_payment_id.isnot(None),
            Contract.work_completed_at <= cutoff,
            unclaimed,
            order_by=Contract.work_completed_at.asc(),
        )
        for contract_id in candidates:
            if self._out_of_time(report, deadline):
                break
            if not self._claim(
                contract_id, ContractStatus.WAITING_APPROVAL.value,
                {"auto_release_claimed_by": self.instance_id, "auto_release_claimed_at": now},
                [unclaimed],
            ):
                report.skipped += 1
                continue

            try:
                contract = self.contracts.get_contract(contract_id)
                result = self.ledger.release_escrow(
                    contract.escrow_payment_id, AUTO_RELEASE_ACTOR, now=now, auto=True
                )
            except Exception as e:
                report.errors += 1
                logger.error(f"❌ AUTO_RELEASE_FAILED: contract={contract_id}: {e}")
                self._unclaim(contract_id)
                continue

            if not result.transitioned:
                report.skipped += 1
                continue
            report.processed += 1
            report.contract_ids.append(contract_id)
            await self.orchestrator.notify_release(result, auto=True)
            logger.info(f"✅ AUTO_RELEASED: contract={contract_id} payment={result.payment.id}")

    def _unclaim(self, contract_id: int):
        with atomic_transaction(session_factory=self.session_factory) as s:
            guarded_update(
                s, Contract, contract_id,
                expected_status=ContractStatus.WAITING_APPROVAL.value,
                values={"auto_release_claimed_by": None, "auto_release_claimed_at": None},
                extra_criteria=[Contract.auto_release_claimed_by == self.instance_id],
            )

    # ------------------------------------------------------------------
    # reminders and overdue flags
    # ------------------------------------------------------------------

    async def run_reminders(self, now: Optional[datetime] = None) -> SweepReport:
        return await self._run("approval_reminder", now or utcnow(), self._reminders)

    async def _reminders(self, report: SweepReport, now: datetime, deadline: float):
        window_start = now - timedelta(days=Config.ESCROW_AUTO_RELEASE_DAYS)
        window_end = now - timedelta(days=Config.ESCROW_REMINDER_DAYS)
        not_sent = Contract.approval_reminder_sent.is_(False)

        candidates = self._select_ids(
            Contract.status == ContractStatus.WAITING_APPROVAL.value,
            Contract.escrow_enabled.is_(True),
            Contract.escrow_status == EscrowState.HELD_ESCROW.value,
            Contract.work_completed_at > window_start,
            Contract.work_completed_at <= window_end,
            not_sent,
            order_by=Contract.work_completed_at.asc(),
        )
        for contract_id in candidates:
            if self._out_of_time(report, deadline):
                break
            if not self._claim(
                contract_id, ContractStatus.WAITING_APPROVAL.value,
                {"approval_reminder_sent": True, "approval_reminder_sent_at": now},
                [not_sent], action="approval_reminder_sent", now=now,
            ):
                report.skipped += 1
                continue

            contract = self.contracts.get_contract(contract_id)
            auto_release_at = contract.work_completed_at + timedelta(days=Config.ESCROW_AUTO_RELEASE_DAYS)
            await self.orchestrator.notifier.safe_send(contract.requester_id, NotificationEvent.APPROVAL_REMINDER, {
                "contract_id": contract.id,
                "auto_release_at": auto_release_at.isoformat(),
            })
            report.processed += 1
            report.contract_ids.append(contract_id)

    async def run_overdue(self, now: Optional[datetime] = None) -> SweepReport:
        return await self._run("overdue", now or utcnow(), self._overdue)

    async def _overdue(self, report: SweepReport, now: datetime, deadline: float):
        not_flagged = Contract.overdue_notified_at.is_(None)
        candidates = self._select_ids(
            Contract.status == ContractStatus.IN_PROGRESS.value,
            Contract.end_date.isnot(None),
            Contract.end_date < now,
            not_flagged,
            order_by=Contract.end_date.asc(),
        )
        for contract_id in candidates:
            if self._out_of_time(report, deadline):
                break
            if not self._claim(
                contract_id, ContractStatus.IN_PROGRESS.value,
                {"overdue_notified_at": now}, [not_flagged],
                action="contract_overdue_flagged", now=now,
            ):
                report.skipped += 1
                continue

            contract = self.contracts.get_contract(contract_id)
            await self.orchestrator.notify_parties(contract, NotificationEvent.CONTRACT_OVERDUE, {
                "end_date": contract.end_date.isoformat(),
            })
            report.processed += 1
            report.contract_ids.append(contract_id)

    # ------------------------------------------------------------------
    # lifecycle housekeeping
    # ------------------------------------------------------------------

    async def run_pairing_expiry(self, now: Optional[datetime] = None) -> SweepReport:
        return await self._run("pairing_expiry", now or utcnow(), self._pairing_expiry)

    async def _pairing_expiry(self, report: SweepReport, now: datetime, deadline: float):
        candidates = self._select_ids(
            Contract.status == ContractStatus.PENDING.value,
            Contract.pairing_expiry.isnot(None),
            Contract.pairing_expiry <= now,
            order_by=Contract.pairing_expiry.asc(),
        )
        for contract_id in candidates:
            if self._out_of_time(report, deadline):
                break
            try:
                contract = self.contracts.get_contract(contract_id)
                if contract.escrow_status == EscrowState.HELD_ESCROW.value and contract.escrow_payment_id:
                    outcome = await self.orchestrator.refund_payment(
                        contract.escrow_payment_id, "pairing_expired", actor="system:pairing_expiry", now=now
                    )
                    expired = outcome.transitioned
                else:
                    expired = self.contracts.expire_pairing(contract_id, now=now)
            except Exception as e:
                report.errors += 1
                logger.error(f"❌ PAIRING_EXPIRY_FAILED: contract={contract_id}: {e}")
                continue
            if not expired:
                report.skipped += 1
                continue
            contract = self.contracts.get_contract(contract_id)
            await self.orchestrator.notify_parties(contract, NotificationEvent.PAIRING_EXPIRED)
            report.processed += 1
            report.contract_ids.append(contract_id)

    async def run_scheduled_starts(self, now: Optional[datetime] = None) -> SweepReport:
        return await self._run("scheduled_start", now or utcnow(), self._scheduled_starts)

    async def _scheduled_starts(self, report: SweepReport, now: datetime, deadline: float):
        candidates = self._select_ids(
            Contract.status == ContractStatus.ACCEPTED.value,
            Contract.escrow_enabled.is_(False),
            Contract.start_date.isnot(None),
            Contract.start_date <= now,
            order_by=Contract.start_date.asc(),
        )
        for contract_id in candidates:
            if self._out_of_time(report, deadline):
                break
            try:
                self.contracts.start_work(contract_id, actor="system:scheduler", now=now)
            except Exception as e:
                report.errors += 1
                logger.error(f"❌ SCHEDULED_START_FAILED: contract={contract_id}: {e}")
                continue
            report.processed += 1
            report.contract_ids.append(contract_id)

    async def run_stale_orders(self, now: Optional[datetime] = None) -> SweepReport:
        return await self._run("stale_orders", now or utcnow(), self._stale_orders)

    async def _stale_orders(self, report: SweepReport, now: datetime, deadline: float):
        expired = self.ledger.expire_stale_orders(now=now, limit=self.batch_size)
        report.processed = len(expired)

    async def run_audit_retention(self, now: Optional[datetime] = None) -> SweepReport:
        return await self._run("audit_retention", now or utcnow(), self._audit_retention)

    async def _audit_retention(self, report: SweepReport, now: datetime, deadline: float):
        with atomic_transaction(session_factory=self.session_factory) as s:
            report.processed = self.audit.cleanup_expired(s, now=now)

    async def run_audit_retry(self, now: Optional[datetime] = None) -> SweepReport:
        return await self._run("audit_retry", now or utcnow(), self._audit_retry)

    async def _audit_retry(self, report: SweepReport, now: datetime, deadline: float):
        report.processed = self.audit.flush_retry_queue(self.session_factory)

    async def run_all(self, now: Optional[datetime] = None) -> Dict[str, SweepReport]:
        """Every sweep once, in dependency order"""
        current = now or utcnow()
        reports = {}
        for sweep in (self.run_pairing_expiry, self.run_scheduled_starts, self.run_reminders,
                      self.run_auto_release, self.run_overdue, self.run_stale_orders,
                      self.run_audit_retry, self.run_audit_retention):
            report = await sweep(current)
            reports[report.name] = report
        return reports
