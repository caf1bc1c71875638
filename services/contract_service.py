"""
Contract lifecycle service
Every status change is validated against ContractStateValidator and written as a
single UPDATE guarded by the expected current status
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import (
    AuditCategory, AuditSeverity, Contract, ContractStatus, EscrowState, Job,
    Payment, PaymentStatus, PaymentType, User, utcnow
)
from services.audit_trail_service import AuditTrailService
from services.referral_service import ReferralReward, ReferralService
from utils.atomic_transactions import atomic_transaction, locked_row
from utils.commission_calculator import CommissionCalculator
from utils.contract_state_machine import ContractStateValidator
from utils.db_advisory_locks import advisory_locks
from utils.exceptions import (
    AllocationExceeded, ConcurrentModification, InvalidTransition, NotFound, PairingCodeInvalid,
    PairingExpired, ValidationError
)
from utils.money import Money
from utils.optimistic_locking import guarded_update

logger = logging.getLogger(__name__)

AUDITED_FIELDS = (
    "status", "escrow_status", "escrow_amount", "base_price", "commission",
    "total_price", "start_date", "end_date", "extension_count",
    "pending_new_price", "pending_extension_days", "is_deleted",
)


@dataclass
class ExtensionOutcome:
    contract: Contract
    accepted: bool
    price_delta: Optional[Money] = None
    commission_delta: Optional[Money] = None


def generate_pairing_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


class ContractService:
    """State machine for contracts: pairing, start, completion, disputes, extensions"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 audit: Optional[AuditTrailService] = None,
                 referrals: Optional[ReferralService] = None):
        self.session_factory = session_factory
        self.audit = audit or AuditTrailService(session_factory=session_factory)
        self.referrals = referrals or ReferralService(session_factory=session_factory, audit=self.audit)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _snapshot(contract: Contract) -> Dict[str, Any]:
        return {field: getattr(contract, field) for field in AUDITED_FIELDS}

    @staticmethod
    def _get(session: Session, contract_id: int) -> Contract:
        contract = session.get(Contract, contract_id)
        if contract is None:
            raise NotFound(f"Contract {contract_id} not found")
        return contract

    @staticmethod
    def _require_party(contract: Contract, user_id: int) -> str:
        if user_id == contract.requester_id:
            return "requester"
        if user_id == contract.worker_id:
            return "worker"
        raise ValidationError(f"User {user_id} is not a party to contract {contract.id}")

    def _audit(self, session: Session, contract: Contract, before: Dict[str, Any], actor: Any,
               action: str, now: datetime, description: str = "",
               severity: Optional[str] = None, extra: Optional[Dict[str, Any]] = None):
        self.audit.record(
            session,
            performed_by=actor if actor is not None else "system",
            action=action,
            category=AuditCategory.CONTRACT.value,
            severity=severity,
            target_model="Contract",
            target_id=contract.id,
            description=description or action,
            changes=self.audit.diff(before, self._snapshot(contract)),
            extra_data=extra,
            now=now,
        )

    @staticmethod
    def _has_pending_topup(session: Session, contract_id: int) -> bool:
        return session.query(Payment.id).filter(
            Payment.contract_id == contract_id,
            Payment.payment_type == PaymentType.EXTENSION_TOPUP.value,
            Payment.status == PaymentStatus.PENDING.value,
        ).first() is not None

    def _transition(self, session: Session, contract: Contract, target: str, *,
                    actor: Any, action: str, now: datetime,
                    values: Optional[Dict[str, Any]] = None,
                    expected: Optional[Union[str, Iterable[str]]] = None,
                    severity: Optional[str] = None, description: str = "",
                    extra_criteria=None) -> Contract:
        current = contract.status
        ContractStateValidator.validate_transition(current, target, contract.id)
        before = self._snapshot(contract)

        update_values = {"status": target}
        update_values.update(values or {})
        moved = guarded_update(
            session, Contract, contract.id,
            expected_status=expected or current,
            values=update_values,
            extra_criteria=extra_criteria,
        )
        if not moved:
            applied = self._get(session, contract.id).status
            logger.info(f"CONTRACT_TRANSITION_LOST: contract={contract.id} {current} -> {target}, now {applied}")
            raise InvalidTransition("Contract", applied, target, "contract changed concurrently")

        self._audit(session, contract, before, actor, action, now, description, severity)
        logger.info(f"CONTRACT_{action.upper()}: contract={contract.id} {current} -> {target}")
        return contract

    @staticmethod
    def committed_budget(session: Session, job_id: int, exclude_contract_id: Optional[int] = None) -> int:
        """Sum of live contract shares on a job; unallocated contracts count at their base price"""
        query = session.query(
            func.coalesce(func.sum(func.coalesce(Contract.allocated_amount, Contract.base_price)), 0)
        ).filter(
            Contract.job_id == job_id,
            Contract.status != ContractStatus.CANCELLED.value,
        )
        if exclude_contract_id is not None:
            query = query.filter(Contract.id != exclude_contract_id)
        return int(query.scalar() or 0)

    def _check_job_capacity(self, session: Session, job: Job, amount: int):
        active = session.query(Contract.id).filter(
            Contract.job_id == job.id,
            Contract.status != ContractStatus.CANCELLED.value,
        ).count()
        if active >= (job.max_workers or 1):
            raise ValidationError(f"Job {job.id} accepts at most {job.max_workers} worker(s)")
        committed = self.committed_budget(session, job.id)
        if committed + amount > job.price:
            logger.info(f"ALLOCATION_EXCEEDED: job={job.id} price={job.price} committed={committed} requested={amount}")
            raise AllocationExceeded(f"Contracts total {committed + amount} exceeds job price {job.price}")

    @staticmethod
    def _reset_monthly_quota(user: User, now: datetime):
        reset_at = user.monthly_contracts_reset_at
        if reset_at is None or (reset_at.year, reset_at.month) != (now.year, now.month):
            user.monthly_contracts_used = 0
            user.monthly_contracts_reset_at = now

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------

    def create_contract(self, job_id: int, worker_id: int, base_price: int,
                        start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                        escrow_enabled: bool = True, allocated_amount: Optional[int] = None,
                        percentage_of_budget: Optional[Decimal] = None,
                        now: Optional[datetime] = None,
                        session: Optional[Session] = None) -> Contract:
        """Price a new draft contract with the requester's commission quote"""
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            direct = allocated_amount is None
            if direct:
                # allocation callers already hold the job lock and check the budget
                advisory_locks.job_allocation_lock(s, job_id)
                job = locked_row(s, Job, job_id)
            else:
                job = s.get(Job, job_id)
                if job is None:
                    raise NotFound(f"Job {job_id} not found")
            if worker_id == job.requester_id:
                raise ValidationError("Requester cannot be the worker on their own job")
            if s.get(User, worker_id) is None:
                raise NotFound(f"User {worker_id} not found")
            if start_date and end_date and end_date <= start_date:
                raise ValidationError("Contract end date must be after its start date")

            requester = locked_row(s, User, job.requester_id)
            self._reset_monthly_quota(requester, current)

            price = Money(base_price, job.currency)
            if price.amount <= 0:
                raise ValidationError("Contract price must be positive")
            if direct:
                self._check_job_capacity(s, job, price.amount)
            quote = CommissionCalculator.quote_for_user(requester, price)

            requester.free_contracts_remaining = quote.free_contracts_remaining_after
            if quote.counts_towards_monthly_quota:
                requester.monthly_contracts_used = (requester.monthly_contracts_used or 0) + 1

            contract = Contract(
                job_id=job.id,
                requester_id=job.requester_id,
                worker_id=worker_id,
                currency=price.currency,
                base_price=price.amount,
                commission=quote.commission.amount,
                total_price=quote.total_price.amount,
                commission_rate=quote.effective_rate.value,
                consumed_free_credit=quote.consumed_free_credit,
                status=ContractStatus.DRAFT.value,
                start_date=start_date,
                end_date=end_date,
                escrow_enabled=escrow_enabled,
                escrow_status=EscrowState.PENDING.value,
                allocated_amount=allocated_amount,
                percentage_of_budget=percentage_of_budget,
                extension_history=[],
                created_at=current,
                updated_at=current,
            )
            s.add(contract)
            s.flush()

            self.audit.record(
                s,
                performed_by=job.requester_id,
                action="contract_created",
                category=AuditCategory.CONTRACT.value,
                target_model="Contract",
                target_id=contract.id,
                description=f"Contract for job {job.id} priced at {quote.total_price}",
                extra_data={
                    "base_price": price.amount,
                    "commission": quote.commission.amount,
                    "rate": str(quote.effective_rate.value),
                    "tier": quote.tier_description,
                    "consumed_free_credit": quote.consumed_free_credit,
                },
                now=current,
            )
            logger.info(
                f"CONTRACT_CREATED: contract={contract.id} job={job.id} base={price} "
                f"commission={quote.commission} rate={quote.effective_rate} ({quote.tier_description})"
            )
            return contract

    def get_contract(self, contract_id: int, session: Optional[Session] = None) -> Contract:
        with atomic_transaction(session, self.session_factory) as s:
            return self._get(s, contract_id)

    def list_contracts_for_user(self, user_id: int, include_deleted: bool = False,
                                session: Optional[Session] = None) -> List[Contract]:
        with atomic_transaction(session, self.session_factory) as s:
            query = s.query(Contract).filter(
                (Contract.requester_id == user_id) | (Contract.worker_id == user_id)
            )
            if not include_deleted:
                query = query.filter(Contract.is_deleted.is_(False))
            return query.order_by(Contract.created_at.desc()).all()

    # ------------------------------------------------------------------
    # draft -> pending -> accepted
    # ------------------------------------------------------------------

    def submit_for_acceptance(self, contract_id: int, actor_id: int, now: Optional[datetime] = None,
                              session: Optional[Session] = None) -> Contract:
        """Proposal accepted: both parties must be identity-verified"""
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = self._get(s, contract_id)
            self._require_party(contract, actor_id)
            ContractStateValidator.validate_transition(contract.status, ContractStatus.PENDING.value, contract.id)

            unverified = [
                user.id for user in (s.get(User, contract.requester_id), s.get(User, contract.worker_id))
                if not user.identity_verified
            ]
            if unverified:
                raise ValidationError(f"Identity verification required for users {unverified}")

            values: Dict[str, Any] = {}
            if contract.escrow_enabled:
                values.update(self._pairing_values(current))
            return self._transition(
                s, contract, ContractStatus.PENDING.value,
                actor=actor_id, action="contract_submitted", now=current, values=values,
            )

    @staticmethod
    def _pairing_values(now: datetime) -> Dict[str, Any]:
        return {
            "pairing_code": generate_pairing_code(),
            "pairing_generated_at": now,
            "pairing_expiry": now + timedelta(minutes=Config.PAIRING_CODE_TTL_MINUTES),
            "requester_confirmed_pairing": False,
            "requester_confirmed_pairing_at": None,
            "worker_confirmed_pairing": False,
            "worker_confirmed_pairing_at": None,
        }

    def regenerate_pairing_code(self, contract_id: int, actor_id: int, now: Optional[datetime] = None,
                                session: Optional[Session] = None) -> Contract:
        """Issue a fresh code; confirmations made with the old code are discarded"""
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = self._get(s, contract_id)
            self._require_party(contract, actor_id)
            if contract.status != ContractStatus.PENDING.value or not contract.escrow_enabled:
                raise InvalidTransition("Contract", contract.status, ContractStatus.PENDING.value,
                                        "pairing codes exist only for pending escrow contracts")
            before = self._snapshot(contract)
            moved = guarded_update(
                s, Contract, contract.id,
                expected_status=ContractStatus.PENDING.value,
                values=self._pairing_values(current),
            )
            if not moved:
                raise ConcurrentModification(f"Contract {contract.id} changed while regenerating pairing code")
            self._audit(s, contract, before, actor_id, "pairing_code_regenerated", current)
            return contract

    def confirm_pairing(self, contract_id: int, user_id: int, code: str,
                        now: Optional[datetime] = None, session: Optional[Session] = None) -> Contract:
        """
        One party confirms the pairing code. When both have confirmed the
        contract is accepted, and moves straight to in_progress if its escrow
        was already captured.
        """
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = self._get(s, contract_id)
            side = self._require_party(contract, user_id)
            if contract.status != ContractStatus.PENDING.value or not contract.escrow_enabled:
                raise InvalidTransition("Contract", contract.status, ContractStatus.ACCEPTED.value,
                                        "pairing requires a pending escrow contract")
            if contract.pairing_expiry is None or current > contract.pairing_expiry:
                logger.info(f"PAIRING_EXPIRED: contract={contract.id} user={user_id}")
                raise PairingExpired(f"Pairing code for contract {contract.id} has expired")
            if not secrets.compare_digest(str(code or "").strip(), contract.pairing_code or ""):
                raise PairingCodeInvalid(f"Invalid pairing code for contract {contract.id}")

            return self._record_party_agreement(
                s, contract, side, user_id, current,
                flag_prefix="confirmed_pairing", action="pairing_confirmed",
            )

    def sign_off(self, contract_id: int, user_id: int, now: Optional[datetime] = None,
                 session: Optional[Session] = None) -> Contract:
        """Dual sign-off for contracts without escrow"""
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = self._get(s, contract_id)
            side = self._require_party(contract, user_id)
            if contract.status != ContractStatus.PENDING.value or contract.escrow_enabled:
                raise InvalidTransition("Contract", contract.status, ContractStatus.ACCEPTED.value,
                                        "sign-off applies to pending contracts without escrow")
            return self._record_party_agreement(
                s, contract, side, user_id, current,
                flag_prefix="signed_off", action="contract_signed_off",
            )

    def _record_party_agreement(self, s: Session, contract: Contract, side: str, user_id: int,
                                now: datetime, flag_prefix: str, action: str) -> Contract:
        other = "worker" if side == "requester" else "requester"
        flag = f"{side}_{flag_prefix}"
        values: Dict[str, Any] = {flag: True}
        if hasattr(Contract, f"{flag}_at"):
            values[f"{flag}_at"] = now

        if not getattr(contract, f"{other}_{flag_prefix}"):
            before = self._snapshot(contract)
            moved = guarded_update(
                s, Contract, contract.id,
                expected_status=ContractStatus.PENDING.value,
                values=values,
                extra_criteria=[Contract.version == contract.version],
            )
            if not moved:
                raise ConcurrentModification(f"Contract {contract.id} changed during {action}; retry")
            self._audit(s, contract, before, user_id, action, now)
            return contract

        # both sides agreed
        target = ContractStatus.ACCEPTED.value
        if contract.escrow_enabled and contract.escrow_status == EscrowState.HELD_ESCROW.value:
            ContractStateValidator.validate_transition(target, ContractStatus.IN_PROGRESS.value, contract.id)
            values["status"] = ContractStatus.IN_PROGRESS.value
            values["start_date"] = contract.start_date or now
            return self._transition(
                s, contract, target, actor=user_id, action="contract_accepted_and_started", now=now,
                values=values, extra_criteria=[Contract.version == contract.version],
            )
        return self._transition(
            s, contract, target, actor=user_id, action="contract_accepted", now=now,
            values=values, extra_criteria=[Contract.version == contract.version],
        )

    def expire_pairing(self, contract_id: int, now: Optional[datetime] = None,
                       session: Optional[Session] = None) -> bool:
        """pending -> cancelled once the pairing window has passed; False if not applicable"""
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = self._get(s, contract_id)
            if (contract.status != ContractStatus.PENDING.value
                    or contract.pairing_expiry is None or contract.pairing_expiry > current):
                return False
            if contract.escrow_status == EscrowState.HELD_ESCROW.value:
                # captured funds must leave through the refund path
                logger.warning(f"⚠️ PAIRING_EXPIRED_WITH_ESCROW: contract={contract.id} left for refund")
                return False
            try:
                self._transition(
                    s, contract, ContractStatus.CANCELLED.value, actor="system",
                    action="pairing_expired", now=current,
                    values={"cancelled_at": current, "cancellation_reason": "pairing_expired"},
                    extra_criteria=[Contract.pairing_expiry <= current],
                )
            except InvalidTransition:
                return False
            self._fail_open_orders(s, contract.id, "contract_cancelled", current)
            return True

    # ------------------------------------------------------------------
    # accepted -> in_progress -> waiting_approval -> completed
    # ------------------------------------------------------------------

    def start_work(self, contract_id: int, actor: Any = "system", now: Optional[datetime] = None,
                   session: Optional[Session] = None) -> Contract:
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = self._get(s, contract_id)
            if contract.escrow_enabled and contract.escrow_status != EscrowState.HELD_ESCROW.value:
                raise InvalidTransition("Contract", contract.status, ContractStatus.IN_PROGRESS.value,
                                        "escrow payment not held")
            return self._transition(
                s, contract, ContractStatus.IN_PROGRESS.value, actor=actor,
                action="contract_started", now=current,
                values={"start_date": contract.start_date or current},
            )

    def mark_work_complete(self, contract_id: int, worker_id: int, now: Optional[datetime] = None,
                           session: Optional[Session] = None) -> Contract:
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = self._get(s, contract_id)
            if worker_id != contract.worker_id:
                raise ValidationError("Only the worker can mark work as complete")
            if contract.pending_extension_days is not None:
                raise ValidationError("Resolve the pending extension request first")
            if self._has_pending_topup(s, contract.id):
                raise ValidationError("The extension top-up must be paid or expire first")
            return self._transition(
                s, contract, ContractStatus.WAITING_APPROVAL.value, actor=worker_id,
                action="work_completed", now=current,
                values={
                    "work_completed_at": current,
                    "worker_confirmed": True,
                    "worker_confirmed_at": current,
                },
            )

    def complete(self, session: Session, contract_id: int, actor: Any, now: datetime,
                 auto_released: bool = False,
                 extra_values: Optional[Dict[str, Any]] = None) -> List[ReferralReward]:
        """
        waiting_approval|disputed -> completed inside the caller's transaction.
        Notifies the referral ledger for both parties.
        """
        contract = self._get(session, contract_id)
        values: Dict[str, Any] = {"completed_at": now}
        values.update(extra_values or {})
        if auto_released:
            values["escrow_auto_released"] = True
        else:
            values["requester_confirmed"] = True
            values["requester_confirmed_at"] = now
        if contract.status == ContractStatus.DISPUTED.value:
            values["dispute_resolved_at"] = now
            values["dispute_resolution"] = "released"

        self._transition(
            session, contract, ContractStatus.COMPLETED.value, actor=actor,
            action="contract_auto_completed" if auto_released else "contract_completed",
            now=now, values=values,
            expected=(ContractStatus.WAITING_APPROVAL.value, ContractStatus.DISPUTED.value),
        )
        # a top-up order still open at completion can never be captured into escrow
        self._fail_open_orders(session, contract.id, "contract_completed", now)

        rewards = []
        for user_id in (contract.requester_id, contract.worker_id):
            reward = self.referrals.mark_first_contract_completed(user_id, now=now, session=session)
            if reward is not None:
                rewards.append(reward)
        return rewards

    def confirm_completion(self, contract_id: int, requester_id: int, now: Optional[datetime] = None,
                           session: Optional[Session] = None) -> List[ReferralReward]:
        """Requester approval for contracts without escrow (escrow contracts release funds instead)"""
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = self._get(s, contract_id)
            if requester_id != contract.requester_id:
                raise ValidationError("Only the requester can confirm completion")
            if contract.escrow_enabled:
                raise ValidationError("Escrow contracts are completed by releasing the escrow payment")
            return self.complete(s, contract_id, requester_id, current)

    # ------------------------------------------------------------------
    # disputes and cancellation
    # ------------------------------------------------------------------

    def open_dispute(self, contract_id: int, user_id: int, reason: str,
                     now: Optional[datetime] = None, session: Optional[Session] = None) -> Contract:
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = self._get(s, contract_id)
            self._require_party(contract, user_id)
            if not reason or not reason.strip():
                raise ValidationError("A dispute needs a reason")
            return self._transition(
                s, contract, ContractStatus.DISPUTED.value, actor=user_id,
                action="dispute_opened", now=current,
                values={"disputed_at": current, "disputed_by": user_id, "dispute_reason": reason.strip()},
                # auto-release claims the row first; a claimed contract cannot be disputed
                extra_criteria=[Contract.auto_release_claimed_by.is_(None)],
            )

    def cancel_contract(self, contract_id: int, actor_id: int, reason: str = "",
                        now: Optional[datetime] = None, session: Optional[Session] = None) -> Contract:
        """Explicit cancellation: only before work starts and while no escrow is held"""
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = self._get(s, contract_id)
            self._require_party(contract, actor_id)
            if contract.status not in ContractStateValidator.PRE_WORK_STATES:
                raise InvalidTransition("Contract", contract.status, ContractStatus.CANCELLED.value,
                                        "work already started; use the dispute or refund path")
            if contract.escrow_status == EscrowState.HELD_ESCROW.value:
                raise InvalidTransition("Contract", contract.status, ContractStatus.CANCELLED.value,
                                        "escrow is held; cancellation must go through a refund")
            self._transition(
                s, contract, ContractStatus.CANCELLED.value, actor=actor_id,
                action="contract_cancelled", now=current,
                values={"cancelled_at": current, "cancelled_by": actor_id, "cancellation_reason": reason or None},
                extra_criteria=[Contract.escrow_status != EscrowState.HELD_ESCROW.value],
            )
            self._fail_open_orders(s, contract.id, "contract_cancelled", current)
            return contract

    def cancel_for_refund(self, session: Session, contract_id: int, actor: Any, reason: str,
                          now: datetime) -> Contract:
        """Refund path: any non-terminal contract -> cancelled with escrow refunded"""
        contract = self._get(session, contract_id)
        values: Dict[str, Any] = {
            "cancelled_at": now,
            "cancellation_reason": reason,
        }
        if contract.escrow_enabled:
            values["escrow_status"] = EscrowState.REFUNDED.value
        if isinstance(actor, int):
            values["cancelled_by"] = actor
        if contract.status == ContractStatus.DISPUTED.value:
            values["dispute_resolved_at"] = now
            values["dispute_resolution"] = "refunded"
        self._transition(
            session, contract, ContractStatus.CANCELLED.value, actor=actor,
            action="contract_refunded", now=now, values=values, severity=AuditSeverity.HIGH.value,
        )
        self._fail_open_orders(session, contract.id, "contract_cancelled", now)
        return contract

    def _fail_open_orders(self, session: Session, contract_id: int, reason: str, now: datetime):
        open_ids = [
            payment_id for (payment_id,) in session.query(Payment.id).filter(
                Payment.contract_id == contract_id,
                Payment.status == PaymentStatus.PENDING.value,
            )
        ]
        for payment_id in open_ids:
            guarded_update(
                session, Payment, payment_id,
                expected_status=PaymentStatus.PENDING.value,
                values={"status": PaymentStatus.FAILED.value, "failure_reason": reason, "failed_at": now},
            )

    def soft_delete_contract(self, contract_id: int, actor_id: int, reason: str = "",
                             now: Optional[datetime] = None, session: Optional[Session] = None) -> Contract:
        """Terminal contracts only; rows are never physically removed"""
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = self._get(s, contract_id)
            if not ContractStateValidator.is_terminal_state(contract.status):
                raise InvalidTransition("Contract", contract.status, "deleted",
                                        "only completed or cancelled contracts can be deleted")
            if contract.is_deleted:
                return contract
            before = self._snapshot(contract)
            moved = guarded_update(
                s, Contract, contract.id,
                expected_status=contract.status,
                values={
                    "is_deleted": True,
                    "deleted_at": current,
                    "deleted_by": actor_id,
                    "deletion_reason": reason or None,
                },
            )
            if not moved:
                raise ConcurrentModification(f"Contract {contract.id} changed during deletion")
            self._audit(s, contract, before, actor_id, "contract_deleted", current,
                        description=reason or "contract deleted", severity=AuditSeverity.CRITICAL.value)
            return contract

    # ------------------------------------------------------------------
    # extensions
    # ------------------------------------------------------------------

    def request_extension(self, contract_id: int, requested_by: int, days: int,
                          new_price: Optional[int] = None, now: Optional[datetime] = None,
                          session: Optional[Session] = None) -> Contract:
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = self._get(s, contract_id)
            self._require_party(contract, requested_by)
            if contract.status not in ContractStateValidator.EXTENDABLE_STATES:
                raise InvalidTransition("Contract", contract.status, contract.status,
                                        "extensions are allowed only while accepted or in progress")
            if contract.pending_extension_days is not None:
                raise ValidationError(f"Contract {contract.id} already has a pending extension request")
            if self._has_pending_topup(s, contract.id):
                raise ValidationError(f"Contract {contract.id} has an unpaid extension top-up")
            if (contract.extension_count or 0) >= Config.MAX_CONTRACT_EXTENSIONS:
                raise ValidationError(
                    f"Contract {contract.id} reached the maximum of {Config.MAX_CONTRACT_EXTENSIONS} extension(s)"
                )
            if not isinstance(days, int) or days <= 0 or days > 365:
                raise ValidationError("Extension days must be between 1 and 365")
            if contract.end_date is None:
                raise ValidationError("Contract has no end date to extend")
            if new_price is not None:
                Money(new_price, contract.currency)
                if new_price <= contract.base_price:
                    raise ValidationError("An extension can only increase the contract price")

            before = self._snapshot(contract)
            moved = guarded_update(
                s, Contract, contract.id,
                expected_status=contract.status,
                values={
                    "previous_status": contract.status,
                    "pending_extension_days": days,
                    "pending_new_price": new_price,
                    "extension_requested_by": requested_by,
                    "extension_requested_at": current,
                },
                extra_criteria=[Contract.pending_extension_days.is_(None)],
            )
            if not moved:
                raise ConcurrentModification(f"Contract {contract.id} changed during extension request")
            self._audit(s, contract, before, requested_by, "extension_requested", current,
                        extra={"days": days, "new_price": new_price})
            return contract

    def respond_to_extension(self, contract_id: int, responder_id: int, accept: bool,
                             now: Optional[datetime] = None,
                             session: Optional[Session] = None) -> ExtensionOutcome:
        """
        Counterpart accepts or rejects. Accept extends the end date and reprices
        at the contract's original commission rate; reject restores the
        previous status and discards the staged price.
        """
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = self._get(s, contract_id)
            self._require_party(contract, responder_id)
            if contract.pending_extension_days is None:
                raise ValidationError(f"Contract {contract.id} has no pending extension request")
            if responder_id == contract.extension_requested_by:
                raise ValidationError("The extension must be answered by the other party")
            if contract.status not in ContractStateValidator.EXTENDABLE_STATES:
                raise InvalidTransition("Contract", contract.status, contract.status,
                                        "extension can no longer be applied")

            before = self._snapshot(contract)
            cleared = {
                "previous_status": None,
                "pending_extension_days": None,
                "pending_new_price": None,
                "extension_requested_by": None,
                "extension_requested_at": None,
            }

            if not accept:
                restored = contract.previous_status or contract.status
                moved = guarded_update(
                    s, Contract, contract.id,
                    expected_status=ContractStateValidator.EXTENDABLE_STATES,
                    values=dict(cleared, status=restored),
                    extra_criteria=[Contract.version == contract.version],
                )
                if not moved:
                    raise ConcurrentModification(f"Contract {contract.id} changed during extension response")
                self._audit(s, contract, before, responder_id, "extension_rejected", current)
                return ExtensionOutcome(contract=contract, accepted=False)

            days = contract.pending_extension_days
            new_price = contract.pending_new_price
            previous_end = contract.end_date
            new_end = previous_end + timedelta(days=days)
            values: Dict[str, Any] = dict(cleared, end_date=new_end,
                                          extension_count=(contract.extension_count or 0) + 1)

            price_delta = commission_delta = None
            if new_price is not None:
                quote = CommissionCalculator.at_rate(Money(new_price, contract.currency), contract.commission_rate)
                old_total = Money(contract.total_price, contract.currency)
                old_commission = Money(contract.commission, contract.currency)
                price_delta = quote.total_price - old_total
                commission_delta = quote.commission - old_commission
                values.update(
                    base_price=quote.base_price.amount,
                    commission=quote.commission.amount,
                    total_price=quote.total_price.amount,
                )
                if contract.allocated_amount is not None:
                    self._grow_allocation(s, contract, new_price, values)

            history = list(contract.extension_history or [])
            history.append({
                "days": days,
                "amount": new_price,
                "requested_by": contract.extension_requested_by,
                "approved_by": responder_id,
                "requested_at": contract.extension_requested_at.isoformat() if contract.extension_requested_at else None,
                "approved_at": current.isoformat(),
                "previous_end_date": previous_end.isoformat(),
                "new_end_date": new_end.isoformat(),
            })
            values["extension_history"] = history

            moved = guarded_update(
                s, Contract, contract.id,
                expected_status=ContractStateValidator.EXTENDABLE_STATES,
                values=values,
                extra_criteria=[Contract.version == contract.version],
            )
            if not moved:
                raise ConcurrentModification(f"Contract {contract.id} changed during extension response")
            self._audit(s, contract, before, responder_id, "extension_accepted", current,
                        extra={"days": days, "new_price": new_price})
            return ExtensionOutcome(contract=contract, accepted=True,
                                    price_delta=price_delta, commission_delta=commission_delta)

    @staticmethod
    def _grow_allocation(session: Session, contract: Contract, new_price: int, values: Dict[str, Any]):
        """Keep sum(allocated) <= job price: the job budget grows with the agreed increase"""
        job = locked_row(session, Job, contract.job_id)
        increase = new_price - (contract.allocated_amount or 0)
        if increase > 0:
            job.price = job.price + increase
        values["allocated_amount"] = new_price
        values["percentage_of_budget"] = None
