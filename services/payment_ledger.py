"""
Payment Ledger
Records order intents, captures, escrow holds, releases and refunds.

Every status change is a guarded UPDATE on the expected current status, so
duplicate webhooks, double clicks and the auto-release sweep collapse into a
single transition.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import (
    AuditCategory, Contract, ContractStatus, EscrowState, Payment,
    PaymentStatus, PaymentType, utcnow
)
from services.audit_trail_service import AuditTrailService
from services.contract_service import ContractService
from services.gateway_client import GatewayRegistry
from services.payment_gateway import CaptureResult
from services.referral_service import ReferralReward
from utils.atomic_transactions import atomic_transaction, locked_row
from utils.commission_calculator import CommissionCalculator, SettlementSplit
from utils.contract_state_machine import (
    ContractStateValidator, EscrowStateValidator, PaymentStateValidator
)
from utils.exceptions import (
    GatewayRejected, InvalidAmount, InvalidTransition, NotFound, ValidationError
)
from utils.money import Money, party_email, party_id
from utils.optimistic_locking import guarded_update

logger = logging.getLogger(__name__)

PAYMENT_AUDIT_FIELDS = (
    "status", "amount", "platform_fee", "gateway_order_id", "gateway_capture_id",
    "worker_payment_amount", "escrow_released_by", "refund_id",
)

OPEN_CONTRACT_STATES = (
    ContractStatus.PENDING.value,
    ContractStatus.ACCEPTED.value,
    ContractStatus.IN_PROGRESS.value,
    ContractStatus.WAITING_APPROVAL.value,
    ContractStatus.DISPUTED.value,
)

COMPLETABLE_STATES = (ContractStatus.WAITING_APPROVAL.value, ContractStatus.DISPUTED.value)


@dataclass
class CaptureOutcome:
    transitioned: bool
    payment: Payment


@dataclass
class ReleaseResult:
    transitioned: bool
    payment: Payment
    contract: Optional[Contract] = None
    split: Optional[SettlementSplit] = None
    rewards: List[ReferralReward] = field(default_factory=list)


@dataclass
class RefundOutcome:
    transitioned: bool
    payment: Payment
    contract_cancelled: bool = False


class PaymentLedger:
    """Money movements tied to contracts"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 gateways: Optional[GatewayRegistry] = None,
                 contracts: Optional[ContractService] = None,
                 audit: Optional[AuditTrailService] = None):
        self.session_factory = session_factory
        self.gateways = gateways or GatewayRegistry.from_config()
        self.audit = audit or AuditTrailService(session_factory=session_factory)
        self.contracts = contracts or ContractService(session_factory=session_factory, audit=self.audit)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _snapshot(payment: Payment) -> Dict[str, Any]:
        return {f: getattr(payment, f) for f in PAYMENT_AUDIT_FIELDS}

    @staticmethod
    def _get(session: Session, payment_id: int) -> Payment:
        payment = session.get(Payment, payment_id)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found")
        return payment

    @staticmethod
    def _by_order(session: Session, gateway_order_id: str) -> Payment:
        payment = session.query(Payment).filter(Payment.gateway_order_id == gateway_order_id).first()
        if payment is None:
            raise NotFound(f"No payment for gateway order {gateway_order_id}")
        return payment

    def _audit(self, session: Session, payment: Payment, before: Dict[str, Any], actor: Any,
               action: str, now: datetime, description: str = "",
               category: str = AuditCategory.PAYMENT.value, extra: Optional[Dict[str, Any]] = None):
        self.audit.record(
            session,
            performed_by=actor if actor is not None else "system",
            action=action,
            category=category,
            target_model="Payment",
            target_id=payment.id,
            description=description or action,
            changes=self.audit.diff(before, self._snapshot(payment)),
            extra_data=dict(extra or {}, contract_id=payment.contract_id),
            now=now,
        )

    def get_payment(self, payment_id: int, session: Optional[Session] = None) -> Payment:
        with atomic_transaction(session, self.session_factory) as s:
            return self._get(s, payment_id)

    def find_by_order(self, gateway_order_id: str, session: Optional[Session] = None) -> Payment:
        with atomic_transaction(session, self.session_factory) as s:
            return self._by_order(s, gateway_order_id)

    # ------------------------------------------------------------------
    # open order
    # ------------------------------------------------------------------

    def _prepare_order(self, contract_id: int, payment_type: str, amount: Optional[Money],
                       platform_fee: Optional[Money], provider: Optional[str],
                       now: datetime) -> Payment:
        with atomic_transaction(session_factory=self.session_factory) as s:
            # serializes concurrent order creation for the same contract
            contract = locked_row(s, Contract, contract_id)
            if contract.status not in OPEN_CONTRACT_STATES or contract.is_deleted:
                raise InvalidTransition("Contract", contract.status, "payment",
                                        "contract is not open for payment")

            existing = (
                s.query(Payment)
                .filter(
                    Payment.contract_id == contract.id,
                    Payment.payment_type == payment_type,
                    Payment.status == PaymentStatus.PENDING.value,
                )
                .order_by(Payment.id.desc())
                .first()
            )
            if existing is not None:
                logger.info(f"ORDER_REUSED: payment={existing.id} contract={contract.id}")
                return existing

            if payment_type == PaymentType.CONTRACT_PAYMENT.value:
                if contract.escrow_status in (EscrowState.HELD_ESCROW.value, EscrowState.RELEASED.value):
                    raise ValidationError(f"Contract {contract.id} is already paid")
                amount = amount or Money(contract.total_price, contract.currency)
                platform_fee = platform_fee or Money(contract.commission, contract.currency)
            elif amount is None:
                raise ValidationError("Top-up payments need an explicit amount")

            if amount.currency != contract.currency:
                raise ValidationError(f"Payment currency {amount.currency} differs from contract {contract.currency}")
            if amount.amount <= 0:
                raise InvalidAmount("Payment amount must be positive")
            fee = platform_fee or Money.zero(amount.currency)
            if amount < fee:
                raise InvalidAmount("Platform fee exceeds the payment amount")

            payment = Payment(
                contract_id=contract.id,
                payer_id=contract.requester_id,
                recipient_id=contract.worker_id,
                amount=amount.amount,
                currency=amount.currency,
                platform_fee=fee.amount,
                status=PaymentStatus.PENDING.value,
                payment_type=payment_type,
                is_escrow=contract.escrow_enabled,
                provider=self.gateways.get(provider).provider,
                created_at=now,
                updated_at=now,
            )
            s.add(payment)
            s.flush()
            self._audit(s, payment, {}, contract.requester_id, "payment_created", now,
                        description=f"{payment_type} of {amount} opened")
            logger.info(f"PAYMENT_CREATED: payment={payment.id} contract={contract.id} amount={amount}")
            return payment

    async def open_order(self, contract_id: int, payment_type: str = PaymentType.CONTRACT_PAYMENT.value,
                         amount: Optional[Money] = None, platform_fee: Optional[Money] = None,
                         provider: Optional[str] = None, now: Optional[datetime] = None) -> Payment:
        """
        Create (or reuse) a pending payment and its gateway order.

        A gateway rejection fails the payment; exhausted retries leave it
        pending without an order so the next call tries again.
        """
        current = now or utcnow()
        payment = self._prepare_order(contract_id, payment_type, amount, platform_fee, provider, current)
        if payment.gateway_order_id:
            return payment

        client = self.gateways.get(payment.provider)
        reference = f"contract-{payment.contract_id}-payment-{payment.id}"
        try:
            order = await client.create_order(
                Money(payment.amount, payment.currency),
                f"Contract #{payment.contract_id} {payment.payment_type.replace('_', ' ')}",
                reference,
            )
        except GatewayRejected as e:
            logger.error(f"❌ ORDER_REJECTED: payment={payment.id} provider={payment.provider}: {e}")
            self.mark_failed(payment.id, f"order_rejected: {e.message}", now=current)
            raise

        with atomic_transaction(session_factory=self.session_factory) as s:
            moved = guarded_update(
                s, Payment, payment.id,
                expected_status=PaymentStatus.PENDING.value,
                values={"gateway_order_id": order.order_id, "approval_url": order.approval_url},
                extra_criteria=[Payment.gateway_order_id.is_(None)],
            )
            payment = self._get(s, payment.id)
            if moved:
                self._audit(s, payment, {"gateway_order_id": None}, "system", "payment_order_opened", current,
                            extra={"provider": payment.provider})
                logger.info(f"ORDER_OPENED: payment={payment.id} order={order.order_id}")
            else:
                logger.warning(f"⚠️ ORDER_NOT_ATTACHED: payment={payment.id} changed while opening order")
            return payment

    # ------------------------------------------------------------------
    # capture
    # ------------------------------------------------------------------

    def confirm_capture(self, gateway_order_id: str, capture: CaptureResult,
                        now: Optional[datetime] = None,
                        session: Optional[Session] = None) -> CaptureOutcome:
        """
        Idempotent on gateway_order_id: a payment already past pending is
        returned unchanged.
        """
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            payment = self._by_order(s, gateway_order_id)
            if payment.status != PaymentStatus.PENDING.value:
                if payment.status == PaymentStatus.FAILED.value:
                    logger.error(
                        f"❌ CAPTURE_FOR_FAILED_PAYMENT: payment={payment.id} order={gateway_order_id} "
                        f"capture={capture.capture_id} needs manual refund"
                    )
                else:
                    logger.info(f"CAPTURE_ALREADY_APPLIED: payment={payment.id} status={payment.status}")
                return CaptureOutcome(False, payment)

            if capture.amount is not None and capture.amount != Money(payment.amount, payment.currency):
                logger.error(
                    f"❌ CAPTURE_AMOUNT_MISMATCH: payment={payment.id} expected "
                    f"{Money(payment.amount, payment.currency)} got {capture.amount}"
                )
                raise InvalidAmount(f"Captured amount {capture.amount} does not match payment {payment.id}")

            contract = s.get(Contract, payment.contract_id)
            if contract.status not in OPEN_CONTRACT_STATES:
                raise InvalidTransition("Contract", contract.status, "escrow_held",
                                        "capture arrived for a closed contract")

            target = PaymentStatus.HELD_ESCROW.value if payment.is_escrow else PaymentStatus.COMPLETED.value
            PaymentStateValidator.validate_transition(payment.status, target, payment.id)
            before = self._snapshot(payment)
            values = {
                "status": target,
                "gateway_capture_id": capture.capture_id,
                "gateway_payer_id": party_id(capture.payer),
                "gateway_payer_email": capture.payer_email or party_email(capture.payer),
                "captured_at": current,
            }
            if target == PaymentStatus.COMPLETED.value:
                values["paid_at"] = current
                values["worker_payment_amount"] = payment.amount - payment.platform_fee

            moved = guarded_update(
                s, Payment, payment.id,
                expected_status=PaymentStatus.PENDING.value,
                values=values,
                extra_criteria=[Payment.gateway_order_id == gateway_order_id],
            )
            if not moved:
                logger.info(f"CAPTURE_RACE_LOST: payment={payment.id} order={gateway_order_id}")
                return CaptureOutcome(False, self._get(s, payment.id))

            self._audit(s, payment, before, "gateway", "escrow_held" if payment.is_escrow else "payment_captured",
                        current, category=AuditCategory.ESCROW.value if payment.is_escrow else AuditCategory.PAYMENT.value,
                        extra={"capture_id": capture.capture_id})

            if payment.is_escrow:
                self._hold_on_contract(s, contract, payment, current)

            logger.info(f"✅ PAYMENT_CAPTURED: payment={payment.id} order={gateway_order_id} -> {target}")
            return CaptureOutcome(True, payment)

    def _hold_on_contract(self, session: Session, contract: Contract, payment: Payment, now: datetime):
        if payment.payment_type == PaymentType.EXTENSION_TOPUP.value:
            values = {"escrow_amount": (contract.escrow_amount or 0) + payment.amount}
        else:
            if not EscrowStateValidator.is_valid_transition(contract.escrow_status, EscrowState.HELD_ESCROW.value):
                raise InvalidTransition("Escrow", contract.escrow_status, EscrowState.HELD_ESCROW.value)
            values = {
                "escrow_amount": payment.amount,
                "escrow_status": EscrowState.HELD_ESCROW.value,
                "escrow_payment_id": payment.id,
            }
        guarded_update(session, Contract, contract.id, expected_status=OPEN_CONTRACT_STATES, values=values)

        if (payment.payment_type == PaymentType.CONTRACT_PAYMENT.value
                and contract.status == ContractStatus.ACCEPTED.value):
            self.contracts.start_work(contract.id, actor="gateway", now=now, session=session)

    # ------------------------------------------------------------------
    # release
    # ------------------------------------------------------------------

    def release_escrow(self, payment_id: int, released_by: Any, now: Optional[datetime] = None,
                       auto: bool = False, session: Optional[Session] = None) -> ReleaseResult:
        """
        held_escrow -> completed and the contract -> completed in one
        transaction. Re-invocation on a released payment is a no-op.
        """
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            payment = self._get(s, payment_id)
            contract = s.get(Contract, payment.contract_id)

            if payment.status == PaymentStatus.COMPLETED.value:
                logger.info(f"ESCROW_ALREADY_RELEASED: payment={payment.id}")
                return ReleaseResult(False, payment, contract)
            if payment.status != PaymentStatus.HELD_ESCROW.value:
                raise InvalidTransition("Payment", payment.status, PaymentStatus.COMPLETED.value,
                                        "escrow is not held")
            if contract.status not in COMPLETABLE_STATES:
                raise InvalidTransition("Contract", contract.status, ContractStatus.COMPLETED.value,
                                        "work has not been submitted for approval")

            held = (
                s.query(Payment)
                .filter(Payment.contract_id == contract.id, Payment.status == PaymentStatus.HELD_ESCROW.value)
                .order_by(Payment.id.asc())
                .all()
            )
            # the requested payment first: losing its race means someone else released
            held.sort(key=lambda p: p.id != payment.id)

            total_split = None
            for index, item in enumerate(held):
                split = CommissionCalculator.settlement_split(
                    Money(item.amount, item.currency), Money(item.platform_fee, item.currency)
                )
                before = self._snapshot(item)
                moved = guarded_update(
                    s, Payment, item.id,
                    expected_status=PaymentStatus.HELD_ESCROW.value,
                    values={
                        "status": PaymentStatus.COMPLETED.value,
                        "escrow_released_at": current,
                        "escrow_released_by": str(released_by),
                        "escrow_auto_released": auto,
                        "worker_payment_amount": split.worker_payout.amount,
                        "paid_at": current,
                    },
                )
                if not moved:
                    if index == 0:
                        logger.info(f"ESCROW_RELEASE_RACE_LOST: payment={item.id}")
                        return ReleaseResult(False, self._get(s, payment.id), contract)
                    continue
                total_split = split if total_split is None else SettlementSplit(
                    worker_payout=total_split.worker_payout + split.worker_payout,
                    platform_fee=total_split.platform_fee + split.platform_fee,
                )
                self._audit(s, item, before, released_by,
                            "escrow_auto_released" if auto else "escrow_released", current,
                            category=AuditCategory.ESCROW.value,
                            extra={"worker_payout": split.worker_payout.amount,
                                   "platform_fee": split.platform_fee.amount})

            rewards = self.contracts.complete(
                s, contract.id, released_by, current, auto_released=auto,
                extra_values={
                    "escrow_released": True,
                    "escrow_released_at": current,
                    "escrow_status": EscrowState.RELEASED.value,
                },
            )
            logger.info(
                f"✅ ESCROW_RELEASED: payment={payment.id} contract={contract.id} by={released_by} "
                f"auto={auto} worker_payout={total_split.worker_payout} fee={total_split.platform_fee}"
            )
            return ReleaseResult(True, self._get(s, payment.id), self.contracts.get_contract(contract.id, session=s),
                                 total_split, rewards)

    # ------------------------------------------------------------------
    # refund / failure
    # ------------------------------------------------------------------

    async def refund(self, payment_id: int, reason: str, refunded_by: Any = "system",
                     now: Optional[datetime] = None) -> RefundOutcome:
        """
        pending|held_escrow -> refunded. Captured funds are returned through
        the gateway first; a gateway rejection leaves everything unchanged.
        """
        current = now or utcnow()
        if not reason or not reason.strip():
            raise ValidationError("A refund needs a reason")

        with atomic_transaction(session_factory=self.session_factory) as s:
            payment = self._get(s, payment_id)
            if payment.status == PaymentStatus.REFUNDED.value:
                logger.info(f"REFUND_ALREADY_APPLIED: payment={payment.id}")
                return RefundOutcome(False, payment)
            PaymentStateValidator.validate_transition(payment.status, PaymentStatus.REFUNDED.value, payment.id)
            contract = s.get(Contract, payment.contract_id)
            if (payment.payment_type == PaymentType.CONTRACT_PAYMENT.value
                    and ContractStateValidator.is_terminal_state(contract.status)):
                raise InvalidTransition("Contract", contract.status, ContractStatus.CANCELLED.value,
                                        "contract already closed")
            status = payment.status
            capture_id = payment.gateway_capture_id
            amount = Money(payment.amount, payment.currency)
            provider = payment.provider
            payment_type = payment.payment_type
            contract_id = contract.id

        refund_id = None
        if status == PaymentStatus.HELD_ESCROW.value and capture_id:
            result = await self.gateways.get(provider).refund(capture_id, amount)
            refund_id = result.refund_id

        with atomic_transaction(session_factory=self.session_factory) as s:
            payment = self._get(s, payment_id)
            before = self._snapshot(payment)
            moved = guarded_update(
                s, Payment, payment.id,
                expected_status=status,
                values={
                    "status": PaymentStatus.REFUNDED.value,
                    "refund_id": refund_id,
                    "refund_reason": reason.strip(),
                    "refunded_at": current,
                    "refunded_by": str(refunded_by),
                },
            )
            if not moved:
                payment = self._get(s, payment_id)
                if refund_id:
                    logger.critical(
                        f"🚨 REFUND_STATE_CONFLICT: payment={payment_id} refunded at gateway "
                        f"(refund={refund_id}) but ledger moved to {payment.status}"
                    )
                return RefundOutcome(False, payment)

            self._audit(s, payment, before, refunded_by, "payment_refunded", current,
                        description=reason.strip(), category=AuditCategory.ESCROW.value,
                        extra={"refund_id": refund_id})

            cancelled = False
            if payment_type == PaymentType.CONTRACT_PAYMENT.value:
                self.contracts.cancel_for_refund(s, contract_id, refunded_by, reason.strip(), current)
                cancelled = True
            elif status == PaymentStatus.HELD_ESCROW.value:
                contract = s.get(Contract, contract_id)
                guarded_update(
                    s, Contract, contract_id, expected_status=OPEN_CONTRACT_STATES,
                    values={"escrow_amount": max(0, (contract.escrow_amount or 0) - payment.amount)},
                )

            logger.info(f"✅ PAYMENT_REFUNDED: payment={payment_id} refund={refund_id} reason={reason!r}")
            return RefundOutcome(True, self._get(s, payment_id), cancelled)

    def other_held_payments(self, payment_id: int, session: Optional[Session] = None) -> List[int]:
        """Held top-ups that must be refunded alongside a contract payment"""
        with atomic_transaction(session, self.session_factory) as s:
            payment = self._get(s, payment_id)
            return [
                pid for (pid,) in s.query(Payment.id).filter(
                    Payment.contract_id == payment.contract_id,
                    Payment.id != payment.id,
                    Payment.status == PaymentStatus.HELD_ESCROW.value,
                ).order_by(Payment.id.asc())
            ]

    def mark_failed(self, payment_id: int, reason: str, now: Optional[datetime] = None,
                    session: Optional[Session] = None) -> bool:
        """pending -> failed; False when the payment already moved on"""
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            payment = self._get(s, payment_id)
            before = self._snapshot(payment)
            moved = guarded_update(
                s, Payment, payment.id,
                expected_status=PaymentStatus.PENDING.value,
                values={"status": PaymentStatus.FAILED.value, "failure_reason": reason, "failed_at": current},
            )
            if moved:
                self._audit(s, payment, before, "system", "payment_failed", current, description=reason)
                logger.warning(f"⚠️ PAYMENT_FAILED: payment={payment_id} reason={reason}")
            return moved

    def expire_stale_orders(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[int]:
        """Fail pending orders never approved within PENDING_ORDER_TTL_HOURS"""
        current = now or utcnow()
        cutoff = current - timedelta(hours=Config.PENDING_ORDER_TTL_HOURS)
        with atomic_transaction(session_factory=self.session_factory) as s:
            stale = [
                pid for (pid,) in s.query(Payment.id)
                .filter(Payment.status == PaymentStatus.PENDING.value, Payment.created_at < cutoff)
                .order_by(Payment.created_at.asc())
                .limit(limit or Config.SWEEP_BATCH_SIZE)
            ]
        expired = [pid for pid in stale if self.mark_failed(pid, "order_expired", now=current)]
        if expired:
            logger.info(f"STALE_ORDERS_EXPIRED: {len(expired)} payments failed")
        return expired
