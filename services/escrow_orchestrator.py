"""
Escrow Orchestrator
Entry points used by the HTTP layer and the webhook receiver. Wires the
contract state machine, payment ledger, gateways and notifications together;
notifications go out only after the financial transition has committed.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import sessionmaker

from models import AuditCategory, AuditSeverity, Contract, ContractStatus, PaymentStatus, PaymentType, utcnow
from services.audit_trail_service import AuditTrailService
from services.contract_service import ContractService
from services.gateway_client import GatewayRegistry
from services.notification_service import (
    LoggingNotificationService, NotificationEvent, NotificationService
)
from services.payment_ledger import CaptureOutcome, PaymentLedger, RefundOutcome, ReleaseResult
from services.referral_service import ReferralService
from utils.atomic_transactions import atomic_transaction
from utils.exceptions import NotFound, ValidationError, WebhookVerificationError

logger = logging.getLogger(__name__)


class EscrowOrchestrator:
    """Facade over contracts, ledger and gateways"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 gateways: Optional[GatewayRegistry] = None,
                 notifier: Optional[NotificationService] = None,
                 audit: Optional[AuditTrailService] = None,
                 referrals: Optional[ReferralService] = None,
                 contracts: Optional[ContractService] = None,
                 ledger: Optional[PaymentLedger] = None):
        self.session_factory = session_factory
        self.audit = audit or AuditTrailService(session_factory=session_factory)
        self.referrals = referrals or ReferralService(session_factory=session_factory, audit=self.audit)
        self.contracts = contracts or ContractService(
            session_factory=session_factory, audit=self.audit, referrals=self.referrals
        )
        self.gateways = gateways or GatewayRegistry.from_config()
        self.ledger = ledger or PaymentLedger(
            session_factory=session_factory, gateways=self.gateways,
            contracts=self.contracts, audit=self.audit,
        )
        self.notifier = notifier or LoggingNotificationService()

    # ------------------------------------------------------------------
    # notifications
    # ------------------------------------------------------------------

    async def notify_parties(self, contract: Contract, event: str,
                             payload: Optional[Dict[str, Any]] = None) -> int:
        """One message to each party; returns how many were delivered"""
        body = dict(payload or {}, contract_id=contract.id)
        delivered = 0
        for user_id in (contract.requester_id, contract.worker_id):
            if await self.notifier.safe_send(user_id, event, body):
                delivered += 1
        return delivered

    async def notify_release(self, result: ReleaseResult, auto: bool = False):
        if not result.transitioned:
            return
        event = NotificationEvent.ESCROW_AUTO_RELEASED if auto else NotificationEvent.ESCROW_RELEASED
        payload = {"payment_id": result.payment.id}
        if result.split is not None:
            payload["worker_payout"] = result.split.worker_payout.amount
            payload["platform_fee"] = result.split.platform_fee.amount
            payload["currency"] = result.split.worker_payout.currency
        await self.notify_parties(result.contract, event, payload)
        for reward in result.rewards:
            await self.notifier.safe_send(
                reward.referrer_id, NotificationEvent.REFERRAL_REWARD,
                {"tier": reward.tier, "reward_type": reward.reward_type},
            )

    # ------------------------------------------------------------------
    # payments
    # ------------------------------------------------------------------

    async def create_contract_payment_order(self, contract_id: int, provider: Optional[str] = None,
                                            now: Optional[datetime] = None) -> Dict[str, Any]:
        payment = await self.ledger.open_order(contract_id, provider=provider, now=now)
        return {
            "payment_id": payment.id,
            "order_id": payment.gateway_order_id,
            "approval_url": payment.approval_url,
        }

    async def capture_contract_payment(self, order_id: str, now: Optional[datetime] = None) -> CaptureOutcome:
        """Client-side confirmation or an order-approved webhook; safe to repeat"""
        payment = self.ledger.find_by_order(order_id)
        if payment.status != PaymentStatus.PENDING.value:
            logger.info(f"CAPTURE_SKIPPED: order={order_id} already {payment.status}")
            return CaptureOutcome(False, payment)

        capture = await self.gateways.get(payment.provider).capture_order(order_id)
        return await self._apply_capture(order_id, capture, now)

    async def _apply_capture(self, order_id: str, capture, now: Optional[datetime]) -> CaptureOutcome:
        outcome = self.ledger.confirm_capture(order_id, capture, now=now)
        if outcome.transitioned and outcome.payment.is_escrow:
            contract = self.contracts.get_contract(outcome.payment.contract_id)
            await self.notify_parties(contract, NotificationEvent.PAYMENT_HELD, {
                "payment_id": outcome.payment.id,
                "amount": outcome.payment.amount,
                "currency": outcome.payment.currency,
            })
        return outcome

    async def release_escrow(self, payment_id: int, actor_id: Any,
                             now: Optional[datetime] = None) -> ReleaseResult:
        """Requester releases funds; a repeated or raced call is a silent no-op"""
        payment = self.ledger.get_payment(payment_id)
        contract = self.contracts.get_contract(payment.contract_id)
        if actor_id != contract.requester_id:
            raise ValidationError("Only the requester can release escrow")

        result = self.ledger.release_escrow(payment_id, actor_id, now=now)
        await self.notify_release(result)
        return result

    async def approve_work(self, contract_id: int, requester_id: int,
                           now: Optional[datetime] = None):
        """Requester accepts delivered work: releases escrow or, without escrow, completes"""
        contract = self.contracts.get_contract(contract_id)
        if contract.escrow_enabled:
            if contract.escrow_payment_id is None:
                raise ValidationError(f"Contract {contract_id} has no escrow payment to release")
            return await self.release_escrow(contract.escrow_payment_id, requester_id, now=now)
        return self.contracts.confirm_completion(contract_id, requester_id, now=now)

    async def refund_payment(self, payment_id: int, reason: str, actor: Any = "system",
                             now: Optional[datetime] = None) -> RefundOutcome:
        """
        Refunds a payment; a contract payment takes its held top-ups with it.

        The contract payment goes first so a gateway rejection leaves every
        hold in place. Calling again for the same contract payment refunds
        any top-up that is still held.
        """
        payment = self.ledger.get_payment(payment_id)
        outcome = await self.ledger.refund(payment_id, reason, refunded_by=actor, now=now)
        if outcome.transitioned:
            contract = self.contracts.get_contract(outcome.payment.contract_id)
            await self.notify_parties(contract, NotificationEvent.PAYMENT_REFUNDED, {
                "payment_id": payment_id,
                "reason": reason,
            })

        if payment.payment_type == PaymentType.CONTRACT_PAYMENT.value:
            for other_id in self.ledger.other_held_payments(payment_id):
                await self.ledger.refund(other_id, reason, refunded_by=actor, now=now)
        return outcome

    # ------------------------------------------------------------------
    # extensions
    # ------------------------------------------------------------------

    async def request_contract_extension(self, contract_id: int, requested_by: int, days: int,
                                         new_price: Optional[int] = None,
                                         now: Optional[datetime] = None) -> Contract:
        contract = self.contracts.request_extension(contract_id, requested_by, days, new_price, now=now)
        counterpart = contract.worker_id if requested_by == contract.requester_id else contract.requester_id
        await self.notifier.safe_send(counterpart, NotificationEvent.EXTENSION_REQUESTED, {
            "contract_id": contract.id,
            "days": days,
            "new_price": new_price,
        })
        return contract

    async def respond_to_extension(self, contract_id: int, responder_id: int, accept: bool,
                                   now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Accepting a price increase on an escrow contract opens a separate
        top-up order for the delta; the original hold is left untouched.
        """
        requested_by = self.contracts.get_contract(contract_id).extension_requested_by
        outcome = self.contracts.respond_to_extension(contract_id, responder_id, accept, now=now)
        contract = outcome.contract

        response: Dict[str, Any] = {"contract_id": contract.id, "accepted": outcome.accepted, "topup": None}
        if outcome.accepted and contract.escrow_enabled and outcome.price_delta is not None \
                and outcome.price_delta.amount > 0:
            payment = await self.ledger.open_order(
                contract.id,
                payment_type=PaymentType.EXTENSION_TOPUP.value,
                amount=outcome.price_delta,
                platform_fee=outcome.commission_delta,
                now=now,
            )
            response["topup"] = {
                "payment_id": payment.id,
                "order_id": payment.gateway_order_id,
                "approval_url": payment.approval_url,
                "amount": payment.amount,
            }

        if requested_by is not None:
            await self.notifier.safe_send(requested_by, NotificationEvent.EXTENSION_RESOLVED, {
                "contract_id": contract.id,
                "accepted": outcome.accepted,
            })
        return response

    # ------------------------------------------------------------------
    # disputes
    # ------------------------------------------------------------------

    async def resolve_dispute(self, contract_id: int, resolved_by: Any, release_to_worker: bool,
                              note: str = "", now: Optional[datetime] = None):
        """disputed -> completed (funds to worker) or cancelled (funds back to requester)"""
        current = now or utcnow()
        contract = self.contracts.get_contract(contract_id)
        if contract.status != ContractStatus.DISPUTED.value:
            raise ValidationError(f"Contract {contract_id} is not in dispute")

        if release_to_worker:
            if contract.escrow_payment_id is not None:
                result = self.ledger.release_escrow(contract.escrow_payment_id, resolved_by, now=current)
                await self.notify_release(result)
            else:
                with atomic_transaction(session_factory=self.session_factory) as s:
                    self.contracts.complete(s, contract_id, resolved_by, current)
                result = None
        else:
            reason = note or "dispute resolved in favour of requester"
            if contract.escrow_payment_id is not None:
                result = await self.refund_payment(contract.escrow_payment_id, reason, actor=resolved_by, now=current)
            else:
                with atomic_transaction(session_factory=self.session_factory) as s:
                    self.contracts.cancel_for_refund(s, contract_id, resolved_by, reason, current)
                result = None

        with atomic_transaction(session_factory=self.session_factory) as s:
            self.audit.record(
                s,
                performed_by=resolved_by,
                action="dispute_resolved",
                category=AuditCategory.CONTRACT.value,
                severity=AuditSeverity.HIGH.value,
                target_model="Contract",
                target_id=contract_id,
                description=note or ("released to worker" if release_to_worker else "refunded to requester"),
                extra_data={"release_to_worker": release_to_worker},
                now=current,
            )
        logger.info(f"DISPUTE_RESOLVED: contract={contract_id} release_to_worker={release_to_worker}")
        return result

    # ------------------------------------------------------------------
    # webhooks
    # ------------------------------------------------------------------

    async def process_gateway_webhook(self, provider: str, headers: Mapping[str, str], body: bytes,
                                      now: Optional[datetime] = None) -> Dict[str, Any]:
        """Verify authenticity, then route the event to capture confirmation"""
        client = self.gateways.get(provider)
        if not await client.verify_webhook(headers, body):
            logger.warning(f"⚠️ WEBHOOK_REJECTED: provider={provider} signature check failed")
            raise WebhookVerificationError(f"{provider} webhook failed verification")

        try:
            event = await client.parse_webhook(body)
        except ValueError as e:
            raise ValidationError(f"Malformed {provider} webhook body") from e

        if not event.actionable or not event.order_id:
            logger.info(f"WEBHOOK_IGNORED: provider={provider} event={event.event_type}")
            return {"status": "ignored", "event_type": event.event_type}

        try:
            self.ledger.find_by_order(event.order_id)
        except NotFound:
            logger.warning(f"⚠️ WEBHOOK_UNKNOWN_ORDER: provider={provider} order={event.order_id}")
            return {"status": "ignored", "event_type": event.event_type, "order_id": event.order_id}

        if event.capture is not None:
            outcome = await self._apply_capture(event.order_id, event.capture, now)
        else:
            outcome = await self.capture_contract_payment(event.order_id, now=now)

        logger.info(
            f"WEBHOOK_PROCESSED: provider={provider} event={event.event_type} order={event.order_id} "
            f"transitioned={outcome.transitioned}"
        )
        return {
            "status": "processed" if outcome.transitioned else "duplicate",
            "event_type": event.event_type,
            "order_id": event.order_id,
            "payment_id": outcome.payment.id,
            "payment_status": outcome.payment.status,
        }
