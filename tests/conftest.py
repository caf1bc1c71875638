"""
Shared fixtures for the escrow settlement test suite

Provides:
1. A fresh SQLite database per test, built from the ORM metadata
2. The service graph wired to that database (audit, referrals, contracts,
   ledger, orchestrator, automation)
3. A scripted in-memory gateway and a recording notifier, so no test ever
   touches the network
4. Row factories and an ``EscrowFlow`` helper that drives a contract through
   the real services to a given point in its lifecycle
"""

import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from database import build_engine, build_session_factory
from jobs.escrow_automation import EscrowAutomation
from models import Base, Job, PaymentProvider, User
from services.audit_trail_service import AuditTrailService
from services.circuit_breaker import CircuitBreaker
from services.contract_service import ContractService
from services.escrow_orchestrator import EscrowOrchestrator
from services.gateway_client import GatewayClient, GatewayRegistry
from services.notification_service import NotificationService
from services.payment_gateway import (
    CaptureResult, OrderResult, PaymentGateway, RefundResult, WebhookEvent
)
from services.payment_ledger import PaymentLedger
from services.referral_service import ReferralService
from services.retry_service import RetryService
from utils.distributed_lock import DistributedLockService
from utils.money import Money, PartyId


# ============================================================================
# Test doubles
# ============================================================================

class FakeGateway(PaymentGateway):
    """Scripted gateway: orders, captures and refunds are recorded in memory"""

    provider = PaymentProvider.PAYPAL.value

    def __init__(self):
        super().__init__("https://gateway.test")
        self.orders: Dict[str, Money] = {}
        self.captured: List[str] = []
        self.refunds: List[str] = []
        self.webhook_valid = True
        self.create_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None

    async def create_order(self, amount: Money, description: str, reference: str) -> OrderResult:
        if self.create_error is not None:
            raise self.create_error
        order_id = f"ORDER-{reference}"
        self.orders[order_id] = amount
        return OrderResult(order_id=order_id, approval_url=f"https://gateway.test/approve/{order_id}")

    async def capture_order(self, order_id: str) -> CaptureResult:
        self.captured.append(order_id)
        return CaptureResult(
            capture_id=f"CAP-{order_id}",
            amount=self.orders.get(order_id),
            payer=PartyId(id="PAYER-1"),
        )

    async def refund(self, capture_id: str, amount: Optional[Money] = None) -> RefundResult:
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append(capture_id)
        return RefundResult(refund_id=f"REF-{capture_id}", status="COMPLETED")

    async def verify_webhook(self, headers, body: bytes) -> bool:
        return self.webhook_valid

    async def parse_webhook(self, body: bytes) -> WebhookEvent:
        event = json.loads(body)
        event_type = event.get("event_type", "")
        if event_type == "CHECKOUT.ORDER.APPROVED":
            return WebhookEvent(self.provider, event_type, order_id=event.get("order_id"), raw=event)
        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            amount = None
            if event.get("amount") is not None:
                amount = Money(event["amount"], event.get("currency", "ARS"))
            capture = CaptureResult(capture_id=event["capture_id"], amount=amount, raw=event)
            return WebhookEvent(self.provider, event_type, order_id=event.get("order_id"),
                                capture=capture, raw=event)
        return WebhookEvent(self.provider, event_type, order_id=None, actionable=False, raw=event)


class RecordingNotifier(NotificationService):
    """Keeps every notification instead of delivering it"""

    def __init__(self):
        self.sent: List[tuple] = []

    async def send(self, user_id: Any, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self.sent.append((user_id, event, dict(payload or {})))

    def of(self, event: str) -> List[tuple]:
        return [item for item in self.sent if item[1] == event]

    def recipients(self, event: str) -> List[Any]:
        return [user_id for user_id, name, _ in self.sent if name == event]


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def now():
    """Fixed, timezone-aware reference time"""
    return datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(tmp_path):
    test_engine = build_engine(f"sqlite:///{tmp_path / 'escrow_test.db'}")
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def reload(session_factory):
    """Read a row through a short-lived session so no read transaction stays open"""

    def _reload(model, entity_id):
        with session_factory() as session:
            return session.get(model, entity_id)

    return _reload


@pytest.fixture
def fetch_all(session_factory):
    def _fetch(model, *criteria, order_by=None):
        with session_factory() as session:
            query = session.query(model).filter(*criteria)
            return query.order_by(order_by if order_by is not None else model.id).all()

    return _fetch


# ============================================================================
# Services
# ============================================================================

@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def gateways(fake_gateway):
    client = GatewayClient(
        fake_gateway,
        retry_service=RetryService(max_attempts=3, initial_delay=0.01, sleep=AsyncMock()),
        circuit_breaker=CircuitBreaker(fake_gateway.provider, failure_threshold=5, recovery_timeout=60),
    )
    return GatewayRegistry({fake_gateway.provider: client}, default_provider=fake_gateway.provider)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit(session_factory):
    return AuditTrailService(signing_key="test-signing-key", session_factory=session_factory)


@pytest.fixture
def referrals(session_factory, audit):
    return ReferralService(session_factory=session_factory, audit=audit)


@pytest.fixture
def contracts(session_factory, audit, referrals):
    return ContractService(session_factory=session_factory, audit=audit, referrals=referrals)


@pytest.fixture
def ledger(session_factory, gateways, contracts, audit):
    return PaymentLedger(session_factory=session_factory, gateways=gateways, contracts=contracts, audit=audit)


@pytest.fixture
def orchestrator(session_factory, gateways, notifier, audit, referrals, contracts, ledger):
    return EscrowOrchestrator(
        session_factory=session_factory,
        gateways=gateways,
        notifier=notifier,
        audit=audit,
        referrals=referrals,
        contracts=contracts,
        ledger=ledger,
    )


@pytest.fixture
def automation(orchestrator, session_factory):
    return EscrowAutomation(
        orchestrator,
        session_factory=session_factory,
        lock_service=DistributedLockService(session_factory=session_factory),
        batch_size=50,
        time_budget_seconds=30,
    )


# ============================================================================
# Row factories
# ============================================================================

@pytest.fixture
def make_user(session_factory):
    counter = itertools.count(1)

    def _make(**overrides) -> User:
        n = next(counter)
        values = {
            "email": f"user{n}@example.com",
            "name": f"User {n}",
            "identity_verified": True,
        }
        values.update(overrides)
        with session_factory() as session:
            user = User(**values)
            session.add(user)
            session.commit()
            return user

    return _make


@pytest.fixture
def make_job(session_factory):
    def _make(requester: User, price: int = 10000, currency: str = "ARS", max_workers: int = 1) -> Job:
        with session_factory() as session:
            job = Job(
                requester_id=requester.id,
                title="Kitchen renovation",
                price=price,
                currency=currency,
                max_workers=max_workers,
            )
            session.add(job)
            session.commit()
            return job

    return _make


class EscrowFlow:
    """Drives contracts through the real services"""

    def __init__(self, make_user, make_job, contracts: ContractService,
                 orchestrator: EscrowOrchestrator, now: datetime):
        self.make_user = make_user
        self.make_job = make_job
        self.contracts = contracts
        self.orchestrator = orchestrator
        self.now = now

    def draft(self, base_price: int = 10000, escrow_enabled: bool = True, requester: Optional[User] = None,
              worker: Optional[User] = None, duration_days: int = 14):
        requester = requester or self.make_user()
        worker = worker or self.make_user()
        job = self.make_job(requester, price=base_price)
        contract = self.contracts.create_contract(
            job.id, worker.id, base_price,
            start_date=self.now,
            end_date=self.now + timedelta(days=duration_days),
            escrow_enabled=escrow_enabled,
            now=self.now,
        )
        return contract

    def accepted(self, **kwargs):
        contract = self.draft(**kwargs)
        contract = self.contracts.submit_for_acceptance(contract.id, contract.requester_id, now=self.now)
        if contract.escrow_enabled:
            code = contract.pairing_code
            self.contracts.confirm_pairing(contract.id, contract.requester_id, code, now=self.now)
            return self.contracts.confirm_pairing(contract.id, contract.worker_id, code, now=self.now)
        self.contracts.sign_off(contract.id, contract.requester_id, now=self.now)
        return self.contracts.sign_off(contract.id, contract.worker_id, now=self.now)

    async def funded(self, **kwargs):
        """Escrow captured and work started; returns (contract, payment_id)"""
        contract = self.accepted(**kwargs)
        order = await self.orchestrator.create_contract_payment_order(contract.id, now=self.now)
        await self.orchestrator.capture_contract_payment(order["order_id"], now=self.now)
        return self.contracts.get_contract(contract.id), order["payment_id"]

    async def awaiting_approval(self, completed_at: Optional[datetime] = None, **kwargs):
        contract, payment_id = await self.funded(**kwargs)
        contract = self.contracts.mark_work_complete(
            contract.id, contract.worker_id, now=completed_at or self.now
        )
        return contract, payment_id


@pytest.fixture
def escrow_flow(make_user, make_job, contracts, orchestrator, now):
    return EscrowFlow(make_user, make_job, contracts, orchestrator, now)
