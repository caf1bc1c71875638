"""
Multi-worker allocation
Splits a job's budget across selected workers, one independent contract each
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session, sessionmaker

from models import AuditCategory, Contract, ContractStatus, Job, utcnow
from services.contract_service import ContractService
from utils.atomic_transactions import atomic_transaction, locked_row
from utils.commission_calculator import CommissionCalculator
from utils.db_advisory_locks import DBAdvisoryLockService, advisory_locks
from utils.exceptions import AllocationExceeded, NotFound, ValidationError
from utils.money import Money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerAllocation:
    """One row of the allocation table: either an amount or a percentage of the job price"""

    worker_id: int
    amount: Optional[int] = None
    percentage: Optional[Decimal] = None

    def resolve(self, job_price: int) -> int:
        if (self.amount is None) == (self.percentage is None):
            raise ValidationError(f"Worker {self.worker_id}: give exactly one of amount or percentage")
        if self.amount is not None:
            if not isinstance(self.amount, int) or self.amount <= 0:
                raise ValidationError(f"Worker {self.worker_id}: allocation must be a positive amount")
            return self.amount
        pct = Decimal(str(self.percentage))
        if pct <= 0 or pct > 100:
            raise ValidationError(f"Worker {self.worker_id}: percentage must be in (0, 100]")
        resolved = int((Decimal(job_price) * pct / Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        if resolved <= 0:
            raise ValidationError(f"Worker {self.worker_id}: {pct}% of {job_price} rounds to zero")
        return resolved


class WorkerAllocationService:
    """Serialized per job: advisory lock plus the job row lock"""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 contracts: Optional[ContractService] = None,
                 locks: Optional[DBAdvisoryLockService] = None):
        self.session_factory = session_factory
        self.contracts = contracts or ContractService(session_factory=session_factory)
        self.locks = locks or advisory_locks

    @staticmethod
    def _active_contracts(session: Session, job_id: int):
        return session.query(Contract).filter(
            Contract.job_id == job_id,
            Contract.status != ContractStatus.CANCELLED.value,
        )

    def allocated_total(self, job_id: int, session: Optional[Session] = None) -> int:
        with atomic_transaction(session, self.session_factory) as s:
            return self.contracts.committed_budget(s, job_id)

    def select_workers(self, job_id: int, allocations: Sequence[WorkerAllocation],
                       start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                       escrow_enabled: bool = True, now: Optional[datetime] = None,
                       session: Optional[Session] = None) -> List[Contract]:
        """Create one draft contract per selected worker; all or nothing"""
        current = now or utcnow()
        if not allocations:
            raise ValidationError("Select at least one worker")

        worker_ids = [a.worker_id for a in allocations]
        if len(set(worker_ids)) != len(worker_ids):
            raise ValidationError("A worker can appear only once in the allocation table")

        with atomic_transaction(session, self.session_factory) as s:
            self.locks.job_allocation_lock(s, job_id)
            job = locked_row(s, Job, job_id)

            active = self._active_contracts(s, job_id).all()
            already = {c.worker_id for c in active} & set(worker_ids)
            if already:
                raise ValidationError(f"Workers {sorted(already)} already hold a contract for job {job_id}")
            if len(active) + len(allocations) > (job.max_workers or 1):
                raise ValidationError(
                    f"Job {job_id} accepts at most {job.max_workers} worker(s); "
                    f"{len(active)} already selected"
                )

            amounts = [a.resolve(job.price) for a in allocations]
            existing_total = self.contracts.committed_budget(s, job_id)
            requested_total = existing_total + sum(amounts)
            if requested_total > job.price:
                logger.info(
                    f"ALLOCATION_EXCEEDED: job={job_id} price={job.price} "
                    f"allocated={existing_total} requested={sum(amounts)}"
                )
                raise AllocationExceeded(
                    f"Allocations total {requested_total} exceeds job price {job.price}"
                )

            created = []
            for allocation, amount in zip(allocations, amounts):
                pct = None
                if allocation.percentage is not None:
                    pct = Decimal(str(allocation.percentage)).quantize(Decimal("0.01"))
                contract = self.contracts.create_contract(
                    job_id=job.id,
                    worker_id=allocation.worker_id,
                    base_price=amount,
                    start_date=start_date,
                    end_date=end_date,
                    escrow_enabled=escrow_enabled,
                    allocated_amount=amount,
                    percentage_of_budget=pct,
                    now=current,
                    session=s,
                )
                created.append(contract)

            logger.info(
                f"WORKERS_SELECTED: job={job_id} workers={worker_ids} "
                f"allocated={requested_total}/{job.price}"
            )
            return created

    def reallocate(self, contract_id: int, amount: int, now: Optional[datetime] = None,
                   session: Optional[Session] = None) -> Contract:
        """Change one worker's share while the contract is still a draft"""
        current = now or utcnow()
        with atomic_transaction(session, self.session_factory) as s:
            contract = s.get(Contract, contract_id)
            if contract is None:
                raise NotFound(f"Contract {contract_id} not found")
            self.locks.job_allocation_lock(s, contract.job_id)
            job = locked_row(s, Job, contract.job_id)
            contract = locked_row(s, Contract, contract_id)
            if contract.status != ContractStatus.DRAFT.value:
                raise ValidationError("Only draft contracts can be reallocated")
            if not isinstance(amount, int) or amount <= 0:
                raise ValidationError("Allocation must be a positive amount")

            others = self.contracts.committed_budget(s, job.id, exclude_contract_id=contract.id)
            if others + amount > job.price:
                raise AllocationExceeded(f"Allocations total {others + amount} exceeds job price {job.price}")

            # drafts reprice at the stored rate
            quote = CommissionCalculator.at_rate(Money(amount, contract.currency), contract.commission_rate)
            before = {"allocated_amount": contract.allocated_amount, "base_price": contract.base_price}
            contract.allocated_amount = amount
            contract.percentage_of_budget = None
            contract.base_price = quote.base_price.amount
            contract.commission = quote.commission.amount
            contract.total_price = quote.total_price.amount
            contract.version = (contract.version or 1) + 1
            s.flush()

            self.contracts.audit.record(
                s,
                performed_by=job.requester_id,
                action="allocation_changed",
                category=AuditCategory.CONTRACT.value,
                target_model="Contract",
                target_id=contract.id,
                description=f"Allocation for job {job.id} changed",
                changes=self.contracts.audit.diff(
                    before, {"allocated_amount": amount, "base_price": contract.base_price}
                ),
                now=current,
            )
            return contract
