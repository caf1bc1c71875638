"""
Tests for splitting a job budget across several workers
"""

from decimal import Decimal

import pytest

from models import Contract, ContractStatus, Job
from services.allocation_service import WorkerAllocation, WorkerAllocationService
from utils.exceptions import AllocationExceeded, ValidationError


@pytest.fixture
def allocations(session_factory, contracts):
    return WorkerAllocationService(session_factory=session_factory, contracts=contracts)


class TestWorkerAllocation:

    def test_amount_resolves_as_is(self):
        assert WorkerAllocation(worker_id=1, amount=2500).resolve(10000) == 2500

    def test_percentage_resolves_half_up(self):
        assert WorkerAllocation(worker_id=1, percentage=Decimal("33.335")).resolve(10000) == 3334

    @pytest.mark.parametrize("allocation", [
        WorkerAllocation(worker_id=1),
        WorkerAllocation(worker_id=1, amount=100, percentage=Decimal("10")),
        WorkerAllocation(worker_id=1, amount=0),
        WorkerAllocation(worker_id=1, percentage=Decimal("0")),
        WorkerAllocation(worker_id=1, percentage=Decimal("120")),
    ])
    def test_invalid_rows(self, allocation):
        with pytest.raises(ValidationError):
            allocation.resolve(10000)


class TestSelectWorkers:

    def test_one_contract_per_worker(self, allocations, make_user, make_job, now, fetch_all):
        requester = make_user()
        workers = [make_user() for _ in range(3)]
        job = make_job(requester, price=9000, max_workers=3)

        created = allocations.select_workers(job.id, [
            WorkerAllocation(workers[0].id, amount=4000),
            WorkerAllocation(workers[1].id, amount=3000),
            WorkerAllocation(workers[2].id, percentage=Decimal("20")),
        ], now=now)

        assert len(created) == 3
        stored = fetch_all(Contract, Contract.job_id == job.id)
        assert [c.allocated_amount for c in stored] == [4000, 3000, 1800]
        assert [c.base_price for c in stored] == [4000, 3000, 1800]
        assert stored[2].percentage_of_budget == Decimal("20.00")
        assert all(c.status == ContractStatus.DRAFT.value for c in stored)
        assert allocations.allocated_total(job.id) == 8800

    def test_over_allocation_creates_nothing(self, allocations, make_user, make_job, now, fetch_all):
        requester = make_user()
        first, second = make_user(), make_user()
        job = make_job(requester, price=5000, max_workers=2)

        with pytest.raises(AllocationExceeded):
            allocations.select_workers(job.id, [
                WorkerAllocation(first.id, amount=3000),
                WorkerAllocation(second.id, amount=2001),
            ], now=now)

        assert fetch_all(Contract, Contract.job_id == job.id) == []

    def test_direct_contract_counts_against_budget(self, allocations, contracts, make_user, make_job, now):
        requester = make_user()
        direct_worker, selected = make_user(), make_user()
        job = make_job(requester, price=10000, max_workers=2)
        contracts.create_contract(job.id, direct_worker.id, 6000, now=now)

        with pytest.raises(AllocationExceeded):
            allocations.select_workers(job.id, [WorkerAllocation(selected.id, amount=5000)], now=now)

        assert allocations.allocated_total(job.id) == 6000

    def test_existing_allocations_count(self, allocations, make_user, make_job, now):
        requester = make_user()
        first, second = make_user(), make_user()
        job = make_job(requester, price=5000, max_workers=2)
        allocations.select_workers(job.id, [WorkerAllocation(first.id, amount=4000)], now=now)

        with pytest.raises(AllocationExceeded):
            allocations.select_workers(job.id, [WorkerAllocation(second.id, amount=1500)], now=now)

    def test_cancelled_contracts_free_their_share(self, allocations, contracts, make_user, make_job, now):
        requester = make_user()
        first, second = make_user(), make_user()
        job = make_job(requester, price=5000, max_workers=2)
        [contract] = allocations.select_workers(job.id, [WorkerAllocation(first.id, amount=4000)], now=now)
        contracts.cancel_contract(contract.id, requester.id, now=now)

        created = allocations.select_workers(job.id, [WorkerAllocation(second.id, amount=5000)], now=now)
        assert len(created) == 1

    def test_duplicate_worker_rejected(self, allocations, make_user, make_job, now):
        requester, worker = make_user(), make_user()
        job = make_job(requester, price=5000, max_workers=2)

        with pytest.raises(ValidationError):
            allocations.select_workers(job.id, [
                WorkerAllocation(worker.id, amount=1000),
                WorkerAllocation(worker.id, amount=1000),
            ], now=now)

    def test_max_workers_enforced(self, allocations, make_user, make_job, now):
        requester = make_user()
        job = make_job(requester, price=5000, max_workers=1)

        with pytest.raises(ValidationError):
            allocations.select_workers(job.id, [
                WorkerAllocation(make_user().id, amount=1000),
                WorkerAllocation(make_user().id, amount=1000),
            ], now=now)


class TestReallocate:

    def test_draft_reallocation_reprices(self, allocations, make_user, make_job, now, reload):
        requester = make_user()
        first, second = make_user(), make_user()
        job = make_job(requester, price=10000, max_workers=2)
        created = allocations.select_workers(job.id, [
            WorkerAllocation(first.id, amount=6000),
            WorkerAllocation(second.id, amount=4000),
        ], now=now)

        allocations.reallocate(created[0].id, 5000, now=now)

        stored = reload(Contract, created[0].id)
        assert stored.allocated_amount == 5000
        assert stored.base_price == 5000
        assert stored.commission == 250
        assert stored.total_price == 5250

    def test_reallocation_respects_budget(self, allocations, make_user, make_job, now):
        requester = make_user()
        first, second = make_user(), make_user()
        job = make_job(requester, price=10000, max_workers=2)
        created = allocations.select_workers(job.id, [
            WorkerAllocation(first.id, amount=6000),
            WorkerAllocation(second.id, amount=4000),
        ], now=now)

        with pytest.raises(AllocationExceeded):
            allocations.reallocate(created[0].id, 6001, now=now)

    def test_extension_grows_job_budget(self, allocations, contracts, make_user, make_job, now, reload):
        requester = make_user()
        first, second = make_user(), make_user()
        job = make_job(requester, price=10000, max_workers=2)
        created = allocations.select_workers(job.id, [
            WorkerAllocation(first.id, amount=6000),
            WorkerAllocation(second.id, amount=4000),
        ], end_date=now.replace(month=4), escrow_enabled=False, now=now)
        contract_id = created[0].id
        contracts.submit_for_acceptance(contract_id, requester.id, now=now)
        contracts.sign_off(contract_id, requester.id, now=now)
        contracts.sign_off(contract_id, first.id, now=now)

        contracts.request_extension(contract_id, first.id, 10, new_price=7000, now=now)
        contracts.respond_to_extension(contract_id, requester.id, accept=True, now=now)

        assert reload(Job, job.id).price == 11000
        assert reload(Contract, contract_id).allocated_amount == 7000
        assert allocations.allocated_total(job.id) <= reload(Job, job.id).price
