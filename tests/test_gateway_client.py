"""
Tests for retry and circuit breaker behaviour around gateway adapters
"""

from unittest.mock import AsyncMock

import pytest

from services.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, CircuitState
from services.gateway_client import GatewayClient, GatewayRegistry
from services.payment_gateway import OrderResult
from services.retry_service import RetryService
from utils.exceptions import GatewayRejected, GatewayUnavailable, PaymentPendingRetry, ValidationError
from utils.money import Money


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def retry(sleep):
    return RetryService(max_attempts=3, initial_delay=1.0, max_delay=30.0, jitter=False, sleep=sleep)


class TestRetryService:

    @pytest.mark.asyncio
    async def test_backoff_schedule(self, retry, sleep):
        func = AsyncMock(side_effect=[GatewayUnavailable("down"), GatewayUnavailable("down"), "ok"])

        assert await retry.retry_async(func, exceptions=(GatewayUnavailable,)) == "ok"
        assert func.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, retry):
        func = AsyncMock(side_effect=GatewayUnavailable("down"))

        with pytest.raises(GatewayUnavailable):
            await retry.retry_async(func, exceptions=(GatewayUnavailable,))
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_at_once(self, retry, sleep):
        func = AsyncMock(side_effect=GatewayRejected("declined"))

        with pytest.raises(GatewayRejected):
            await retry.retry_async(func, exceptions=(GatewayUnavailable,))
        assert func.await_count == 1
        sleep.assert_not_awaited()

    def test_delays_are_capped(self):
        service = RetryService(max_attempts=6, initial_delay=10, max_delay=30, sleep=AsyncMock())
        assert list(service.delays()) == [10, 20, 30, 30, 30]


class TestCircuitBreaker:

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_recovers(self):
        clock = FakeClock()
        breaker = CircuitBreaker("paypal", failure_threshold=2, recovery_timeout=60, clock=clock)
        failing = AsyncMock(side_effect=GatewayUnavailable("down"))

        for _ in range(2):
            with pytest.raises(GatewayUnavailable):
                await breaker.call(failing)
        assert breaker.state == CircuitState.OPEN

        healthy = AsyncMock(return_value="ok")
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.call(healthy)
        healthy.assert_not_awaited()

        clock.now += 61
        assert await breaker.call(healthy) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("paypal", failure_threshold=1, recovery_timeout=10, clock=clock)
        failing = AsyncMock(side_effect=GatewayUnavailable("down"))

        with pytest.raises(GatewayUnavailable):
            await breaker.call(failing)
        clock.now += 11
        with pytest.raises(GatewayUnavailable):
            await breaker.call(failing)

        assert breaker.state == CircuitState.OPEN
        assert breaker.get_state()["stats"]["failed_calls"] == 2

    @pytest.mark.asyncio
    async def test_rejections_do_not_trip_the_breaker(self):
        breaker = CircuitBreaker("paypal", failure_threshold=1)
        rejected = AsyncMock(side_effect=GatewayRejected("declined"))

        with pytest.raises(GatewayRejected):
            await breaker.call(rejected)
        assert breaker.state == CircuitState.CLOSED


class TestGatewayClient:

    @staticmethod
    def _client(gateway, retry, threshold=5):
        return GatewayClient(gateway, retry_service=retry,
                             circuit_breaker=CircuitBreaker(gateway.provider, failure_threshold=threshold))

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, fake_gateway, retry):
        fake_gateway.create_order = AsyncMock(side_effect=[
            GatewayUnavailable("503"),
            OrderResult(order_id="ORDER-ref-1", approval_url="https://gateway.test/approve/ORDER-ref-1"),
        ])
        client = self._client(fake_gateway, retry)

        order = await client.create_order(Money(100, "ARS"), "desc", "ref-1")

        assert order.order_id == "ORDER-ref-1"
        assert fake_gateway.create_order.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_become_pending_retry(self, fake_gateway, retry):
        fake_gateway.capture_order = AsyncMock(side_effect=GatewayUnavailable("timeout"))
        client = self._client(fake_gateway, retry)

        with pytest.raises(PaymentPendingRetry):
            await client.capture_order("ORDER-1")
        assert fake_gateway.capture_order.await_count == 3

    @pytest.mark.asyncio
    async def test_rejection_not_retried(self, fake_gateway, retry):
        fake_gateway.capture_order = AsyncMock(side_effect=GatewayRejected("declined"))
        client = self._client(fake_gateway, retry)

        with pytest.raises(GatewayRejected):
            await client.capture_order("ORDER-1")
        assert fake_gateway.capture_order.await_count == 1

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits(self, fake_gateway, retry):
        fake_gateway.refund = AsyncMock(side_effect=GatewayUnavailable("down"))
        client = self._client(fake_gateway, retry, threshold=2)

        with pytest.raises(PaymentPendingRetry):
            await client.refund("CAP-1")
        # two failures opened the circuit; the third attempt never reached the gateway
        assert fake_gateway.refund.await_count == 2
        assert client.circuit_breaker.state == CircuitState.OPEN


class TestGatewayRegistry:

    def test_default_provider(self, fake_gateway, retry):
        client = GatewayClient(fake_gateway, retry_service=retry)
        registry = GatewayRegistry({"paypal": client}, default_provider="paypal")

        assert registry.get() is client
        assert registry.get("paypal") is client

    def test_unconfigured_provider(self):
        with pytest.raises(ValidationError):
            GatewayRegistry({}, default_provider="paypal").get("mercadopago")
