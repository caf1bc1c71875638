"""
Resilient gateway client: bounded retries plus a per-provider circuit breaker
around any PaymentGateway adapter
"""

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from config import Config
from models import PaymentProvider
from services.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from services.payment_gateway import (
    CaptureResult, OrderResult, PaymentGateway, RefundResult, WebhookEvent, build_gateway
)
from services.retry_service import RetryService
from utils.exceptions import GatewayUnavailable, PaymentPendingRetry, ValidationError
from utils.money import Money

logger = logging.getLogger(__name__)


class GatewayClient:
    """
    Wraps one adapter.

    GatewayUnavailable is retried with exponential backoff; once retries are
    exhausted (or the circuit is open) callers get PaymentPendingRetry.
    GatewayRejected is never retried.
    """

    def __init__(self, gateway: PaymentGateway, retry_service: Optional[RetryService] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None):
        self.gateway = gateway
        self.retry_service = retry_service or RetryService()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            gateway.provider,
            failure_threshold=Config.GATEWAY_CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=Config.GATEWAY_CIRCUIT_RECOVERY_SECONDS,
        )

    @property
    def provider(self) -> str:
        return self.gateway.provider

    async def _call(self, operation: str, func: Callable, *args) -> Any:
        async def attempt():
            try:
                return await self.circuit_breaker.call(func, *args)
            except CircuitBreakerOpenError as e:
                raise PaymentPendingRetry(f"{self.provider} circuit open during {operation}") from e

        try:
            return await self.retry_service.retry_async(
                attempt,
                exceptions=(GatewayUnavailable,),
                operation=f"{self.provider}.{operation}",
            )
        except GatewayUnavailable as e:
            logger.error(f"❌ GATEWAY_RETRIES_EXHAUSTED: {self.provider}.{operation}: {e}")
            raise PaymentPendingRetry(f"{self.provider} {operation} pending retry: {e}") from e

    async def create_order(self, amount: Money, description: str, reference: str) -> OrderResult:
        return await self._call("create_order", self.gateway.create_order, amount, description, reference)

    async def capture_order(self, order_id: str) -> CaptureResult:
        return await self._call("capture_order", self.gateway.capture_order, order_id)

    async def refund(self, capture_id: str, amount: Optional[Money] = None) -> RefundResult:
        return await self._call("refund", self.gateway.refund, capture_id, amount)

    async def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> bool:
        return await self._call("verify_webhook", self.gateway.verify_webhook, headers, body)

    async def parse_webhook(self, body: bytes) -> WebhookEvent:
        return await self._call("parse_webhook", self.gateway.parse_webhook, body)


class GatewayRegistry:
    """Provider name -> GatewayClient"""

    def __init__(self, clients: Optional[Dict[str, GatewayClient]] = None,
                 default_provider: Optional[str] = None):
        self.clients: Dict[str, GatewayClient] = dict(clients or {})
        self.default_provider = default_provider or Config.DEFAULT_PAYMENT_PROVIDER

    def register(self, client: GatewayClient):
        self.clients[client.provider] = client

    def get(self, provider: Optional[str] = None) -> GatewayClient:
        name = provider or self.default_provider
        client = self.clients.get(name)
        if client is None:
            raise ValidationError(f"Payment provider not configured: {name}")
        return client

    @classmethod
    def from_config(cls) -> "GatewayRegistry":
        registry = cls()
        for provider in PaymentProvider:
            registry.register(GatewayClient(build_gateway(provider.value)))
        return registry
