"""
Payment Gateway Adapters - PayPal and Mercado Pago behind one interface

Callers only ever see OrderResult / CaptureResult / RefundResult /
WebhookEvent and the two gateway error kinds:
  GatewayUnavailable - transient (network, 5xx, 429, capture still pending)
  GatewayRejected    - terminal for this attempt (4xx, declined)
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import aiohttp

from config import Config
from models import PaymentProvider
from utils.exceptions import (
    GatewayRejected, GatewayUnavailable, ValidationError, WebhookVerificationError
)
from utils.money import Money, PartyRef, party_ref_from_payload

logger = logging.getLogger(__name__)


@dataclass
class OrderResult:
    order_id: str
    approval_url: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CaptureResult:
    capture_id: str
    amount: Optional[Money] = None
    payer: Optional[PartyRef] = None
    payer_email: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    refund_id: str
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    """Normalized webhook: which order it concerns and, when known, the capture"""

    provider: str
    event_type: str
    order_id: Optional[str]
    capture: Optional[CaptureResult] = None
    actionable: bool = True
    raw: Dict[str, Any] = field(default_factory=dict)


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


class PaymentGateway(ABC):
    """Uniform async interface over a payment provider"""

    provider: str = ""

    def __init__(self, base_url: str, timeout_seconds: Optional[int] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.GATEWAY_REQUEST_TIMEOUT_SECONDS)

    @abstractmethod
    async def create_order(self, amount: Money, description: str, reference: str) -> OrderResult:
        ...

    @abstractmethod
    async def capture_order(self, order_id: str) -> CaptureResult:
        ...

    @abstractmethod
    async def refund(self, capture_id: str, amount: Optional[Money] = None) -> RefundResult:
        ...

    @abstractmethod
    async def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> bool:
        ...

    @abstractmethod
    async def parse_webhook(self, body: bytes) -> WebhookEvent:
        ...

    async def _get_headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    async def _request(self, method: str, path: str, json_body: Optional[Dict[str, Any]] = None,
                       params: Optional[Dict[str, Any]] = None,
                       extra_headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """One HTTP round-trip with provider errors folded into the gateway error kinds"""
        headers = await self._get_headers()
        if extra_headers:
            headers.update(extra_headers)
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, json=json_body, params=params, headers=headers) as response:
                    text = await response.text()
                    try:
                        data = json.loads(text) if text else {}
                    except json.JSONDecodeError:
                        if 200 <= response.status < 300:
                            raise GatewayUnavailable(f"Malformed response from {self.provider}", provider=self.provider)
                        data = {"message": text[:200]}
                    if 200 <= response.status < 300:
                        return data
                    self._raise_for_status(response.status, data)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"{self.provider.upper()}_NETWORK_ERROR: {method} {path}: {e}")
            raise GatewayUnavailable(f"Network error: {e}", provider=self.provider) from e
        return {}

    def _raise_for_status(self, status: int, data: Dict[str, Any]):
        issue = self._issue_code(data)
        detail = data.get("message") or data.get("error_description") or issue or "unknown error"
        if status >= 500 or status == 429:
            logger.warning(f"{self.provider.upper()}_UNAVAILABLE: HTTP {status}: {detail}")
            raise GatewayUnavailable(f"HTTP {status}: {detail}", provider=self.provider, status_code=status)
        logger.error(f"{self.provider.upper()}_REJECTED: HTTP {status}: {detail}")
        raise GatewayRejected(f"HTTP {status}: {detail}", provider=self.provider,
                              status_code=status, code=issue)

    @staticmethod
    def _issue_code(data: Dict[str, Any]) -> Optional[str]:
        details = data.get("details")
        if isinstance(details, list) and details:
            first = details[0]
            if isinstance(first, dict) and first.get("issue"):
                return first["issue"]
        return data.get("name") or data.get("error")


class PayPalGateway(PaymentGateway):
    """PayPal Orders v2 with OAuth client-credentials tokens"""

    provider = PaymentProvider.PAYPAL.value

    def __init__(self, client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 base_url: Optional[str] = None, webhook_id: Optional[str] = None,
                 return_url: Optional[str] = None, cancel_url: Optional[str] = None):
        super().__init__(base_url or Config.PAYPAL_BASE_URL)
        self.client_id = client_id or Config.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or Config.PAYPAL_CLIENT_SECRET
        self.webhook_id = webhook_id or Config.PAYPAL_WEBHOOK_ID
        self.return_url = return_url or f"{Config.CLIENT_URL}/payment/success"
        self.cancel_url = cancel_url or f"{Config.CLIENT_URL}/payment/cancel"
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0

        if not self.client_id or not self.client_secret:
            logger.warning("PayPal API credentials not configured - gateway will not function")

    async def _get_access_token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        credentials = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode()).decode()
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    f"{self.base_url}/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    headers={"Authorization": f"Basic {credentials}", "Accept": "application/json"},
                ) as response:
                    data = await response.json(content_type=None)
                    if response.status != 200:
                        self._raise_for_status(response.status, data or {})
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise GatewayUnavailable(f"PayPal token request failed: {e}", provider=self.provider) from e

        self._access_token = data["access_token"]
        # refresh a minute before PayPal expires it
        self._token_expires_at = time.monotonic() + max(0, int(data.get("expires_in", 0)) - 60)
        return self._access_token

    async def _get_headers(self) -> Dict[str, str]:
        token = await self._get_access_token()
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {token}",
        }

    async def create_order(self, amount: Money, description: str, reference: str) -> OrderResult:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": reference,
                "custom_id": reference,
                "description": description[:127],
                "amount": {
                    "currency_code": amount.currency,
                    "value": amount.to_major_string(),
                },
            }],
            "application_context": {
                "return_url": self.return_url,
                "cancel_url": self.cancel_url,
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
            },
        }
        data = await self._request("POST", "/v2/checkout/orders", json_body=payload,
                                   extra_headers={"PayPal-Request-Id": reference})
        approval_url = next(
            (link.get("href") for link in data.get("links", [])
             if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        logger.info(f"PAYPAL_ORDER_CREATED: order={data.get('id')} reference={reference} amount={amount}")
        return OrderResult(order_id=data["id"], approval_url=approval_url, raw=data)

    async def capture_order(self, order_id: str) -> CaptureResult:
        try:
            data = await self._request("POST", f"/v2/checkout/orders/{order_id}/capture", json_body={})
        except GatewayRejected as e:
            if e.code != "ORDER_ALREADY_CAPTURED":
                raise
            logger.info(f"PAYPAL_ORDER_ALREADY_CAPTURED: order={order_id}, reading existing capture")
            data = await self._request("GET", f"/v2/checkout/orders/{order_id}")
        return self._parse_capture(order_id, data)

    def _parse_capture(self, order_id: str, data: Dict[str, Any]) -> CaptureResult:
        try:
            capture = data["purchase_units"][0]["payments"]["captures"][0]
        except (KeyError, IndexError, TypeError):
            raise GatewayRejected(f"Order {order_id} has no capture", provider=self.provider,
                                  code="ORDER_NOT_CAPTURED")

        status = capture.get("status")
        if status == "PENDING":
            raise GatewayUnavailable(f"Capture for order {order_id} still pending", provider=self.provider)
        if status != "COMPLETED":
            raise GatewayRejected(f"Capture for order {order_id} is {status}", provider=self.provider,
                                  code=f"CAPTURE_{status}")

        payer = party_ref_from_payload(data.get("payer"))
        amount_data = capture.get("amount") or {}
        amount = None
        if amount_data.get("value") and amount_data.get("currency_code"):
            amount = Money.from_major(amount_data["value"], amount_data["currency_code"])

        return CaptureResult(
            capture_id=capture["id"],
            amount=amount,
            payer=payer,
            payer_email=getattr(payer, "email", None),
            raw=data,
        )

    async def refund(self, capture_id: str, amount: Optional[Money] = None) -> RefundResult:
        payload: Dict[str, Any] = {}
        if amount is not None:
            payload["amount"] = {"currency_code": amount.currency, "value": amount.to_major_string()}
        data = await self._request("POST", f"/v2/payments/captures/{capture_id}/refund", json_body=payload)
        logger.info(f"PAYPAL_REFUND: capture={capture_id} refund={data.get('id')} status={data.get('status')}")
        return RefundResult(refund_id=data["id"], status=data.get("status", "COMPLETED"), raw=data)

    async def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> bool:
        required = {
            "auth_algo": "paypal-auth-algo",
            "cert_url": "paypal-cert-url",
            "transmission_id": "paypal-transmission-id",
            "transmission_sig": "paypal-transmission-sig",
            "transmission_time": "paypal-transmission-time",
        }
        values = {name: _header(headers, header) for name, header in required.items()}
        missing = [header for name, header in required.items() if not values[name]]
        if missing:
            raise WebhookVerificationError(f"Missing PayPal webhook headers: {', '.join(missing)}")
        if not self.webhook_id:
            raise WebhookVerificationError("PAYPAL_WEBHOOK_ID is not configured")

        try:
            event = json.loads(body)
        except json.JSONDecodeError as e:
            raise WebhookVerificationError("PayPal webhook body is not JSON") from e

        payload = dict(values, webhook_id=self.webhook_id, webhook_event=event)
        data = await self._request("POST", "/v1/notifications/verify-webhook-signature", json_body=payload)
        verified = data.get("verification_status") == "SUCCESS"
        if not verified:
            logger.warning(f"PAYPAL_WEBHOOK_UNVERIFIED: transmission={values['transmission_id']}")
        return verified

    async def parse_webhook(self, body: bytes) -> WebhookEvent:
        event = json.loads(body)
        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}

        if event_type == "CHECKOUT.ORDER.APPROVED":
            return WebhookEvent(self.provider, event_type, order_id=resource.get("id"), raw=event)

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
            amount_data = resource.get("amount") or {}
            amount = None
            if amount_data.get("value") and amount_data.get("currency_code"):
                amount = Money.from_major(amount_data["value"], amount_data["currency_code"])
            capture = CaptureResult(capture_id=resource.get("id"), amount=amount, raw=resource)
            return WebhookEvent(self.provider, event_type, order_id=order_id, capture=capture, raw=event)

        return WebhookEvent(self.provider, event_type, order_id=None, actionable=False, raw=event)


class MercadoPagoGateway(PaymentGateway):
    """
    Mercado Pago Checkout Pro.

    The order handed back to callers is our external reference; the checkout
    preference is created with it and the capture is the approved payment
    that carries the same external reference.
    """

    provider = PaymentProvider.MERCADOPAGO.value

    def __init__(self, access_token: Optional[str] = None, base_url: Optional[str] = None,
                 webhook_secret: Optional[str] = None, return_url: Optional[str] = None,
                 notification_url: Optional[str] = None):
        super().__init__(base_url or Config.MERCADOPAGO_BASE_URL)
        self.access_token = access_token or Config.MERCADOPAGO_ACCESS_TOKEN
        self.webhook_secret = webhook_secret or Config.MERCADOPAGO_WEBHOOK_SECRET
        self.return_url = return_url or f"{Config.CLIENT_URL}/payment/success"
        self.notification_url = notification_url

        if not self.access_token:
            logger.warning("Mercado Pago access token not configured - gateway will not function")

    async def _get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.access_token}",
        }

    async def create_order(self, amount: Money, description: str, reference: str) -> OrderResult:
        payload: Dict[str, Any] = {
            "items": [{
                "id": reference,
                "title": description[:256],
                "quantity": 1,
                "unit_price": float(amount.to_major()),
                "currency_id": amount.currency,
            }],
            "external_reference": reference,
            "back_urls": {
                "success": self.return_url,
                "failure": self.return_url,
                "pending": self.return_url,
            },
        }
        if self.notification_url:
            payload["notification_url"] = self.notification_url
        data = await self._request("POST", "/checkout/preferences", json_body=payload)
        approval_url = data.get("init_point") or data.get("sandbox_init_point")
        logger.info(f"MERCADOPAGO_PREFERENCE_CREATED: preference={data.get('id')} reference={reference}")
        return OrderResult(order_id=reference, approval_url=approval_url, raw=data)

    async def capture_order(self, order_id: str) -> CaptureResult:
        data = await self._request(
            "GET", "/v1/payments/search",
            params={"external_reference": order_id, "sort": "date_created", "criteria": "desc"},
        )
        results = data.get("results") or []
        approved = next((p for p in results if p.get("status") == "approved"), None)
        if approved is not None:
            return self._capture_from_payment(approved)
        if any(p.get("status") in ("pending", "in_process", "authorized") for p in results):
            raise GatewayUnavailable(f"Payment for {order_id} still in process", provider=self.provider)
        raise GatewayRejected(f"No approved payment for {order_id}", provider=self.provider,
                              code="order_not_approved")

    def _capture_from_payment(self, payment: Dict[str, Any]) -> CaptureResult:
        payer = party_ref_from_payload(payment.get("payer"))
        amount = None
        if payment.get("transaction_amount") is not None and payment.get("currency_id"):
            amount = Money.from_major(payment["transaction_amount"], payment["currency_id"])
        return CaptureResult(
            capture_id=str(payment["id"]),
            amount=amount,
            payer=payer,
            payer_email=getattr(payer, "email", None),
            raw=payment,
        )

    async def refund(self, capture_id: str, amount: Optional[Money] = None) -> RefundResult:
        payload: Dict[str, Any] = {}
        if amount is not None:
            payload["amount"] = float(amount.to_major())
        data = await self._request(
            "POST", f"/v1/payments/{capture_id}/refunds", json_body=payload,
            extra_headers={"X-Idempotency-Key": str(uuid.uuid4())},
        )
        logger.info(f"MERCADOPAGO_REFUND: payment={capture_id} refund={data.get('id')} status={data.get('status')}")
        return RefundResult(refund_id=str(data["id"]), status=data.get("status", "approved"), raw=data)

    async def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> bool:
        if not self.webhook_secret:
            raise WebhookVerificationError("MERCADOPAGO_WEBHOOK_SECRET is not configured")
        signature = _header(headers, "x-signature")
        request_id = _header(headers, "x-request-id")
        if not signature or not request_id:
            raise WebhookVerificationError("Missing Mercado Pago signature headers")

        parts = dict(
            item.strip().split("=", 1) for item in signature.split(",") if "=" in item
        )
        ts, received = parts.get("ts"), parts.get("v1")
        if not ts or not received:
            raise WebhookVerificationError("Malformed x-signature header")

        try:
            data_id = (json.loads(body).get("data") or {}).get("id")
        except (json.JSONDecodeError, AttributeError) as e:
            raise WebhookVerificationError("Mercado Pago webhook body is not JSON") from e

        manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
        expected = hmac.new(self.webhook_secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, received)

    async def parse_webhook(self, body: bytes) -> WebhookEvent:
        event = json.loads(body)
        event_type = event.get("type") or event.get("topic") or ""
        payment_id = (event.get("data") or {}).get("id")
        if event_type != "payment" or not payment_id:
            return WebhookEvent(self.provider, event_type, order_id=None, actionable=False, raw=event)

        payment = await self._request("GET", f"/v1/payments/{payment_id}")
        order_id = payment.get("external_reference")
        if payment.get("status") != "approved":
            return WebhookEvent(self.provider, event_type, order_id=order_id, actionable=False, raw=event)
        return WebhookEvent(self.provider, event_type, order_id=order_id,
                            capture=self._capture_from_payment(payment), raw=event)


def build_gateway(provider: str) -> PaymentGateway:
    """Construct the adapter for a provider name"""
    if provider == PaymentProvider.PAYPAL.value:
        return PayPalGateway()
    if provider == PaymentProvider.MERCADOPAGO.value:
        return MercadoPagoGateway()
    raise ValidationError(f"Unsupported payment provider: {provider}")
