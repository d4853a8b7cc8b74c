# Overview: Payment gateway capability; creates gateway orders and verifies payment signatures.

from __future__ import annotations

import hashlib
import hmac
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Protocol

import httpx
from flask import current_app

from ..exceptions import PaymentGatewayError


RAZORPAY_API_BASE = "https://api.razorpay.com/v1"

# Recent stub orders kept for inspection
STUB_HISTORY_LIMIT = 1000


@dataclass(frozen=True)
class GatewayOrderRequest:
    amount_cents: int
    currency: str
    receipt: str
    notes: dict = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayOrder:
    provider: str
    gateway_order_id: str
    amount_cents: int
    currency: str


class PaymentGateway(Protocol):
    name: str
    key_secret: str

    def create_order(self, request: GatewayOrderRequest) -> GatewayOrder:
        ...


def compute_signature(gateway_order_id: str, payment_id: str, secret: str) -> str:
    """HMAC-SHA256 hex digest over "<gateway_order_id>|<payment_id>"."""
    message = f"{gateway_order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(gateway_order_id: str | None, payment_id: str | None, signature: str | None, secret: str) -> bool:
    if not gateway_order_id or not payment_id or not signature:
        return False
    expected = compute_signature(gateway_order_id, payment_id, secret)
    return hmac.compare_digest(expected.encode("utf-8"), str(signature).strip().encode("utf-8"))


class StubPaymentGateway:
    """Offline gateway for development and tests; never leaves the process."""

    name = "stub"

    def __init__(self, key_secret: str = "TEST_KEY_SECRET", history_limit: int = STUB_HISTORY_LIMIT):
        self.key_secret = key_secret
        self.created: deque[GatewayOrder] = deque(maxlen=history_limit)

    def create_order(self, request: GatewayOrderRequest) -> GatewayOrder:
        order = GatewayOrder(
            provider=self.name,
            gateway_order_id=f"order_stub_{uuid.uuid4().hex[:14]}",
            amount_cents=request.amount_cents,
            currency=request.currency,
        )
        self.created.append(order)
        return order


class RazorpayGateway:
    """
    Razorpay Orders API client.

    Amounts are sent in the smallest currency unit, which is what the
    engine stores already.
    """

    name = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        *,
        base_url: str = RAZORPAY_API_BASE,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout,
            transport=self._transport,
        )

    def create_order(self, request: GatewayOrderRequest) -> GatewayOrder:
        payload = {
            "amount": request.amount_cents,
            "currency": request.currency,
            "receipt": request.receipt,
            "notes": request.notes,
        }
        try:
            with self._client() as client:
                resp = client.post("/orders", json=payload)
        except httpx.HTTPError as exc:
            raise PaymentGatewayError(
                "Payment gateway unreachable", provider=self.name
            ) from exc

        if resp.status_code >= 400:
            raise PaymentGatewayError(
                "Payment gateway rejected the order",
                provider=self.name,
                gateway_status=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise PaymentGatewayError("Payment gateway returned invalid JSON", provider=self.name) from exc

        gateway_order_id = body.get("id")
        if not gateway_order_id:
            raise PaymentGatewayError("Payment gateway response missing order id", provider=self.name)

        return GatewayOrder(
            provider=self.name,
            gateway_order_id=gateway_order_id,
            amount_cents=int(body.get("amount", request.amount_cents)),
            currency=body.get("currency", request.currency),
        )


def get_payment_gateway(config) -> PaymentGateway:
    """Build the gateway named by config["PAYMENT_GATEWAY"]."""
    name = (config.get("PAYMENT_GATEWAY") or "stub").strip().lower()
    secret = config.get("RAZORPAY_KEY_SECRET", "TEST_KEY_SECRET")
    if name == "stub":
        return StubPaymentGateway(key_secret=secret)
    if name == "razorpay":
        return RazorpayGateway(
            key_id=config.get("RAZORPAY_KEY_ID", "TEST_KEY_ID"),
            key_secret=secret,
            timeout=float(config.get("PAYMENT_GATEWAY_TIMEOUT", 10)),
        )
    raise ValueError(f"Unknown payment gateway '{name}'. Available: razorpay, stub")


def current_gateway() -> PaymentGateway:
    return current_app.extensions["payment_gateway"]
