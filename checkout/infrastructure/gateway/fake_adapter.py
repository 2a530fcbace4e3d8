"""Configurable fake payment gateway for development and testing.

Simulates the provider in memory: external orders, captures, refunds and
HMAC-signed webhooks shaped like PayPal's, so the real event parser runs
against them. It can be told to fail the next call of any operation.
"""

import hashlib
import hmac
import json
import threading
from collections import defaultdict, deque
from decimal import Decimal
from typing import Mapping, Optional
from uuid import uuid4

from checkout.domain.errors import GatewayError, MalformedWebhook
from checkout.infrastructure.gateway.events import parse_event
from checkout.infrastructure.gateway.port import (
    PaymentGateway,
    CaptureResult,
    RefundResult,
    WebhookEvent,
    CAPTURE_STATUS_COMPLETED,
)

SIGNATURE_HEADER = "X-Fake-Signature"


class FakeGateway(PaymentGateway):
    provider = "fake"

    def __init__(self, webhook_secret: str = "test-secret"):
        self.webhook_secret = webhook_secret
        self.orders: dict = {}
        self.calls: list = []
        self._failures = defaultdict(deque)
        self._lock = threading.Lock()

    def fail_next(self, method: str, kind: str = GatewayError.DECLINED, times: int = 1):
        """Make the next ``times`` calls of ``method`` raise ``GatewayError(kind)``."""
        with self._lock:
            for _ in range(times):
                self._failures[method].append(kind)

    def _record(self, method: str, **kwargs):
        self.calls.append({"method": method, **kwargs})
        if self._failures[method]:
            kind = self._failures[method].popleft()
            raise GatewayError(kind, f"Simulated {kind} on {method}")

    def calls_to(self, method: str) -> list:
        return [c for c in self.calls if c["method"] == method]

    def create_order(self, amount, currency, items, shipping_address, custom_marker,
                     idempotency_key=None) -> str:
        with self._lock:
            self._record("create_order", amount=amount, currency=currency, custom_marker=custom_marker)
            external_id = f"FAKE-{uuid4().hex[:12].upper()}"
            self.orders[external_id] = {
                "amount": Decimal(amount),
                "currency": currency,
                "custom_marker": custom_marker,
                "capture_id": None,
                "refunded": Decimal("0"),
            }
            return external_id

    def _result(self, external_order_id: str, order: dict, status: str) -> CaptureResult:
        return CaptureResult(
            status=status,
            external_order_id=external_order_id,
            capture_id=order["capture_id"],
            payer_id="FAKE-PAYER",
            amount=order["amount"],
            currency=order["currency"],
            custom_marker=order["custom_marker"],
            raw={"id": external_order_id, "status": status, "capture_id": order["capture_id"]},
        )

    def capture_order(self, external_order_id: str) -> CaptureResult:
        with self._lock:
            self._record("capture_order", external_order_id=external_order_id)
            order = self.orders.get(external_order_id)
            if order is None:
                raise GatewayError(GatewayError.PROVIDER_ERROR, "Unknown external order", retryable=False)
            if order["capture_id"] is not None:
                raise GatewayError(GatewayError.ALREADY_CAPTURED, "Order already captured")
            order["capture_id"] = f"FAKE-CAP-{uuid4().hex[:12].upper()}"
            return self._result(external_order_id, order, CAPTURE_STATUS_COMPLETED)

    def get_capture(self, external_order_id: str) -> CaptureResult:
        with self._lock:
            self._record("get_capture", external_order_id=external_order_id)
            order = self.orders.get(external_order_id)
            if order is None:
                raise GatewayError(GatewayError.PROVIDER_ERROR, "Unknown external order", retryable=False)
            status = CAPTURE_STATUS_COMPLETED if order["capture_id"] else "APPROVED"
            return self._result(external_order_id, order, status)

    def refund_payment(self, capture_id, amount, reason=None, currency="USD") -> RefundResult:
        with self._lock:
            self._record("refund_payment", capture_id=capture_id, amount=amount, reason=reason)
            order = next((o for o in self.orders.values() if o["capture_id"] == capture_id), None)
            if order is None:
                raise GatewayError(GatewayError.PROVIDER_ERROR, "Unknown capture", retryable=False)
            amount = Decimal(amount)
            if order["refunded"] + amount > order["amount"]:
                raise GatewayError(GatewayError.PROVIDER_ERROR, "Refund exceeds captured amount", retryable=False)
            order["refunded"] += amount
            refund_id = f"FAKE-REF-{uuid4().hex[:12].upper()}"
            return RefundResult(
                refund_id=refund_id,
                status="COMPLETED",
                amount=amount,
                currency=currency,
                raw={"id": refund_id, "status": "COMPLETED", "capture_id": capture_id},
            )

    # Webhooks

    def sign(self, raw_body: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), raw_body, hashlib.sha256).hexdigest()

    def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get(SIGNATURE_HEADER.lower())
        if not signature:
            raise MalformedWebhook("Missing signature header", details={"missing_headers": [SIGNATURE_HEADER]})
        return hmac.compare_digest(signature, self.sign(raw_body))

    def parse_webhook_event(self, raw_body: bytes) -> WebhookEvent:
        return parse_event(raw_body)

    def build_webhook(
        self,
        provider_event_type: str,
        external_order_id: Optional[str] = None,
        capture_id: Optional[str] = None,
        refund_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        custom_marker: Optional[str] = None,
    ):
        """Return ``(headers, body)`` for a signed PayPal-shaped notification."""
        order = self.orders.get(external_order_id, {}) if external_order_id else {}
        resource = {
            "custom_id": custom_marker or order.get("custom_marker"),
            "amount": {
                "currency_code": order.get("currency", "USD"),
                "value": f"{Decimal(amount if amount is not None else order.get('amount', 0)):.2f}",
            },
            "supplementary_data": {"related_ids": {"order_id": external_order_id}},
        }
        if refund_id:
            resource["id"] = refund_id
            resource["supplementary_data"]["related_ids"]["capture_id"] = capture_id or order.get("capture_id")
        else:
            resource["id"] = capture_id or order.get("capture_id")
        body = json.dumps({
            "id": f"WH-{uuid4().hex[:12].upper()}",
            "event_type": provider_event_type,
            "resource": resource,
        }).encode()
        return {SIGNATURE_HEADER: self.sign(body), "Content-Type": "application/json"}, body
