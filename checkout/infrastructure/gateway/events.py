"""Parsing of PayPal-shaped webhook payloads and order/capture bodies."""

import json
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from checkout.domain.errors import MalformedWebhook
from checkout.infrastructure.gateway.port import (
    CaptureResult,
    WebhookEvent,
    CAPTURE_COMPLETED,
    CAPTURE_DENIED,
    REFUND_PROCESSED,
    CAPTURE_STATUS_COMPLETED,
    CAPTURE_STATUS_DECLINED,
)

EVENT_TYPES = {
    "PAYMENT.CAPTURE.COMPLETED": CAPTURE_COMPLETED,
    "PAYMENT.CAPTURE.DENIED": CAPTURE_DENIED,
    "PAYMENT.CAPTURE.REFUNDED": REFUND_PROCESSED,
}


def decode_body(raw_body) -> Dict[str, Any]:
    try:
        if isinstance(raw_body, (bytes, bytearray)):
            raw_body = raw_body.decode("utf-8")
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedWebhook("Webhook body is not valid JSON", details={"error": str(e)})
    if not isinstance(payload, dict) or not payload.get("event_type"):
        raise MalformedWebhook("Invalid webhook payload structure")
    return payload


def to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise MalformedWebhook("Invalid amount in webhook payload", details={"value": value})


def _link_tail(resource: dict, rel: str) -> Optional[str]:
    for link in resource.get("links") or []:
        if link.get("rel") == rel and link.get("href"):
            return link["href"].rstrip("/").rsplit("/", 1)[-1]
    return None


def parse_event(raw_body) -> WebhookEvent:
    payload = decode_body(raw_body)
    provider_type = payload["event_type"]
    resource = payload.get("resource")
    if not isinstance(resource, dict):
        raise MalformedWebhook("Webhook payload has no resource", details={"event_type": provider_type})

    event_type = EVENT_TYPES.get(provider_type, provider_type)
    amount = resource.get("amount") or {}
    related = (resource.get("supplementary_data") or {}).get("related_ids") or {}

    capture_id = refund_id = None
    if event_type in (CAPTURE_COMPLETED, CAPTURE_DENIED):
        capture_id = resource.get("id")
        if not capture_id:
            raise MalformedWebhook("Capture event without capture id", details={"event_type": provider_type})
    elif event_type == REFUND_PROCESSED:
        refund_id = resource.get("id")
        capture_id = related.get("capture_id") or _link_tail(resource, "up")
        if not refund_id or not capture_id:
            raise MalformedWebhook("Refund event without refund or capture id", details={"event_type": provider_type})

    return WebhookEvent(
        event_id=payload.get("id"),
        event_type=event_type,
        provider_event_type=provider_type,
        custom_marker=resource.get("custom_id"),
        external_order_id=related.get("order_id"),
        capture_id=capture_id,
        refund_id=refund_id,
        amount=to_decimal(amount.get("value")),
        currency=amount.get("currency_code"),
        payer_id=(resource.get("payer") or {}).get("payer_id"),
        raw=payload,
    )


def capture_from_order(body: Dict[str, Any], external_order_id: str) -> CaptureResult:
    """Build a CaptureResult from a v2 checkout order body (capture or GET)."""
    unit = (body.get("purchase_units") or [{}])[0]
    captures = (unit.get("payments") or {}).get("captures") or []
    capture = captures[0] if captures else {}
    amount = capture.get("amount") or {}

    if body.get("status") == "COMPLETED" and capture.get("status") == "COMPLETED":
        status = CAPTURE_STATUS_COMPLETED
    elif capture.get("status") in ("DECLINED", "FAILED"):
        status = CAPTURE_STATUS_DECLINED
    else:
        status = capture.get("status") or body.get("status") or "UNKNOWN"

    return CaptureResult(
        status=status,
        external_order_id=body.get("id") or external_order_id,
        capture_id=capture.get("id"),
        payer_id=(body.get("payer") or {}).get("payer_id"),
        amount=Decimal(str(amount.get("value", "0"))),
        currency=amount.get("currency_code") or "USD",
        custom_marker=capture.get("custom_id") or unit.get("custom_id"),
        raw=body,
    )
