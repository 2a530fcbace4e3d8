"""PayPal REST adapter (Orders v2 + Payments v2)."""

import threading
import time
import uuid
from decimal import Decimal
from typing import List, Mapping, Optional

import httpx

from checkout.domain.errors import GatewayError, MalformedWebhook
from checkout.infrastructure.gateway.events import decode_body, parse_event, capture_from_order
from checkout.infrastructure.gateway.port import PaymentGateway, CaptureResult, RefundResult, WebhookEvent
from shared.core.logging_config import get_logger, log_payment_event

logger = get_logger(__name__)

SIGNATURE_HEADERS = [
    "paypal-auth-algo",
    "paypal-cert-url",
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-transmission-time",
]

ALREADY_CAPTURED_ISSUES = {"ORDER_ALREADY_CAPTURED", "DUPLICATE_INVOICE_ID"}
DECLINED_ISSUES = {
    "INSTRUMENT_DECLINED",
    "TRANSACTION_REFUSED",
    "PAYER_ACTION_REQUIRED",
    "PAYER_CANNOT_PAY",
    "ORDER_NOT_APPROVED",
}


def _fmt(amount) -> str:
    return f"{Decimal(amount):.2f}"


class PayPalGateway(PaymentGateway):
    provider = "paypal"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: str = "",
        base_url: str = "https://api-m.sandbox.paypal.com",
        brand_name: str = "Storefront",
        frontend_url: str = "http://localhost:3000",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.brand_name = brand_name
        self.frontend_url = frontend_url
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self._token: Optional[str] = None
        self._token_expiry = 0.0
        self._token_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.BaseTransport] = None) -> "PayPalGateway":
        return cls(
            client_id=settings.PAYPAL_CLIENT_ID,
            client_secret=settings.PAYPAL_CLIENT_SECRET,
            webhook_id=settings.PAYPAL_WEBHOOK_ID,
            base_url=settings.paypal_api_url,
            brand_name=settings.PAYPAL_BRAND_NAME,
            frontend_url=settings.FRONTEND_URL,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            transport=transport,
        )

    def missing_configuration(self) -> List[str]:
        missing = []
        if not self.client_id:
            missing.append("PAYPAL_CLIENT_ID")
        if not self.client_secret:
            missing.append("PAYPAL_CLIENT_SECRET")
        if not self.webhook_id:
            missing.append("PAYPAL_WEBHOOK_ID")
        return missing

    def close(self):
        self._client.close()

    # Transport

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expiry:
                return self._token
            try:
                response = self._client.post(
                    "/v1/oauth2/token",
                    auth=(self.client_id, self.client_secret),
                    data={"grant_type": "client_credentials"},
                )
            except httpx.TimeoutException as e:
                raise GatewayError(GatewayError.NETWORK_TIMEOUT, "PayPal authentication timed out", details={"error": str(e)})
            except httpx.TransportError as e:
                raise GatewayError(GatewayError.PROVIDER_ERROR, "PayPal is unreachable", details={"error": str(e)}, retryable=True)
            if response.status_code != 200:
                logger.error("PayPal OAuth failed", extra={'extra_fields': {'status_code': response.status_code}})
                raise GatewayError(
                    GatewayError.PROVIDER_ERROR,
                    "Failed to authenticate with PayPal",
                    details={"status_code": response.status_code},
                    retryable=response.status_code >= 500,
                )
            data = response.json()
            self._token = data["access_token"]
            # refresh five minutes before the provider expires it
            self._token_expiry = time.monotonic() + max(0, int(data.get("expires_in", 0)) - 300)
            return self._token

    def _request(self, method: str, path: str, json: Optional[dict] = None,
                 request_id: Optional[str] = None) -> dict:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
            "PayPal-Request-Id": request_id or str(uuid.uuid4()),
        }
        try:
            response = self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise GatewayError(GatewayError.NETWORK_TIMEOUT, "PayPal request timed out", details={"path": path, "error": str(e)})
        except httpx.TransportError as e:
            raise GatewayError(GatewayError.PROVIDER_ERROR, "PayPal is unreachable", details={"path": path, "error": str(e)}, retryable=True)

        if response.status_code >= 400:
            raise self._classify(response, path)
        if not response.content:
            return {}
        return response.json()

    def _classify(self, response: httpx.Response, path: str) -> GatewayError:
        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}
        issues = {d.get("issue") for d in body.get("details") or [] if isinstance(d, dict)}
        details = {"path": path, "status_code": response.status_code, "debug_id": body.get("debug_id"), "issues": sorted(i for i in issues if i)}
        logger.error("PayPal API error", extra={'extra_fields': details})

        if issues & ALREADY_CAPTURED_ISSUES:
            return GatewayError(GatewayError.ALREADY_CAPTURED, "Order already captured", details=details)
        if issues & DECLINED_ISSUES:
            return GatewayError(GatewayError.DECLINED, body.get("message") or "Payment declined", details=details)
        retryable = response.status_code >= 500 or response.status_code == 429
        return GatewayError(
            GatewayError.PROVIDER_ERROR,
            body.get("message") or "PayPal API request failed",
            details=details,
            retryable=retryable,
        )

    # Operations

    def create_order(self, amount, currency, items, shipping_address, custom_marker,
                     idempotency_key=None) -> str:
        item_total = sum(Decimal(i["unit_price"]) * int(i["quantity"]) for i in items) if items else Decimal(amount)
        breakdown = {
            "item_total": {"currency_code": currency, "value": _fmt(item_total)},
        }
        extras = Decimal(amount) - item_total
        if extras > 0:
            breakdown["handling"] = {"currency_code": currency, "value": _fmt(extras)}
        elif extras < 0:
            breakdown["discount"] = {"currency_code": currency, "value": _fmt(-extras)}

        unit = {
            "reference_id": custom_marker,
            "custom_id": custom_marker,
            "amount": {"currency_code": currency, "value": _fmt(amount), "breakdown": breakdown},
            "items": [
                {
                    "name": i["name"][:127],
                    "sku": i.get("sku"),
                    "unit_amount": {"currency_code": currency, "value": _fmt(i["unit_price"])},
                    "quantity": str(i["quantity"]),
                }
                for i in items
            ],
        }
        if shipping_address:
            full_name = " ".join(filter(None, [shipping_address.get("first_name"), shipping_address.get("last_name")]))
            unit["shipping"] = {
                "name": {"full_name": full_name or self.brand_name},
                "address": {
                    "address_line_1": shipping_address.get("line1"),
                    "address_line_2": shipping_address.get("line2"),
                    "admin_area_2": shipping_address.get("city"),
                    "admin_area_1": shipping_address.get("state"),
                    "postal_code": shipping_address.get("zip"),
                    "country_code": shipping_address.get("country") or "US",
                },
            }
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [unit],
            "application_context": {
                "brand_name": self.brand_name,
                "shipping_preference": "SET_PROVIDED_ADDRESS" if shipping_address else "GET_FROM_FILE",
                "user_action": "PAY_NOW",
                "return_url": f"{self.frontend_url}/checkout/success",
                "cancel_url": f"{self.frontend_url}/checkout/cancel",
            },
        }
        body = self._request("POST", "/v2/checkout/orders", json=payload, request_id=idempotency_key)
        logger.info(
            "PayPal order created",
            extra={'extra_fields': {'external_order_id': body.get("id"), 'order_id': custom_marker, 'status': body.get("status")}}
        )
        return body["id"]

    def capture_order(self, external_order_id: str) -> CaptureResult:
        body = self._request(
            "POST",
            f"/v2/checkout/orders/{external_order_id}/capture",
            json={},
            request_id=f"capture-{external_order_id}",
        )
        result = capture_from_order(body, external_order_id)
        logger.info(
            "PayPal order captured",
            extra={'extra_fields': {
                'external_order_id': external_order_id,
                'capture_id': result.capture_id,
                'status': result.status,
                'amount': str(result.amount),
            }}
        )
        return result

    def get_capture(self, external_order_id: str) -> CaptureResult:
        body = self._request("GET", f"/v2/checkout/orders/{external_order_id}")
        return capture_from_order(body, external_order_id)

    def refund_payment(self, capture_id, amount, reason=None, currency="USD") -> RefundResult:
        payload = {"amount": {"currency_code": currency, "value": _fmt(amount)}}
        if reason:
            payload["note_to_payer"] = reason[:255]
        body = self._request("POST", f"/v2/payments/captures/{capture_id}/refund", json=payload)
        value = (body.get("amount") or {}).get("value")
        result = RefundResult(
            refund_id=body["id"],
            status=body.get("status", "UNKNOWN"),
            amount=Decimal(str(value)) if value is not None else Decimal(amount),
            currency=(body.get("amount") or {}).get("currency_code") or currency,
            raw=body,
        )
        logger.info(
            "PayPal refund processed",
            extra={'extra_fields': {'capture_id': capture_id, 'refund_id': result.refund_id, 'status': result.status}}
        )
        return result

    def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        lowered = {k.lower(): v for k, v in headers.items()}
        missing = [h for h in SIGNATURE_HEADERS if not lowered.get(h)]
        if missing:
            raise MalformedWebhook("Missing required PayPal headers", details={"missing_headers": missing})
        if not self.webhook_id:
            logger.warning("PayPal webhook ID not configured")
            return False

        payload = {
            "auth_algo": lowered["paypal-auth-algo"],
            "cert_url": lowered["paypal-cert-url"],
            "transmission_id": lowered["paypal-transmission-id"],
            "transmission_sig": lowered["paypal-transmission-sig"],
            "transmission_time": lowered["paypal-transmission-time"],
            "webhook_id": self.webhook_id,
            "webhook_event": decode_body(raw_body),
        }
        result = self._request("POST", "/v1/notifications/verify-webhook-signature", json=payload)
        verified = result.get("verification_status") == "SUCCESS"
        if not verified:
            log_payment_event(
                "paypal_webhook_verification_failed",
                transmission_id=lowered["paypal-transmission-id"],
                status=result.get("verification_status"),
            )
        return verified

    def parse_webhook_event(self, raw_body: bytes) -> WebhookEvent:
        return parse_event(raw_body)
