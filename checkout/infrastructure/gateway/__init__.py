"""Payment gateway adapters.

``build_gateway`` picks the adapter named by ``PAYMENT_GATEWAY`` and wraps it
in the retry policy; the result is created once per app and injected.
"""

from checkout.infrastructure.gateway.port import (
    PaymentGateway,
    CaptureResult,
    RefundResult,
    WebhookEvent,
    CAPTURE_COMPLETED,
    CAPTURE_DENIED,
    REFUND_PROCESSED,
)
from checkout.infrastructure.gateway.fake_adapter import FakeGateway
from checkout.infrastructure.gateway.paypal_adapter import PayPalGateway
from checkout.infrastructure.gateway.retry import RetryingGateway


def build_gateway(settings) -> PaymentGateway:
    if settings.PAYMENT_GATEWAY == "fake":
        inner = FakeGateway(webhook_secret=settings.FAKE_WEBHOOK_SECRET)
    elif settings.PAYMENT_GATEWAY == "paypal":
        inner = PayPalGateway.from_settings(settings)
    else:
        raise ValueError(f"Unknown PAYMENT_GATEWAY: {settings.PAYMENT_GATEWAY}")
    return RetryingGateway(
        inner,
        max_attempts=settings.GATEWAY_MAX_ATTEMPTS,
        backoff_seconds=settings.GATEWAY_RETRY_BACKOFF_SECONDS,
    )


__all__ = [
    "PaymentGateway",
    "CaptureResult",
    "RefundResult",
    "WebhookEvent",
    "CAPTURE_COMPLETED",
    "CAPTURE_DENIED",
    "REFUND_PROCESSED",
    "FakeGateway",
    "PayPalGateway",
    "RetryingGateway",
    "build_gateway",
]
