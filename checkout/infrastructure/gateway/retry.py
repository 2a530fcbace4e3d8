import time
import uuid
from typing import Callable, Optional

from checkout.domain.errors import GatewayError
from checkout.infrastructure.gateway.port import PaymentGateway
from shared.core.logging_config import get_logger

logger = get_logger(__name__)


class RetryingGateway(PaymentGateway):
    """Wraps an adapter with bounded retries for transient failures.

    Only idempotent operations are retried: order creation (under one
    idempotency key for all attempts), capture and capture lookup. Refunds
    and webhook verification pass straight through.
    """

    def __init__(self, inner: PaymentGateway, max_attempts: int = 3, backoff_seconds: float = 0.5,
                 sleep: Callable[[float], None] = time.sleep):
        self.inner = inner
        self.provider = inner.provider
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def _call(self, operation: str, fn, *args, **kwargs):
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except GatewayError as e:
                if not e.retryable or attempt >= self.max_attempts:
                    raise
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Gateway {operation} failed, retrying",
                    extra={'extra_fields': {
                        'operation': operation,
                        'attempt': attempt,
                        'kind': e.kind,
                        'delay_seconds': delay,
                    }}
                )
                self._sleep(delay)
                attempt += 1

    def create_order(self, amount, currency, items, shipping_address, custom_marker,
                     idempotency_key: Optional[str] = None) -> str:
        key = idempotency_key or f"create-{custom_marker}-{uuid.uuid4().hex}"
        return self._call("create_order", self.inner.create_order,
                          amount, currency, items, shipping_address, custom_marker, idempotency_key=key)

    def capture_order(self, external_order_id):
        return self._call("capture_order", self.inner.capture_order, external_order_id)

    def get_capture(self, external_order_id):
        return self._call("get_capture", self.inner.get_capture, external_order_id)

    def refund_payment(self, capture_id, amount, reason=None, currency="USD"):
        return self.inner.refund_payment(capture_id, amount, reason, currency)

    def verify_webhook_signature(self, headers, raw_body) -> bool:
        return self.inner.verify_webhook_signature(headers, raw_body)

    def parse_webhook_event(self, raw_body):
        return self.inner.parse_webhook_event(raw_body)

    def missing_configuration(self):
        return self.inner.missing_configuration()
