"""Payment gateway port (abstract interface).

Defines the contract every provider adapter implements so the settlement
code never depends on a concrete provider. Failures surface as
:class:`checkout.domain.errors.GatewayError` with a typed ``kind``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

# Normalized webhook event types
CAPTURE_COMPLETED = "CAPTURE_COMPLETED"
CAPTURE_DENIED = "CAPTURE_DENIED"
REFUND_PROCESSED = "REFUND_PROCESSED"

CAPTURE_STATUS_COMPLETED = "COMPLETED"
CAPTURE_STATUS_DECLINED = "DECLINED"


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of capturing (or looking up the capture of) an external order."""

    status: str
    external_order_id: str
    capture_id: Optional[str] = None
    payer_id: Optional[str] = None
    amount: Decimal = Decimal("0.00")
    currency: str = "USD"
    custom_marker: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return self.status == CAPTURE_STATUS_COMPLETED


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str
    amount: Decimal
    currency: str = "USD"
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookEvent:
    """Provider notification reduced to the fields settlement needs.

    ``event_type`` is one of the normalized constants above, or the
    provider's own type for events nobody handles.
    """

    event_id: Optional[str]
    event_type: str
    provider_event_type: str
    custom_marker: Optional[str] = None
    external_order_id: Optional[str] = None
    capture_id: Optional[str] = None
    refund_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    payer_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    provider: str = "unknown"

    @abstractmethod
    def create_order(
        self,
        amount: Decimal,
        currency: str,
        items: List[dict],
        shipping_address: Optional[dict],
        custom_marker: str,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """Open an external order; ``custom_marker`` comes back on every webhook."""
        ...

    @abstractmethod
    def capture_order(self, external_order_id: str) -> CaptureResult:
        ...

    @abstractmethod
    def get_capture(self, external_order_id: str) -> CaptureResult:
        """Look up an order's capture, e.g. after an ``already_captured`` error."""
        ...

    @abstractmethod
    def refund_payment(
        self,
        capture_id: str,
        amount: Decimal,
        reason: Optional[str] = None,
        currency: str = "USD",
    ) -> RefundResult:
        ...

    @abstractmethod
    def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        ...

    @abstractmethod
    def parse_webhook_event(self, raw_body: bytes) -> WebhookEvent:
        ...

    def missing_configuration(self) -> List[str]:
        """Names of required settings that are not set."""
        return []
