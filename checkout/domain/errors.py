"""Checkout error taxonomy.

Every error carries a machine readable ``code`` and the HTTP status the API
layer renders it with, so routes never translate exceptions by hand.
"""

from typing import Any, Optional


class CheckoutError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Any] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(CheckoutError):
    """Malformed request; rejected before any mutation."""
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(CheckoutError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(CheckoutError):
    """Request conflicts with current state; nothing was written."""
    status_code = 409
    code = "CONFLICT"


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"


class InsufficientStock(ConflictError):
    code = "insufficient_stock"


class InsufficientBalance(ConflictError):
    code = "insufficient_balance"


class GiftCardUnavailable(ConflictError):
    """Gift card is unknown, disabled, depleted or expired.

    ``code`` is one of ``not_found``, ``inactive`` or ``expired``.
    """

    def __init__(self, message: str, code: str, details: Optional[Any] = None):
        super().__init__(message, details=details, code=code)
        if code == "not_found":
            self.status_code = 404


class PaymentError(CheckoutError):
    status_code = 402
    code = "PAYMENT_ERROR"


class GatewayError(PaymentError):
    """Typed failure from the payment provider."""

    DECLINED = "declined"
    ALREADY_CAPTURED = "already_captured"
    NETWORK_TIMEOUT = "network_timeout"
    PROVIDER_ERROR = "provider_error"

    def __init__(self, kind: str, message: str, details: Optional[Any] = None, retryable: Optional[bool] = None):
        super().__init__(message, details=details, code=kind)
        self.kind = kind
        if retryable is None:
            retryable = kind == self.NETWORK_TIMEOUT
        self.retryable = retryable
        if kind == self.NETWORK_TIMEOUT:
            self.status_code = 504
        elif kind == self.PROVIDER_ERROR:
            self.status_code = 502


class WebhookSignatureError(CheckoutError):
    status_code = 401
    code = "WEBHOOK_SIGNATURE_INVALID"


class MalformedWebhook(CheckoutError):
    status_code = 400
    code = "WEBHOOK_MALFORMED"
