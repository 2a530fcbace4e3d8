"""Webhook reconciliation.

Each delivery is verified, parsed and dispatched once. The HTTP status we
answer with drives the provider's redelivery: 2xx stops it, 401/400 are
permanent rejections, and 500 asks for another attempt.
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from sqlalchemy.orm import sessionmaker

from checkout.application.orders import OrderLedger
from checkout.application.refunds import RefundProcessor
from checkout.application.settlement import SettlementOrchestrator
from checkout.domain.errors import ConflictError, MalformedWebhook, NotFoundError
from checkout.domain.models import Order
from checkout.infrastructure.gateway.port import (
    PaymentGateway,
    CaptureResult,
    WebhookEvent,
    CAPTURE_COMPLETED,
    CAPTURE_DENIED,
    REFUND_PROCESSED,
    CAPTURE_STATUS_COMPLETED,
)
from shared.core.logging_config import get_logger, log_payment_event, set_request_context

logger = get_logger(__name__)


@dataclass
class WebhookResult:
    status_code: int
    body: dict = field(default_factory=dict)


class WebhookReconciler:
    def __init__(self, session_factory: sessionmaker, gateway: PaymentGateway,
                 orchestrator: SettlementOrchestrator, refunds: RefundProcessor):
        self.session_factory = session_factory
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.refunds = refunds

    def handle(self, headers: Mapping[str, str], raw_body: bytes) -> WebhookResult:
        try:
            if not self.gateway.verify_webhook_signature(headers, raw_body):
                log_payment_event("webhook_verification_failed", level=logging.WARNING, provider=self.gateway.provider)
                return WebhookResult(401, {"error": "Webhook verification failed"})
            event = self.gateway.parse_webhook_event(raw_body)
        except MalformedWebhook as e:
            log_payment_event("webhook_malformed", level=logging.WARNING, provider=self.gateway.provider, error=e.message)
            return WebhookResult(400, {"error": e.message, "details": e.details})
        except Exception:
            logger.exception("Webhook verification error")
            return WebhookResult(500, {"error": "Webhook processing failed", "retryable": True})

        logger.info(
            "Webhook received and verified",
            extra={'extra_fields': {'event_id': event.event_id, 'event_type': event.provider_event_type}}
        )
        try:
            handled = self.dispatch(event)
        except MalformedWebhook as e:
            return WebhookResult(400, {"error": e.message, "details": e.details})
        except (NotFoundError, ConflictError) as e:
            # permanent: redelivering the same event cannot succeed
            logger.error(
                "Webhook event could not be applied",
                extra={'extra_fields': {
                    'event_id': event.event_id,
                    'event_type': event.event_type,
                    'code': e.code,
                    'error': e.message,
                }}
            )
            return WebhookResult(200, {"received": True, "event_id": event.event_id, "handled": False, "reason": e.code})
        except Exception:
            logger.exception(
                "Webhook processing error",
                extra={'extra_fields': {'event_id': event.event_id, 'event_type': event.event_type}}
            )
            return WebhookResult(500, {"error": "Webhook processing failed", "retryable": True})

        return WebhookResult(200, {"received": True, "event_id": event.event_id, "handled": handled})

    def dispatch(self, event: WebhookEvent) -> bool:
        if event.event_type == CAPTURE_COMPLETED:
            return self._capture_completed(event)
        if event.event_type == CAPTURE_DENIED:
            return self._capture_denied(event)
        if event.event_type == REFUND_PROCESSED:
            return self._refund_processed(event)
        logger.info("Ignoring unhandled webhook event", extra={'extra_fields': {'event_type': event.event_type}})
        return False

    def _find_order_id(self, event: WebhookEvent) -> int:
        with self.session_factory() as db:
            order = None
            if event.custom_marker and str(event.custom_marker).isdigit():
                order = db.query(Order).filter(Order.id == int(event.custom_marker)).first()
            if order is None and event.external_order_id:
                order = OrderLedger(db).find_by_external_id(event.external_order_id)
            if order is None and event.capture_id:
                order = db.query(Order).filter(Order.payment_transaction_id == event.capture_id).first()
            if order is None:
                raise NotFoundError(
                    "No order matches webhook event",
                    details={"custom_marker": event.custom_marker, "external_order_id": event.external_order_id},
                )
            set_request_context(order_id=order.id)
            return order.id

    def _already_applied(self, order_id: int, reference: Optional[str]) -> bool:
        if not reference:
            return False
        with self.session_factory() as db:
            return OrderLedger(db).has_event(order_id, reference)

    def _capture_completed(self, event: WebhookEvent) -> bool:
        order_id = self._find_order_id(event)
        if self._already_applied(order_id, event.capture_id):
            logger.info("Capture already applied", extra={'extra_fields': {'order_id': order_id, 'capture_id': event.capture_id}})
            return True
        with self.session_factory() as db:
            order = OrderLedger(db).get(order_id)
            external_order_id = event.external_order_id or order.external_order_id
            amount = event.amount if event.amount is not None else order.grand_total
            currency = event.currency or order.currency
        capture = CaptureResult(
            status=CAPTURE_STATUS_COMPLETED,
            external_order_id=external_order_id,
            capture_id=event.capture_id,
            payer_id=event.payer_id,
            amount=amount,
            currency=currency,
            custom_marker=event.custom_marker,
            raw=event.raw,
        )
        self.orchestrator.settle(order_id, capture, actor="webhook")
        return True

    def _capture_denied(self, event: WebhookEvent) -> bool:
        order_id = self._find_order_id(event)
        failed = self.orchestrator.fail_payment(
            order_id, "Capture denied by payment provider", actor="webhook", event_reference=event.capture_id
        )
        log_payment_event("payment_capture_denied", level=logging.WARNING, order_id=order_id,
                          capture_id=event.capture_id, applied=failed)
        return failed

    def _refund_processed(self, event: WebhookEvent) -> bool:
        order_id = self._find_order_id(event)
        if self._already_applied(order_id, event.refund_id):
            return True
        if event.amount is None:
            raise MalformedWebhook("Refund event without amount", details={"refund_id": event.refund_id})
        self.refunds.apply_refund(
            order_id,
            event.amount,
            refund_id=event.refund_id,
            reason="Refund processed by payment provider",
            actor="webhook",
            raw=event.raw,
        )
        return True
