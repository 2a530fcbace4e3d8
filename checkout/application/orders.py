"""Order ledger: the order state machine and its append-only history.

Every status change goes through :class:`OrderLedger`, which validates it
against the transition tables below and appends exactly one
``order_status_history`` row. The ledger never commits; callers own the
transaction boundary.
"""

import secrets
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from checkout.application.pricing import OrderTotals
from checkout.domain.enums import OrderStatus, PaymentStatus, FulfillmentStatus, REFUNDABLE_PAYMENT_STATUSES
from checkout.domain.errors import InvalidTransition, NotFoundError, ConflictError
from checkout.domain.models import Order, OrderItem, OrderStatusHistory
from shared.core.logging_config import get_logger

logger = get_logger(__name__)

S = OrderStatus
P = PaymentStatus
F = FulfillmentStatus

STATUS_TRANSITIONS = {
    S.PENDING: {S.CONFIRMED, S.FAILED, S.CANCELLED, S.ON_HOLD},
    S.ON_HOLD: {S.PENDING, S.CONFIRMED, S.PROCESSING, S.CANCELLED, S.FAILED},
    S.CONFIRMED: {S.PROCESSING, S.SHIPPED, S.FAILED, S.ON_HOLD, S.REFUNDED},
    S.PROCESSING: {S.SHIPPED, S.ON_HOLD, S.REFUNDED},
    S.SHIPPED: {S.DELIVERED, S.REFUNDED},
    S.DELIVERED: {S.REFUNDED},
    S.CANCELLED: set(),
    S.FAILED: set(),
    S.REFUNDED: set(),
}

PAYMENT_TRANSITIONS = {
    P.PENDING: {P.AUTHORIZED, P.PAID, P.FAILED, P.CANCELLED},
    P.AUTHORIZED: {P.PAID, P.FAILED, P.CANCELLED},
    P.PAID: {P.PARTIALLY_REFUNDED, P.REFUNDED},
    # repeated partial refunds stay in the same state
    P.PARTIALLY_REFUNDED: {P.PARTIALLY_REFUNDED, P.REFUNDED},
    P.REFUNDED: set(),
    P.FAILED: set(),
    P.CANCELLED: set(),
}

FULFILLMENT_TRANSITIONS = {
    F.UNFULFILLED: {F.PARTIALLY_FULFILLED, F.FULFILLED},
    F.PARTIALLY_FULFILLED: {F.FULFILLED, F.RETURNED},
    F.FULFILLED: {F.RETURNED},
    F.RETURNED: set(),
}

CANCELLABLE_PAYMENT_STATUSES = {P.PENDING.value, P.AUTHORIZED.value}

ORDER_NUMBER_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def check_transition(table: dict, field: str, current: str, new: str):
    allowed = {target.value for source, targets in table.items() if source.value == current for target in targets}
    if new not in allowed:
        raise InvalidTransition(
            f"Cannot move {field} from {current} to {new}",
            details={"field": field, "from": current, "to": new},
        )


class OrderLedger:
    def __init__(self, db: Session):
        self.db = db

    def _generate_order_number(self) -> str:
        """Order number in format ORD-YYYY-XXXXXX"""
        year = datetime.utcnow().year
        while True:
            suffix = "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(6))
            number = f"ORD-{year}-{suffix}"
            if not self.db.query(Order.id).filter(Order.order_number == number).first():
                return number

    def create(
        self,
        totals: OrderTotals,
        email: str,
        shipping_address: dict,
        currency: str = "USD",
        phone: Optional[str] = None,
        gift_card_code: Optional[str] = None,
        customer_notes: Optional[str] = None,
        actor: str = "customer",
    ) -> Order:
        order = Order(
            order_number=self._generate_order_number(),
            status=S.PENDING.value,
            payment_status=P.PENDING.value,
            fulfillment_status=F.UNFULFILLED.value,
            customer_email=email,
            customer_first_name=shipping_address.get("first_name"),
            customer_last_name=shipping_address.get("last_name"),
            customer_phone=phone,
            shipping_line1=shipping_address["line1"],
            shipping_line2=shipping_address.get("line2"),
            shipping_city=shipping_address["city"],
            shipping_state=shipping_address["state"],
            shipping_zip=shipping_address["zip"],
            shipping_country=shipping_address.get("country") or "US",
            subtotal=totals.subtotal,
            discount_total=totals.discount_total,
            shipping_total=totals.shipping_total,
            tax_total=totals.tax_total,
            grand_total=totals.grand_total,
            currency=currency,
            coupon_code=totals.coupon_code,
            gift_card_code=gift_card_code if totals.gift_card_amount > 0 else None,
            gift_card_amount=totals.gift_card_amount,
            customer_notes=customer_notes,
        )
        self.db.add(order)
        self.db.flush()  # assign id

        for line in totals.lines:
            self.db.add(OrderItem(
                order_id=order.id,
                product_id=line.product_id,
                variation_id=line.variation_id,
                sku=line.sku,
                name=line.name,
                variation_name=line.variation_name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.total_price,
                tax_amount=line.tax_amount,
                is_taxable=line.is_taxable,
                is_gift_card=line.is_gift_card,
            ))
        self._append_history(order, None, actor, "Order created")
        self.db.flush()

        logger.info(
            "Order created",
            extra={'extra_fields': {
                'order_id': order.id,
                'order_number': order.order_number,
                'grand_total': str(order.grand_total),
            }}
        )
        return order

    def get(self, order_id: int) -> Order:
        order = self.db.query(Order).filter(Order.id == order_id).first()
        if not order:
            raise NotFoundError("Order not found", details={"order_id": order_id})
        return order

    def get_for_update(self, order_id: int) -> Order:
        """Load the order with a row lock held until the transaction ends."""
        order = self.db.query(Order).populate_existing().with_for_update().filter(Order.id == order_id).first()
        if not order:
            raise NotFoundError("Order not found", details={"order_id": order_id})
        return order

    def get_by_number(self, order_number: str) -> Order:
        order = self.db.query(Order).filter(Order.order_number == order_number).first()
        if not order:
            raise NotFoundError("Order not found", details={"order_number": order_number})
        return order

    def find_by_external_id(self, external_order_id: str) -> Optional[Order]:
        return self.db.query(Order).filter(Order.external_order_id == external_order_id).first()

    def history(self, order_id: int) -> List[OrderStatusHistory]:
        return self.db.query(OrderStatusHistory).filter(
            OrderStatusHistory.order_id == order_id
        ).order_by(OrderStatusHistory.id).all()

    def has_event(self, order_id: int, event_reference: str) -> bool:
        """True when a provider event (capture or refund id) was already applied."""
        return self.db.query(OrderStatusHistory.id).filter(
            OrderStatusHistory.order_id == order_id,
            OrderStatusHistory.event_reference == event_reference,
        ).first() is not None

    def _append_history(self, order: Order, previous_status: Optional[str], actor: str,
                        notes: Optional[str] = None, event_reference: Optional[str] = None):
        self.db.add(OrderStatusHistory(
            order_id=order.id,
            previous_status=previous_status,
            new_status=order.status,
            payment_status=order.payment_status,
            changed_by=actor,
            notes=notes,
            event_reference=event_reference,
        ))

    def transition(
        self,
        order: Order,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        fulfillment_status: Optional[str] = None,
        actor: str = "system",
        notes: Optional[str] = None,
        event_reference: Optional[str] = None,
    ) -> Order:
        """Apply a validated state change and record it in the history.

        Fields left as ``None`` keep their current value. Any field whose move
        is not in its transition table raises :class:`InvalidTransition`
        before anything is written.
        """
        if status is not None:
            check_transition(STATUS_TRANSITIONS, "status", order.status, status)
        if payment_status is not None:
            check_transition(PAYMENT_TRANSITIONS, "payment_status", order.payment_status, payment_status)
        if fulfillment_status is not None:
            check_transition(FULFILLMENT_TRANSITIONS, "fulfillment_status", order.fulfillment_status, fulfillment_status)

        previous = order.status
        now = datetime.utcnow()
        if status is not None:
            order.status = status
            if status == S.CANCELLED.value:
                order.cancelled_at = now
            elif status == S.SHIPPED.value:
                order.shipped_at = now
            elif status == S.DELIVERED.value:
                order.delivered_at = now
        if payment_status is not None:
            order.payment_status = payment_status
        if fulfillment_status is not None:
            order.fulfillment_status = fulfillment_status
        order.updated_at = now

        self._append_history(order, previous, actor, notes, event_reference)
        self.db.flush()

        logger.info(
            "Order transitioned",
            extra={'extra_fields': {
                'order_id': order.id,
                'previous_status': previous,
                'status': order.status,
                'payment_status': order.payment_status,
                'fulfillment_status': order.fulfillment_status,
                'actor': actor,
            }}
        )
        return order

    def claim_for_capture(
        self,
        order_id: int,
        capture_id: Optional[str],
        payer_id: Optional[str] = None,
        provider: Optional[str] = None,
        actor: str = "system",
        notes: Optional[str] = None,
    ) -> bool:
        """Atomically move a pending order to confirmed/paid.

        Implemented as a conditional UPDATE so exactly one of any number of
        concurrent callers wins; returns ``False`` for the losers without
        writing anything.
        """
        now = datetime.utcnow()
        values = dict(
            status=S.CONFIRMED.value,
            payment_status=P.PAID.value,
            payment_transaction_id=capture_id,
            paid_at=now,
            updated_at=now,
        )
        if payer_id is not None:
            values["payment_payer_id"] = payer_id
        if provider is not None:
            values["payment_provider"] = provider

        result = self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.payment_status == P.PENDING.value,
                Order.status == S.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        order = self.db.query(Order).populate_existing().filter(Order.id == order_id).one()
        self._append_history(order, S.PENDING.value, actor, notes or "Payment captured", capture_id)
        self.db.flush()
        return True

    def attach_external_order(self, order: Order, external_order_id: str, provider: str) -> Order:
        if order.payment_status != P.PENDING.value or order.status != S.PENDING.value:
            raise ConflictError(
                "Order is not awaiting payment",
                details={"order_id": order.id, "status": order.status, "payment_status": order.payment_status},
            )
        order.external_order_id = external_order_id
        order.payment_provider = provider
        order.updated_at = datetime.utcnow()
        self.db.flush()
        return order

    def mark_failed(self, order_id: int, reason: str, actor: str = "system",
                    event_reference: Optional[str] = None) -> bool:
        """Fail an order whose payment is still pending; settled orders are left alone."""
        order = self.get_for_update(order_id)
        if order.payment_status != P.PENDING.value:
            logger.info(
                "Ignoring payment failure for order no longer pending",
                extra={'extra_fields': {'order_id': order_id, 'payment_status': order.payment_status}}
            )
            return False
        self.transition(
            order,
            status=S.FAILED.value,
            payment_status=P.FAILED.value,
            actor=actor,
            notes=reason,
            event_reference=event_reference,
        )
        return True

    def cancel(self, order_id: int, reason: Optional[str] = None, actor: str = "system") -> Order:
        order = self.get_for_update(order_id)
        if order.payment_status not in CANCELLABLE_PAYMENT_STATUSES:
            raise InvalidTransition(
                "Only orders without a captured payment can be cancelled",
                details={"order_id": order_id, "payment_status": order.payment_status},
            )
        self.transition(
            order,
            status=S.CANCELLED.value,
            payment_status=P.CANCELLED.value,
            actor=actor,
            notes=reason or "Order cancelled",
        )
        order.cancelled_reason = reason
        self.db.flush()
        return order

    def mark_shipped(self, order_id: int, carrier: Optional[str] = None,
                     tracking_number: Optional[str] = None, actor: str = "admin") -> Order:
        order = self.get_for_update(order_id)
        if order.payment_status not in REFUNDABLE_PAYMENT_STATUSES:
            raise InvalidTransition(
                "Only paid orders can be shipped",
                details={"order_id": order_id, "payment_status": order.payment_status},
            )
        order.shipping_carrier = carrier
        order.tracking_number = tracking_number
        for item in order.items:
            item.fulfilled_quantity = item.quantity
        note = f"Shipped via {carrier}" if carrier else "Shipped"
        if tracking_number:
            note += f" ({tracking_number})"
        return self.transition(
            order,
            status=S.SHIPPED.value,
            fulfillment_status=F.FULFILLED.value,
            actor=actor,
            notes=note,
        )

    def mark_delivered(self, order_id: int, actor: str = "admin") -> Order:
        order = self.get_for_update(order_id)
        return self.transition(order, status=S.DELIVERED.value, actor=actor, notes="Delivered")

    def expire_stale_pending(self, ttl: timedelta, now: Optional[datetime] = None) -> List[int]:
        """Cancel pending orders older than ``ttl``; returns the cancelled ids.

        Stock is only taken at capture time, so there is nothing to release.
        """
        cutoff = (now or datetime.utcnow()) - ttl
        stale_ids = [row.id for row in self.db.query(Order.id).filter(
            Order.status == S.PENDING.value,
            Order.payment_status == P.PENDING.value,
            Order.created_at < cutoff,
        ).all()]
        expired = []
        for order_id in stale_ids:
            order = self.get_for_update(order_id)
            # a capture may have landed since the scan
            if order.payment_status != P.PENDING.value:
                continue
            self.cancel(order_id, reason="Payment not completed in time", actor="system")
            expired.append(order_id)
        if expired:
            logger.info(
                "Expired stale pending orders",
                extra={'extra_fields': {'count': len(expired), 'cutoff': cutoff.isoformat()}}
            )
        return expired
