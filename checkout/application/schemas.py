from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

class OrderItemIn(BaseModel):
    product_id: int
    variation_id: Optional[int] = None
    quantity: int = Field(gt=0)

class Address(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    line1: str
    line2: Optional[str] = None
    city: str
    state: str
    zip: str
    country: str = "US"

class OrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(min_length=1)
    shipping_address: Address
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: Optional[str] = None
    coupon_code: Optional[str] = None
    gift_card_code: Optional[str] = None
    customer_notes: Optional[str] = None

class TotalsRead(BaseModel):
    subtotal: Decimal
    discount_total: Decimal
    shipping_total: Decimal
    tax_total: Decimal
    gift_card_amount: Decimal
    grand_total: Decimal
    class Config:
        from_attributes = True

class OrderCreated(BaseModel):
    order_id: int
    order_number: str
    totals: TotalsRead

class OrderItemRead(BaseModel):
    id: int
    product_id: int
    variation_id: Optional[int] = None
    sku: str
    name: str
    variation_name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    tax_amount: Decimal
    fulfilled_quantity: int
    class Config:
        from_attributes = True

class StatusHistoryRead(BaseModel):
    previous_status: Optional[str] = None
    new_status: str
    payment_status: str
    changed_by: str
    notes: Optional[str] = None
    event_reference: Optional[str] = None
    created_at: datetime
    class Config:
        from_attributes = True

class OrderRead(BaseModel):
    id: int
    order_number: str
    status: str
    payment_status: str
    fulfillment_status: str
    customer_email: str
    subtotal: Decimal
    discount_total: Decimal
    shipping_total: Decimal
    tax_total: Decimal
    gift_card_amount: Decimal
    grand_total: Decimal
    currency: str
    coupon_code: Optional[str] = None
    gift_card_code: Optional[str] = None
    payment_provider: Optional[str] = None
    external_order_id: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    shipping_carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    items: List[OrderItemRead] = []
    history: List[StatusHistoryRead] = []
    class Config:
        from_attributes = True

class PaymentSessionCreate(BaseModel):
    order_id: int

class PaymentSessionRead(BaseModel):
    order_id: int
    external_order_id: str

class CaptureRequest(BaseModel):
    order_id: int
    external_order_id: str

class CompleteRequest(BaseModel):
    order_id: int

class CaptureRead(BaseModel):
    order_id: int
    order_number: str
    status: str
    capture_id: Optional[str] = None
    amount: Decimal
    already_applied: bool = False
    class Config:
        from_attributes = True

class RefundRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = None
    restock: bool = False
    # order_item_id -> quantity; all lines when omitted
    restock_items: Optional[Dict[int, int]] = None

class RefundRead(BaseModel):
    order_id: int
    refund_id: Optional[str] = None
    amount: Decimal
    payment_status: str
    status: str
    already_applied: bool = False
    class Config:
        from_attributes = True

class CancelRequest(BaseModel):
    reason: Optional[str] = None

class ShipRequest(BaseModel):
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None

class GiftCardValidate(BaseModel):
    code: str = Field(min_length=1)

class GiftCardRead(BaseModel):
    code: str
    current_balance: Decimal
    status: str
    expires_at: Optional[datetime] = None
    class Config:
        from_attributes = True

class CouponValidate(BaseModel):
    code: str = Field(min_length=1)
    subtotal: Decimal = Field(ge=0)

class CouponRead(BaseModel):
    code: str
    type: str
    value: Decimal
    discount: Decimal
    minimum_order_amount: Decimal
