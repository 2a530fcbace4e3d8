from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy import String, ForeignKey, Numeric, DateTime, Boolean, Integer, Text, CheckConstraint
from datetime import datetime
from decimal import Decimal
from typing import Optional

from checkout.domain.enums import (
    OrderStatus,
    PaymentStatus,
    FulfillmentStatus,
    GiftCardStatus,
)

class Base(DeclarativeBase):
    pass

###########
# Catalog #
###########

class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(primary_key=True)
    sku: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(200))
    price: Mapped[Decimal] = mapped_column(Numeric(10,2))
    stock_quantity: Mapped[int] = mapped_column(Integer, default=0)
    track_inventory: Mapped[bool] = mapped_column(Boolean, default=True)
    allow_backorder: Mapped[bool] = mapped_column(Boolean, default=False)
    is_taxable: Mapped[bool] = mapped_column(Boolean, default=True)
    is_gift_card: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    variations: Mapped[list["ProductVariation"]] = relationship("ProductVariation", back_populates="product")

class ProductVariation(Base):
    __tablename__ = "product_variations"
    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    name: Mapped[str] = mapped_column(String(200))
    sku: Mapped[str] = mapped_column(String(50), unique=True)
    price_modifier: Mapped[Decimal] = mapped_column(Numeric(10,2), default=Decimal("0"))
    stock_quantity: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    product: Mapped[Product] = relationship("Product", back_populates="variations")

class Coupon(Base):
    __tablename__ = "coupons"
    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    type: Mapped[str] = mapped_column(String(20))
    value: Mapped[Decimal] = mapped_column(Numeric(10,2))
    minimum_order_amount: Mapped[Decimal] = mapped_column(Numeric(10,2), default=Decimal("0"))
    maximum_discount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10,2), nullable=True)
    usage_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

class CouponUsage(Base):
    __tablename__ = "coupon_usages"
    id: Mapped[int] = mapped_column(primary_key=True)
    coupon_id: Mapped[int] = mapped_column(ForeignKey("coupons.id"))
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), unique=True)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10,2))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

class TaxRate(Base):
    __tablename__ = "tax_rates"
    id: Mapped[int] = mapped_column(primary_key=True)
    country: Mapped[str] = mapped_column(String(2), default="US")
    # "*" matches every state of the country
    state: Mapped[str] = mapped_column(String(10))
    rate: Mapped[Decimal] = mapped_column(Numeric(6,3))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

##########
# Orders #
##########

class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    status: Mapped[str] = mapped_column(String(30), default=OrderStatus.PENDING.value)
    payment_status: Mapped[str] = mapped_column(String(30), default=PaymentStatus.PENDING.value)
    fulfillment_status: Mapped[str] = mapped_column(String(30), default=FulfillmentStatus.UNFULFILLED.value)
    # Customer snapshot
    customer_email: Mapped[str] = mapped_column(String(255))
    customer_first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    customer_last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    # Shipping address snapshot
    shipping_line1: Mapped[str] = mapped_column(String(200))
    shipping_line2: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    shipping_city: Mapped[str] = mapped_column(String(100))
    shipping_state: Mapped[str] = mapped_column(String(10))
    shipping_zip: Mapped[str] = mapped_column(String(20))
    shipping_country: Mapped[str] = mapped_column(String(2), default="US")
    # Totals
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10,2))
    discount_total: Mapped[Decimal] = mapped_column(Numeric(10,2), default=Decimal("0"))
    shipping_total: Mapped[Decimal] = mapped_column(Numeric(10,2), default=Decimal("0"))
    tax_total: Mapped[Decimal] = mapped_column(Numeric(10,2), default=Decimal("0"))
    grand_total: Mapped[Decimal] = mapped_column(Numeric(10,2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    coupon_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    gift_card_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    gift_card_amount: Mapped[Decimal] = mapped_column(Numeric(10,2), default=Decimal("0"))
    # Payment
    payment_provider: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    external_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    payment_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_payer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    # Fulfillment
    shipping_carrier: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    customer_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    items: Mapped[list["OrderItem"]] = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")
    history: Mapped[list["OrderStatusHistory"]] = relationship("OrderStatusHistory", back_populates="order", order_by="OrderStatusHistory.id")

class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"))
    variation_id: Mapped[Optional[int]] = mapped_column(ForeignKey("product_variations.id"), nullable=True)
    # Product snapshot data (captured at order creation time)
    sku: Mapped[str] = mapped_column(String(50))
    name: Mapped[str] = mapped_column(String(200))
    variation_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10,2))
    total_price: Mapped[Decimal] = mapped_column(Numeric(10,2))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(10,2), default=Decimal("0"))
    is_taxable: Mapped[bool] = mapped_column(Boolean, default=True)
    is_gift_card: Mapped[bool] = mapped_column(Boolean, default=False)
    fulfilled_quantity: Mapped[int] = mapped_column(Integer, default=0)
    order: Mapped[Order] = relationship("Order", back_populates="items")

class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    previous_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    new_status: Mapped[str] = mapped_column(String(30))
    payment_status: Mapped[str] = mapped_column(String(30))
    changed_by: Mapped[str] = mapped_column(String(100), default="system")
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Capture / refund id of the provider event that caused the change
    event_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    order: Mapped[Order] = relationship("Order", back_populates="history")

class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), index=True)
    provider: Mapped[str] = mapped_column(String(30))
    type: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(20))
    amount: Mapped[Decimal] = mapped_column(Numeric(10,2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    provider_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    provider_payer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    # Capture a refund belongs to
    related_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    provider_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

##############
# Gift cards #
##############

class GiftCard(Base):
    __tablename__ = "gift_cards"
    __table_args__ = (
        CheckConstraint("current_balance >= 0 AND current_balance <= initial_balance", name="ck_gift_cards_balance"),
    )
    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    initial_balance: Mapped[Decimal] = mapped_column(Numeric(10,2))
    current_balance: Mapped[Decimal] = mapped_column(Numeric(10,2))
    currency: Mapped[str] = mapped_column(String(3), default="USD")
    status: Mapped[str] = mapped_column(String(20), default=GiftCardStatus.ACTIVE.value)
    purchaser_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    recipient_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    recipient_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    purchased_order_id: Mapped[Optional[int]] = mapped_column(ForeignKey("orders.id"), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

class GiftCardTransaction(Base):
    __tablename__ = "gift_card_transactions"
    id: Mapped[int] = mapped_column(primary_key=True)
    gift_card_id: Mapped[int] = mapped_column(ForeignKey("gift_cards.id"), index=True)
    order_id: Mapped[Optional[int]] = mapped_column(ForeignKey("orders.id"), nullable=True)
    type: Mapped[str] = mapped_column(String(20))
    amount: Mapped[Decimal] = mapped_column(Numeric(10,2))
    balance_before: Mapped[Decimal] = mapped_column(Numeric(10,2))
    balance_after: Mapped[Decimal] = mapped_column(Numeric(10,2))
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

#############
# Inventory #
#############

class InventoryTransaction(Base):
    __tablename__ = "inventory_transactions"
    id: Mapped[int] = mapped_column(primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), index=True)
    variation_id: Mapped[Optional[int]] = mapped_column(ForeignKey("product_variations.id"), nullable=True)
    type: Mapped[str] = mapped_column(String(20))
    # Signed delta: negative for sales, positive for returns
    quantity: Mapped[int] = mapped_column(Integer)
    previous_quantity: Mapped[int] = mapped_column(Integer)
    new_quantity: Mapped[int] = mapped_column(Integer)
    reference_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    reference_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
