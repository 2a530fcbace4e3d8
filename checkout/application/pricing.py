"""Order totals calculation.

Pure functions over already-resolved catalog data; nothing in this module
touches the database. Rules are applied in a fixed order: line prices,
subtotal, coupon discount, shipping, tax, gift card, grand total.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal, ROUND_HALF_EVEN
from typing import List, Optional, Sequence

from checkout.domain.enums import CouponType
from checkout.domain.errors import ValidationError, InsufficientStock

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value) -> Decimal:
    """Round to the smallest currency unit, half to even."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_EVEN)


@dataclass(frozen=True)
class LineInput:
    product_id: int
    sku: str
    name: str
    quantity: int
    base_price: Decimal
    variation_id: Optional[int] = None
    variation_name: Optional[str] = None
    price_modifier: Decimal = ZERO
    is_taxable: bool = True
    is_gift_card: bool = False
    track_inventory: bool = False
    allow_backorder: bool = False
    available_stock: int = 0


@dataclass(frozen=True)
class CouponTerms:
    code: str
    type: str
    value: Decimal
    minimum_order_amount: Decimal = ZERO
    maximum_discount: Optional[Decimal] = None


@dataclass(frozen=True)
class ShippingPolicy:
    flat_rate: Decimal = Decimal("15.00")
    # None disables free shipping
    free_threshold: Optional[Decimal] = Decimal("100.00")


@dataclass(frozen=True)
class PricedLine:
    product_id: int
    variation_id: Optional[int]
    sku: str
    name: str
    variation_name: Optional[str]
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    tax_amount: Decimal
    is_taxable: bool
    is_gift_card: bool


@dataclass(frozen=True)
class OrderTotals:
    lines: List[PricedLine] = field(default_factory=list)
    subtotal: Decimal = ZERO
    discount_total: Decimal = ZERO
    shipping_total: Decimal = ZERO
    tax_total: Decimal = ZERO
    gift_card_amount: Decimal = ZERO
    grand_total: Decimal = ZERO
    coupon_code: Optional[str] = None


def calculate_discount(subtotal: Decimal, coupon: Optional[CouponTerms]) -> Decimal:
    if coupon is None or subtotal < (coupon.minimum_order_amount or ZERO):
        return ZERO
    if coupon.type == CouponType.PERCENTAGE.value:
        discount = subtotal * coupon.value / Decimal(100)
        if coupon.maximum_discount is not None:
            discount = min(discount, coupon.maximum_discount)
    elif coupon.type == CouponType.FIXED_AMOUNT.value:
        discount = coupon.value
    else:
        # free_shipping coupons act on shipping, not on the subtotal
        return ZERO
    return money(max(ZERO, min(discount, subtotal)))


def calculate_shipping(subtotal: Decimal, policy: ShippingPolicy, coupon: Optional[CouponTerms] = None) -> Decimal:
    if coupon is not None and coupon.type == CouponType.FREE_SHIPPING.value \
            and subtotal >= (coupon.minimum_order_amount or ZERO):
        return ZERO
    if policy.free_threshold is not None and subtotal >= policy.free_threshold:
        return ZERO
    return money(policy.flat_rate)


def allocate_tax_remainder(lines: List[PricedLine], tax_total: Decimal) -> List[PricedLine]:
    """Give the last taxable line the cents lost to per-line rounding.

    Line tax amounts then add up to ``tax_total`` exactly.
    """
    taxable = [i for i, l in enumerate(lines) if l.is_taxable]
    if not taxable:
        return lines
    remainder = tax_total - sum((l.tax_amount for l in lines), ZERO)
    if remainder == ZERO:
        return lines
    last = taxable[-1]
    lines = list(lines)
    lines[last] = replace(lines[last], tax_amount=money(lines[last].tax_amount + remainder))
    return lines


def calculate_totals(
    lines: Sequence[LineInput],
    coupon: Optional[CouponTerms] = None,
    tax_rate: Optional[Decimal] = None,
    gift_card_balance: Decimal = ZERO,
    shipping_policy: Optional[ShippingPolicy] = None,
) -> OrderTotals:
    """Compute the full totals breakdown for a cart.

    ``tax_rate`` is a percentage (``8.25`` means 8.25%) already resolved for
    the shipping address; ``None`` means no tax applies. ``gift_card_balance``
    is the balance the customer asked to apply, and is capped at what the
    order actually costs.
    """
    if not lines:
        raise ValidationError("Order must contain at least one item")
    policy = shipping_policy or ShippingPolicy()
    rate = Decimal(tax_rate) if tax_rate is not None else ZERO

    priced: List[PricedLine] = []
    subtotal = ZERO
    taxable_total = ZERO
    for line in lines:
        if line.quantity <= 0:
            raise ValidationError(f"Quantity must be positive for {line.sku}", details={"sku": line.sku})
        if line.track_inventory and not line.allow_backorder and line.quantity > line.available_stock:
            raise InsufficientStock(
                f"Insufficient stock for {line.name}",
                details={"sku": line.sku, "requested": line.quantity, "available": line.available_stock},
            )
        unit_price = money(line.base_price + (line.price_modifier or ZERO))
        total_price = money(unit_price * line.quantity)
        tax_amount = money(total_price * rate / Decimal(100)) if line.is_taxable else ZERO
        subtotal += total_price
        if line.is_taxable:
            taxable_total += total_price
        priced.append(PricedLine(
            product_id=line.product_id,
            variation_id=line.variation_id,
            sku=line.sku,
            name=line.name,
            variation_name=line.variation_name,
            quantity=line.quantity,
            unit_price=unit_price,
            total_price=total_price,
            tax_amount=tax_amount,
            is_taxable=line.is_taxable,
            is_gift_card=line.is_gift_card,
        ))

    subtotal = money(subtotal)
    discount_total = calculate_discount(subtotal, coupon)
    shipping_total = calculate_shipping(subtotal, policy, coupon)
    tax_total = money(taxable_total * rate / Decimal(100))
    priced = allocate_tax_remainder(priced, tax_total)

    payable = subtotal - discount_total + shipping_total + tax_total
    gift_card_amount = money(max(ZERO, min(Decimal(gift_card_balance or ZERO), payable)))
    grand_total = money(max(ZERO, payable - gift_card_amount))

    return OrderTotals(
        lines=priced,
        subtotal=subtotal,
        discount_total=discount_total,
        shipping_total=shipping_total,
        tax_total=tax_total,
        gift_card_amount=gift_card_amount,
        grand_total=grand_total,
        coupon_code=coupon.code if coupon is not None else None,
    )
