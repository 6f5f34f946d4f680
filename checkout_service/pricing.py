"""
Checkout Service — pricing engine

Pure computation, no I/O:

    line_total = unit_price × quantity
    subtotal   = Σ line_total
    tax        = subtotal × tax_rate
    shipping   = delivery cost
    discount   = percentage or fixed, capped at subtotal
    total      = subtotal + tax + shipping − discount

Each derived value is rounded to cents once (ROUND_HALF_UP), so the
total is an exact sum of already-rounded parts and the persisted
figures match the displayed ones.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class Discount(Protocol):
    code: str
    discount_type: str
    discount_value: Decimal
    valid_from: datetime | None
    valid_until: datetime | None
    is_active: bool


@dataclass(frozen=True)
class PricedLine:
    content_id: str
    title: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class PriceBreakdown:
    lines: list[PricedLine]
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal
    discount_code: str | None = None


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they were written as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def discount_applies(code: Discount, now: datetime) -> bool:
    if not code.is_active:
        return False
    if code.valid_from is not None and now < _as_utc(code.valid_from):
        return False
    if code.valid_until is not None and now > _as_utc(code.valid_until):
        return False
    return True


def compute_discount(subtotal: Decimal, code: Discount | None, now: datetime) -> Decimal:
    if code is None or not discount_applies(code, now):
        return ZERO
    value = Decimal(code.discount_value)
    if code.discount_type == "percentage":
        raw = subtotal * value / Decimal("100")
    elif code.discount_type == "fixed":
        raw = value
    else:
        return ZERO
    return money(min(max(raw, ZERO), subtotal))


def price_line(content_id: str, title: str, quantity: int, unit_price: Decimal) -> PricedLine:
    unit_price = money(unit_price)
    return PricedLine(
        content_id=content_id,
        title=title,
        quantity=quantity,
        unit_price=unit_price,
        line_total=money(unit_price * quantity),
    )


def compute_totals(
    lines: list[PricedLine],
    delivery_cost: Decimal,
    discount_code: Discount | None = None,
    tax_rate: Decimal = ZERO,
    now: datetime | None = None,
) -> PriceBreakdown:
    now = now or datetime.now(timezone.utc)

    subtotal = money(sum((line.line_total for line in lines), ZERO))
    tax = money(subtotal * tax_rate)
    shipping = money(delivery_cost)
    discount = compute_discount(subtotal, discount_code, now)
    total = subtotal + tax + shipping - discount

    applied = None
    if discount_code is not None and discount_applies(discount_code, now):
        applied = discount_code.code
    return PriceBreakdown(
        lines=lines,
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        discount=discount,
        total=total,
        discount_code=applied,
    )
