"""
Checkout Service — cart validator

Classifies every cart line against live catalog state. This is advisory:
stock can change between validation and commit, so the inventory
reservation at commit time is the authoritative check.

Checks run in order and the first failing one wins:

    discontinued → not_published → not_for_sale → out_of_stock → price_changed → ok
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from . import queries
from .queries import CartLine

HUNDRED = Decimal("100")


class LineStatus(str, Enum):
    OK = "ok"
    NOT_PUBLISHED = "not_published"
    NOT_FOR_SALE = "not_for_sale"
    OUT_OF_STOCK = "out_of_stock"
    PRICE_CHANGED = "price_changed"
    DISCONTINUED = "discontinued"


@dataclass(frozen=True)
class LineCheck:
    line: CartLine
    status: LineStatus
    message: str = ""
    details: dict | None = None

    @property
    def ok(self) -> bool:
        return self.status is LineStatus.OK

    def to_error(self) -> dict:
        error = {
            "cart_item_id": self.line.id,
            "content_id": self.line.content_id,
            "title": self.line.content.title if self.line.content else "",
            "error": self.message,
            "error_type": self.status.value,
        }
        if self.details is not None:
            error["details"] = self.details
        return error


@dataclass
class CartValidation:
    cart_id: str | None
    checks: list[LineCheck] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return all(check.ok for check in self.checks)

    @property
    def errors(self) -> list[dict]:
        return [check.to_error() for check in self.checks if not check.ok]

    @property
    def passing_lines(self) -> list[CartLine]:
        return [check.line for check in self.checks if check.ok]

    def to_dict(self) -> dict:
        lines = self.passing_lines
        subtotal = sum((line.price * line.quantity for line in lines), Decimal("0"))
        return {
            "is_valid": self.is_valid,
            "errors": self.errors,
            "cart": {
                "id": self.cart_id or "",
                "total_items": sum(line.quantity for line in lines),
                "subtotal": str(subtotal.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)),
            },
        }


def price_change_percent(old_price: Decimal, new_price: Decimal) -> Decimal:
    """Absolute drift relative to the captured price, in percent."""
    if old_price == 0:
        return Decimal("0") if new_price == 0 else HUNDRED
    return abs(new_price - old_price) / old_price * HUNDRED


def classify_line(line: CartLine, drift_threshold_percent: Decimal) -> LineCheck:
    content = line.content

    if content is None or content.status == "discontinued":
        return LineCheck(line, LineStatus.DISCONTINUED, "This item is no longer available")

    if content.status != "published":
        return LineCheck(line, LineStatus.NOT_PUBLISHED, "This item is no longer available")

    if not content.is_for_sale:
        return LineCheck(line, LineStatus.NOT_FOR_SALE, "This item is no longer for sale")

    if line.quantity > content.stock_quantity:
        return LineCheck(
            line,
            LineStatus.OUT_OF_STOCK,
            f"Insufficient stock. Only {content.stock_quantity} available",
            {
                "requested_quantity": line.quantity,
                "available_quantity": content.stock_quantity,
            },
        )

    percent = price_change_percent(line.price, content.price)
    if percent > drift_threshold_percent:
        rounded = percent.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
        return LineCheck(
            line,
            LineStatus.PRICE_CHANGED,
            f"Price has changed significantly from {line.price:.2f} "
            f"to {content.price:.2f} ({rounded}% change)",
            {
                "old_price": str(line.price),
                "new_price": str(content.price),
                "percent_change": str(rounded),
            },
        )

    return LineCheck(line, LineStatus.OK)


def classify_lines(lines: list[CartLine], drift_threshold_percent: Decimal) -> list[LineCheck]:
    return [classify_line(line, drift_threshold_percent) for line in lines]


async def validate_cart(
    session: AsyncSession,
    user_id: str,
    drift_threshold_percent: Decimal,
) -> CartValidation:
    """
    Validate the user's cart.

    A user without a cart, or with an empty one, gets a valid result with
    no lines.
    """
    cart_id = await queries.get_cart_id(session, user_id)
    if cart_id is None:
        return CartValidation(cart_id=None)
    lines = await queries.get_cart_lines(session, cart_id)
    return CartValidation(cart_id=cart_id, checks=classify_lines(lines, drift_threshold_percent))
