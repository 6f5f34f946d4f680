"""
Checkout Service — query handlers (read side)

Reads of live catalog, cart, discount and order state. Nothing here
writes; a read may be repeated freely.
"""

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Cart, CartItem, Content, DiscountCode, Order, OrderItem


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    title: str
    price: Decimal
    stock_quantity: int
    status: str
    is_for_sale: bool


@dataclass(frozen=True)
class CartLine:
    id: str
    cart_id: str
    content_id: str
    quantity: int
    price: Decimal
    content: CatalogEntry | None


async def get_cart_id(session: AsyncSession, user_id: str) -> str | None:
    result = await session.execute(select(Cart.id).where(Cart.user_id == user_id))
    return result.scalar_one_or_none()


async def get_cart_lines(session: AsyncSession, cart_id: str) -> list[CartLine]:
    """Cart lines joined with the live catalog row, in the order they were added."""
    result = await session.execute(
        select(CartItem, Content)
        .outerjoin(Content, Content.id == CartItem.content_id)
        .where(CartItem.cart_id == cart_id)
        .order_by(CartItem.added_at, CartItem.id)
    )
    lines = []
    for item, content in result.all():
        entry = None
        if content is not None:
            entry = CatalogEntry(
                id=content.id,
                title=content.title,
                price=content.price,
                stock_quantity=content.stock_quantity,
                status=content.status,
                is_for_sale=content.is_for_sale,
            )
        lines.append(
            CartLine(
                id=item.id,
                cart_id=item.cart_id,
                content_id=item.content_id,
                quantity=item.quantity,
                price=item.price,
                content=entry,
            )
        )
    return lines


async def get_content(session: AsyncSession, content_id: str) -> CatalogEntry | None:
    content = await session.get(Content, content_id)
    if content is None:
        return None
    return CatalogEntry(
        id=content.id,
        title=content.title,
        price=content.price,
        stock_quantity=content.stock_quantity,
        status=content.status,
        is_for_sale=content.is_for_sale,
    )


async def get_discount_code(session: AsyncSession, code: str) -> DiscountCode | None:
    """Active discount code by (case-insensitive) code; window is checked by pricing."""
    result = await session.execute(
        select(DiscountCode).where(
            DiscountCode.code == code.strip().upper(),
            DiscountCode.is_active.is_(True),
        )
    )
    return result.scalar_one_or_none()


def _order_to_dict(order: Order, items: list[OrderItem]) -> dict:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
        "totals": {
            "subtotal": str(order.sub_total),
            "tax": str(order.tax),
            "shipping": str(order.shipping),
            "discount": str(order.discount),
            "total": str(order.total_price),
        },
        "discount_code": order.discount_code,
        "customer_info": {
            "full_name": order.customer_name,
            "email": order.customer_email,
            "phone": order.customer_phone,
        },
        "shipping_address": {
            "address": order.shipping_street,
            "city": order.shipping_city,
            "postal_code": order.shipping_postal_code,
        },
        "delivery_method": {
            "id": order.delivery_method_id,
            "name": order.delivery_method_name,
            "cost": str(order.shipping),
        },
        "items": [
            {
                "content_id": item.content_id,
                "title": item.title,
                "quantity": item.quantity,
                "unit_price": str(item.unit_price),
                "line_total": str(item.total_price),
            }
            for item in items
        ],
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }


async def get_order(session: AsyncSession, user_id: str, order_id: str) -> dict | None:
    order = await session.get(Order, order_id)
    if not order or order.user_id != user_id:
        return None
    result = await session.execute(
        select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.line_number)
    )
    return _order_to_dict(order, list(result.scalars()))


async def list_orders(session: AsyncSession, user_id: str) -> list[dict]:
    result = await session.execute(
        select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc())
    )
    orders = list(result.scalars())
    if not orders:
        return []
    items_result = await session.execute(
        select(OrderItem)
        .where(OrderItem.order_id.in_([o.id for o in orders]))
        .order_by(OrderItem.order_id, OrderItem.line_number)
    )
    by_order: dict[str, list[OrderItem]] = {}
    for item in items_result.scalars():
        by_order.setdefault(item.order_id, []).append(item)
    return [_order_to_dict(o, by_order.get(o.id, [])) for o in orders]
