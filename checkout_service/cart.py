"""
Checkout Service — cart commands

Add, change and remove cart lines for the calling user. The unit price is
captured when a line is first added and is not refreshed afterwards; the
cart validator compares it with the live price at checkout.

clear_cart is the last step of the checkout saga and runs only after the
order and every stock reservation are committed.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import queries
from .commands import WriteResult
from .db import Cart, CartItem

logger = logging.getLogger(__name__)

BAD_REQUEST = "bad_request"
NOT_FOUND = "not_found"
FORBIDDEN = "forbidden"
STORE_ERROR = "store_error"


@dataclass(frozen=True)
class CartResult:
    success: bool
    reason: str = ""
    error: str | None = None
    details: dict = field(default_factory=dict)


def _failure(error: str, reason: str, **details) -> CartResult:
    return CartResult(success=False, reason=reason, error=error, details=details)


async def get_or_create_cart(session: AsyncSession, user_id: str) -> str:
    cart_id = await queries.get_cart_id(session, user_id)
    if cart_id is not None:
        return cart_id

    cart = Cart(user_id=user_id)
    session.add(cart)
    try:
        await session.commit()
    except IntegrityError:
        # another request created it first
        await session.rollback()
        return await queries.get_cart_id(session, user_id)
    return cart.id


async def get_cart(session: AsyncSession, user_id: str) -> dict:
    cart_id = await queries.get_cart_id(session, user_id)
    if cart_id is None:
        return {"id": "", "items": [], "total_items": 0, "subtotal": "0.00"}

    lines = await queries.get_cart_lines(session, cart_id)
    items = []
    subtotal = Decimal("0")
    for line in lines:
        item_subtotal = line.price * line.quantity
        subtotal += item_subtotal
        items.append(
            {
                "id": line.id,
                "content_id": line.content_id,
                "title": line.content.title if line.content else None,
                "quantity": line.quantity,
                "price": str(line.price),
                "current_price": str(line.content.price) if line.content else None,
                "stock_quantity": line.content.stock_quantity if line.content else 0,
                "item_subtotal": str(item_subtotal),
            }
        )
    return {
        "id": cart_id,
        "items": items,
        "total_items": sum(line.quantity for line in lines),
        "subtotal": str(subtotal.quantize(Decimal("0.01"))),
    }


async def add_item(
    session: AsyncSession,
    user_id: str,
    content_id: str,
    quantity: int,
) -> CartResult:
    """
    Add to cart

    1. Check the content exists, is published, for sale and in stock
    2. Increase the quantity of an existing line, or add a new line
       capturing the current price
    """
    if quantity < 1:
        return _failure(BAD_REQUEST, "quantity must be a positive number")

    content = await queries.get_content(session, content_id)
    if content is None:
        return _failure(NOT_FOUND, "Content not found", content_id=content_id)
    if not content.is_for_sale:
        return _failure(BAD_REQUEST, "This content is not for sale", content_id=content_id)
    if content.status != "published":
        return _failure(BAD_REQUEST, "This content is not available", status=content.status)

    try:
        cart_id = await get_or_create_cart(session, user_id)
        result = await session.execute(
            select(CartItem).where(CartItem.cart_id == cart_id, CartItem.content_id == content_id)
        )
        existing = result.scalar_one_or_none()
        new_quantity = quantity + (existing.quantity if existing else 0)

        if new_quantity > content.stock_quantity:
            return _failure(
                BAD_REQUEST,
                "Insufficient stock",
                available=content.stock_quantity,
                requested=new_quantity,
            )

        if existing:
            existing.quantity = new_quantity
            item_id = existing.id
        else:
            item = CartItem(
                cart_id=cart_id,
                content_id=content_id,
                quantity=quantity,
                price=content.price,
            )
            session.add(item)
            await session.flush()
            item_id = item.id
        await _touch(session, cart_id)
        await session.commit()
    except SQLAlchemyError:
        logger.exception("Failed to add content %s to cart of user %s", content_id, user_id)
        await session.rollback()
        return _failure(STORE_ERROR, "Failed to update cart")

    logger.info("Cart of user %s: content %s quantity now %s", user_id, content_id, new_quantity)
    return CartResult(
        success=True,
        reason="Cart updated" if existing else "Item added to cart",
        details={"cart_item_id": item_id, "quantity": new_quantity},
    )


async def update_quantity(
    session: AsyncSession,
    user_id: str,
    cart_item_id: str,
    quantity: int,
) -> CartResult:
    """Change a line's quantity; zero or less removes the line."""
    item, failure = await _owned_item(session, user_id, cart_item_id)
    if failure:
        return failure

    if quantity <= 0:
        return await remove_item(session, user_id, cart_item_id)

    content = await queries.get_content(session, item.content_id)
    available = content.stock_quantity if content else 0
    if quantity > available:
        return _failure(
            BAD_REQUEST,
            f"Insufficient stock. Only {available} available",
            available_quantity=available,
        )

    try:
        await session.execute(
            update(CartItem).where(CartItem.id == cart_item_id).values(quantity=quantity)
        )
        await _touch(session, item.cart_id)
        await session.commit()
    except SQLAlchemyError:
        logger.exception("Failed to update cart item %s", cart_item_id)
        await session.rollback()
        return _failure(STORE_ERROR, "Failed to update cart")
    return CartResult(success=True, reason="Quantity updated", details={"quantity": quantity})


async def remove_item(session: AsyncSession, user_id: str, cart_item_id: str) -> CartResult:
    item, failure = await _owned_item(session, user_id, cart_item_id)
    if failure:
        return failure
    try:
        await session.execute(delete(CartItem).where(CartItem.id == cart_item_id))
        await _touch(session, item.cart_id)
        await session.commit()
    except SQLAlchemyError:
        logger.exception("Failed to remove cart item %s", cart_item_id)
        await session.rollback()
        return _failure(STORE_ERROR, "Failed to update cart")
    return CartResult(success=True, reason="Item removed from cart")


async def clear_cart(session: AsyncSession, cart_id: str) -> WriteResult:
    """Delete every line of a cart."""
    try:
        await session.execute(delete(CartItem).where(CartItem.cart_id == cart_id))
        await session.commit()
    except SQLAlchemyError:
        logger.exception("Failed to clear cart %s", cart_id)
        await session.rollback()
        return WriteResult(success=False, reason="Failed to clear cart")
    return WriteResult(success=True)


async def _owned_item(
    session: AsyncSession, user_id: str, cart_item_id: str
) -> tuple[CartItem | None, CartResult | None]:
    result = await session.execute(
        select(CartItem, Cart.user_id)
        .join(Cart, Cart.id == CartItem.cart_id)
        .where(CartItem.id == cart_item_id)
    )
    row = result.one_or_none()
    if row is None:
        return None, _failure(NOT_FOUND, "Cart item not found")
    item, owner = row
    if owner != user_id:
        return None, _failure(FORBIDDEN, "This cart item does not belong to you")
    return item, None


async def _touch(session: AsyncSession, cart_id: str) -> None:
    await session.execute(
        update(Cart).where(Cart.id == cart_id).values(updated_at=datetime.now(timezone.utc))
    )
