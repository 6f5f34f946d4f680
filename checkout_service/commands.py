"""
Checkout Service — order persistence commands (write side)

Each command writes through the session it is given, commits, and
reports a WriteResult. Store errors are logged here with their raw
detail and never returned to the caller.

The delete commands are the compensating actions of the create commands
and are only called by the saga.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Order, OrderItem
from .order_number import generate_order_number
from .pricing import PriceBreakdown, PricedLine
from .schemas import CheckoutRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteResult:
    success: bool
    reason: str = ""
    order_id: str | None = None
    order_number: str | None = None


async def create_order(
    session: AsyncSession,
    user_id: str,
    request: CheckoutRequest,
    breakdown: PriceBreakdown,
    order_id: str | None = None,
    order_number_prefix: str = "ORD",
    max_attempts: int = 5,
) -> WriteResult:
    """
    Order creation command

    1. Generate an order number
    2. Insert the order in pending status with snapshots of the customer,
       shipping address and delivery method as they are right now
    3. On a unique-constraint conflict, roll back and try a new number
    """
    order_id = order_id or str(uuid4())
    now = datetime.now(timezone.utc)
    customer = request.customer_info
    address = request.shipping_address
    delivery = request.delivery_method
    address_text = address.formatted()

    for attempt in range(1, max_attempts + 1):
        order_number = generate_order_number(order_number_prefix, now)
        try:
            await session.execute(
                insert(Order).values(
                    id=order_id,
                    order_number=order_number,
                    user_id=user_id,
                    sub_total=breakdown.subtotal,
                    tax=breakdown.tax,
                    shipping=breakdown.shipping,
                    discount=breakdown.discount,
                    total_price=breakdown.total,
                    discount_code=breakdown.discount_code,
                    status="pending",
                    payment_status="pending",
                    customer_name=customer.full_name,
                    customer_email=customer.email,
                    customer_phone=customer.phone,
                    shipping_street=address.address,
                    shipping_city=address.city,
                    shipping_postal_code=address.postal_code,
                    shipping_address=address_text,
                    billing_address=address_text,
                    delivery_method_id=delivery.id,
                    delivery_method_name=delivery.name,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.warning(
                "Order number %s already taken (attempt %s/%s)", order_number, attempt, max_attempts
            )
            continue
        except SQLAlchemyError:
            logger.exception("Order creation failed")
            await session.rollback()
            return WriteResult(success=False, reason="Failed to create order")

        logger.info("Order %s created as %s", order_id, order_number)
        return WriteResult(success=True, order_id=order_id, order_number=order_number)

    return WriteResult(success=False, reason="Could not allocate a unique order number")


async def create_order_items(
    session: AsyncSession,
    order_id: str,
    lines: list[PricedLine],
) -> WriteResult:
    """Insert one immutable order item per priced line."""
    now = datetime.now(timezone.utc)
    rows = [
        {
            "id": str(uuid4()),
            "order_id": order_id,
            "content_id": line.content_id,
            "line_number": number,
            "title": line.title,
            "quantity": line.quantity,
            "unit_price": line.unit_price,
            "total_price": line.line_total,
            "created_at": now,
        }
        for number, line in enumerate(lines, start=1)
    ]
    try:
        await session.execute(insert(OrderItem), rows)
        await session.commit()
    except SQLAlchemyError:
        logger.exception("Order item creation failed for order %s", order_id)
        await session.rollback()
        return WriteResult(success=False, reason="Failed to create order items", order_id=order_id)
    return WriteResult(success=True, order_id=order_id)


async def delete_order_items(session: AsyncSession, order_id: str) -> WriteResult:
    """Compensation for create_order_items."""
    try:
        await session.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
        await session.commit()
    except SQLAlchemyError:
        logger.exception("Failed to delete items of order %s", order_id)
        await session.rollback()
        return WriteResult(success=False, reason="Failed to delete order items", order_id=order_id)
    return WriteResult(success=True, order_id=order_id)


async def delete_order(session: AsyncSession, order_id: str) -> WriteResult:
    """Compensation for create_order."""
    try:
        await session.execute(delete(Order).where(Order.id == order_id))
        await session.commit()
    except SQLAlchemyError:
        logger.exception("Failed to delete order %s", order_id)
        await session.rollback()
        return WriteResult(success=False, reason="Failed to delete order", order_id=order_id)
    return WriteResult(success=True, order_id=order_id)
