"""
Checkout Service — inventory reservation

Reserve and release stock for an order line. The reservation is the
authoritative stock check: the cart validator ran earlier and stock may
have moved since.

The check and the decrement are one conditional UPDATE:

    UPDATE content
       SET stock_quantity = stock_quantity - :qty
     WHERE id = :id AND stock_quantity >= :qty

and success is read from the affected-row count. A SELECT followed by a
separate UPDATE would lose updates under concurrent checkouts.

Every successful decrement writes a stock_reservations row in the same
transaction. A release returns exactly what that row says was taken and
deletes it, so releasing a reservation that never committed, or one that
was already released, changes nothing. That makes a reservation whose
outcome is unknown (a timed-out call) safe to compensate.

These functions only touch the store. Publishing stock events is left
to the caller.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Content, StockReservation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationResult:
    success: bool
    reason: str = ""
    requested: int = 0
    available: int | None = None
    # True when the store itself failed, as opposed to a plain shortage
    store_error: bool = False


@dataclass(frozen=True)
class ReleaseResult:
    success: bool
    reason: str = ""
    released: int = 0


async def reserve_stock(
    session: AsyncSession,
    content_id: str,
    order_id: str,
    quantity: int,
) -> ReservationResult:
    """
    Stock reservation command

    1. Conditionally decrement stock in one statement
    2. One row affected → record the reservation and commit both
    3. No row affected → report the shortage with the stock now visible
    """
    stmt = (
        update(Content)
        .where(Content.id == content_id, Content.stock_quantity >= quantity)
        .values(stock_quantity=Content.stock_quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await session.execute(stmt)
        reserved = result.rowcount == 1
        if reserved:
            await session.execute(
                insert(StockReservation).values(
                    order_id=order_id, content_id=content_id, quantity=quantity
                )
            )
        await session.commit()
    except SQLAlchemyError:
        logger.exception("Stock reservation failed for content %s (order %s)", content_id, order_id)
        await session.rollback()
        return ReservationResult(
            success=False,
            reason="Failed to update stock",
            requested=quantity,
            store_error=True,
        )

    if not reserved:
        available = await _available_stock(session, content_id)
        logger.info(
            "Insufficient stock for content %s: requested=%s, available=%s",
            content_id,
            quantity,
            available,
        )
        if available is None:
            return ReservationResult(
                success=False, reason="Content unavailable", requested=quantity
            )
        return ReservationResult(
            success=False,
            reason=f"Insufficient stock: requested={quantity}, available={available}",
            requested=quantity,
            available=available,
        )

    return ReservationResult(success=True, requested=quantity)


async def release_stock(session: AsyncSession, content_id: str, order_id: str) -> ReleaseResult:
    """
    Stock release command (saga compensation)

    Returns the quantity recorded for this order line to stock and drops
    the reservation. Without a reservation there is nothing to return.
    """
    try:
        result = await session.execute(
            select(StockReservation.id, StockReservation.quantity).where(
                StockReservation.order_id == order_id,
                StockReservation.content_id == content_id,
            )
        )
        row = result.one_or_none()
        if row is None:
            return ReleaseResult(success=True, reason="Nothing reserved")

        deleted = await session.execute(
            delete(StockReservation).where(StockReservation.id == row.id)
        )
        if deleted.rowcount != 1:
            await session.rollback()
            return ReleaseResult(success=True, reason="Already released")

        restored = await session.execute(
            update(Content)
            .where(Content.id == content_id)
            .values(stock_quantity=Content.stock_quantity + row.quantity)
            .execution_options(synchronize_session=False)
        )
        if restored.rowcount != 1:
            await session.rollback()
            return ReleaseResult(success=False, reason="Content not found")
        await session.commit()
    except SQLAlchemyError:
        logger.exception("Stock release failed for content %s (order %s)", content_id, order_id)
        await session.rollback()
        return ReleaseResult(success=False, reason="Failed to release stock")

    return ReleaseResult(success=True, released=row.quantity)


async def reserved_quantity(session: AsyncSession, content_id: str, order_id: str) -> int | None:
    """Quantity currently reserved for an order line, or None if there is no reservation."""
    result = await session.execute(
        select(StockReservation.quantity).where(
            StockReservation.order_id == order_id,
            StockReservation.content_id == content_id,
        )
    )
    return result.scalar_one_or_none()


async def _available_stock(session: AsyncSession, content_id: str) -> int | None:
    try:
        result = await session.execute(
            select(Content.stock_quantity).where(Content.id == content_id)
        )
    except SQLAlchemyError:
        logger.exception("Could not read stock for content %s", content_id)
        return None
    return result.scalar_one_or_none()
