"""
Checkout Orchestrator — cart to order saga

Turns the caller's cart into a pending order. There is no transaction
spanning the order, its items, the stock counters and the cart, so each
write commits on its own and the saga records how to undo it. Any failure
after the first write unwinds what was committed, newest first.

  Flow:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. Validate the cart against the live catalog   (read only) │
  │  2. Price the lines, delivery and discount code  (read only) │
  │  3. Create the order (pending)                               │
  │  4. Create the order items                                   │
  │  5. Reserve stock, line by line                              │
  │     └─ any failure → release reserved stock → delete items   │
  │                      → delete order   (compensation)         │
  │  6. Clear the cart  (failure here is only a warning)         │
  └──────────────────────────────────────────────────────────────┘

Every store call is bounded by the policy timeout, and only the store call:
events are published after the write returns, under their own timeout, and
never fail a step. A timed-out call is a failed step whose write may still
have committed. Every compensation is safe to run for a write that never
happened: deletes remove nothing, and a stock release only returns what the
reservation ledger says was taken. So the order and item compensations are
recorded before their write, and a reservation is recorded once it succeeds
or once its outcome is unknown.

The confirmation is built before the saga commits; nothing after the
commit can turn a placed order into an error.
"""

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import TypeVar
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import cart, commands, inventory, pricing, queries, validation
from .aggregate import CheckoutSaga, SagaState
from .config import CheckoutPolicy
from .errors import (
    CartEmptyError,
    CheckoutError,
    InternalError,
    PersistenceError,
    StockError,
    ValidationError,
)
from .events import (
    CHECKOUT_CHANNEL,
    INVENTORY_CHANNEL,
    CheckoutCommitted,
    CheckoutCompensated,
    EventPublisher,
    StockReleased,
    StockReserved,
)
from .schemas import CheckoutConfirmation, CheckoutRequest, OrderLine, Totals
from .validation import LineStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CheckoutOutcome:
    state: SagaState
    confirmation: CheckoutConfirmation | None = None
    error: CheckoutError | None = None
    rollback_complete: bool = True
    saga_log: list[dict] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state is SagaState.COMMITTED


class CheckoutOrchestrator:
    """Checkout saga orchestrator. One instance may serve many calls; it keeps no per-call state."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher: EventPublisher,
        policy: CheckoutPolicy,
    ):
        self.session_factory = session_factory
        self.publisher = publisher
        self.policy = policy

    async def execute(self, user_id: str, request: CheckoutRequest) -> CheckoutOutcome:
        """
        Run the saga to a terminal state.

        The caller always gets COMMITTED with a confirmation, or FAILED
        with an error after compensation has run.
        """
        saga = CheckoutSaga(user_id=user_id)
        try:
            confirmation = await self._run(saga, request)
        except CheckoutError as e:
            error = e
        except Exception:
            logger.exception("Unexpected checkout failure for user %s", user_id)
            error = InternalError()
        else:
            await self._announce_commit(saga, confirmation)
            return CheckoutOutcome(
                state=saga.state, confirmation=confirmation, saga_log=saga.log
            )

        logger.warning(
            "Checkout for user %s failed in state %s: [%s] %s",
            user_id,
            saga.state.value,
            error.category,
            error.message,
        )
        report = await saga.compensate()
        await self._publish(
            CHECKOUT_CHANNEL,
            CheckoutCompensated(
                user_id=user_id,
                order_id=saga.order_id,
                error_category=error.category,
                rollback_complete=report.rollback_complete,
                saga_log=saga.log,
                timestamp=datetime.now(timezone.utc),
            )
        )
        return CheckoutOutcome(
            state=saga.state,
            error=error,
            rollback_complete=report.rollback_complete,
            saga_log=saga.log,
        )

    async def _run(self, saga: CheckoutSaga, request: CheckoutRequest) -> CheckoutConfirmation:
        user_id = saga.user_id

        # ── Step 1: validate the cart ────────────────
        entry = saga.begin_step("ValidateCart")
        async with self.session_factory() as session:
            checked = await self._bounded(
                validation.validate_cart(
                    session, user_id, self.policy.price_drift_threshold_percent
                ),
                "validate cart",
                entry,
            )
        if checked.cart_id is None or not checked.checks:
            saga.fail_step(entry, "cart empty")
            raise CartEmptyError("Cart is empty")
        if not checked.is_valid:
            saga.fail_step(entry, "cart invalid")
            errors = checked.errors
            if all(check.status is LineStatus.OUT_OF_STOCK for check in checked.checks if not check.ok):
                raise StockError("Stock validation failed", details=errors)
            raise ValidationError("Cart validation failed", details=errors)
        saga.complete_step(entry)

        # ── Step 2: price ────────────────────────────
        entry = saga.begin_step("PriceOrder")
        discount_code = None
        if request.discount_code:
            async with self.session_factory() as session:
                discount_code = await self._bounded(
                    queries.get_discount_code(session, request.discount_code),
                    "look up discount code",
                    entry,
                )
        lines = [
            pricing.price_line(line.content_id, line.content.title, line.quantity, line.price)
            for line in checked.passing_lines
        ]
        breakdown = pricing.compute_totals(
            lines,
            request.delivery_method.cost,
            discount_code,
            tax_rate=self.policy.tax_rate,
        )
        saga.complete_step(entry)

        # ── Step 3: create the order ─────────────────
        order_id = str(uuid4())
        saga.order_id = order_id
        saga.record("CreateOrder", partial(self._undo, commands.delete_order, order_id))
        entry = saga.begin_step("CreateOrder")
        async with self.session_factory() as session:
            created = await self._bounded(
                commands.create_order(
                    session,
                    user_id,
                    request,
                    breakdown,
                    order_id=order_id,
                    order_number_prefix=self.policy.order_number_prefix,
                    max_attempts=self.policy.order_number_attempts,
                ),
                "create order",
                entry,
            )
        if not created.success:
            saga.fail_step(entry, created.reason)
            raise PersistenceError("Failed to create order")
        saga.complete_step(entry)
        saga.transition(SagaState.ORDER_CREATED)

        # ── Step 4: create the order items ───────────
        saga.record("CreateOrderItems", partial(self._undo, commands.delete_order_items, order_id))
        entry = saga.begin_step("CreateOrderItems")
        async with self.session_factory() as session:
            items = await self._bounded(
                commands.create_order_items(session, order_id, breakdown.lines),
                "create order items",
                entry,
            )
        if not items.success:
            saga.fail_step(entry, items.reason)
            raise PersistenceError("Failed to create order items")
        saga.complete_step(entry)
        saga.transition(SagaState.ITEMS_CREATED)

        # ── Step 5: reserve stock ────────────────────
        for position, line in enumerate(breakdown.lines, start=1):
            action = f"ReserveStock {line.content_id}"
            release = partial(self._release, line.content_id, order_id)
            entry = saga.begin_step(action)
            try:
                async with self.session_factory() as session:
                    reservation = await self._bounded(
                        inventory.reserve_stock(session, line.content_id, order_id, line.quantity),
                        "reserve stock",
                        entry,
                    )
            except PersistenceError:
                logger.warning(
                    "Reservation of %s x %s for order %s has unknown outcome; releasing whatever was recorded",
                    line.quantity,
                    line.content_id,
                    order_id,
                )
                saga.record(action, release)
                raise
            if not reservation.success:
                saga.fail_step(entry, reservation.reason)
                if reservation.store_error:
                    raise PersistenceError("Failed to reserve stock")
                raise StockError(
                    "Stock reservation failed",
                    details=[
                        {
                            "content_id": line.content_id,
                            "title": line.title,
                            "requested_quantity": line.quantity,
                            "available_quantity": reservation.available,
                            "error": f"Insufficient stock for {line.title}",
                        }
                    ],
                )
            saga.complete_step(entry)
            saga.record(action, release)
            await self._publish(
                INVENTORY_CHANNEL,
                StockReserved(
                    content_id=line.content_id,
                    order_id=order_id,
                    quantity=line.quantity,
                    timestamp=datetime.now(timezone.utc),
                ),
            )
            if position < len(breakdown.lines):
                saga.transition(SagaState.STOCK_PARTIAL)
            else:
                saga.transition(SagaState.STOCK_RESERVED)

        # built while everything is still compensable
        confirmation = CheckoutConfirmation(
            order_id=order_id,
            order_number=created.order_number,
            status="pending",
            totals=Totals(
                subtotal=breakdown.subtotal,
                tax=breakdown.tax,
                shipping=breakdown.shipping,
                discount=breakdown.discount,
                total=breakdown.total,
            ),
            discount_code=breakdown.discount_code,
            customer_info=request.customer_info,
            shipping_address=request.shipping_address,
            delivery_method=request.delivery_method,
            items=[
                OrderLine(
                    content_id=line.content_id,
                    title=line.title,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    line_total=line.line_total,
                )
                for line in breakdown.lines
            ],
        )

        # ── Step 6: clear the cart ───────────────────
        entry = saga.begin_step("ClearCart")
        try:
            async with self.session_factory() as session:
                cleared = await self._bounded(
                    cart.clear_cart(session, checked.cart_id), "clear cart", entry
                )
        except PersistenceError:
            cleared = None
        if cleared is not None and cleared.success:
            saga.complete_step(entry)
            saga.transition(SagaState.CART_CLEARED)
        else:
            if cleared is not None:
                saga.fail_step(entry, cleared.reason)
            logger.warning("Order %s committed but cart %s was not cleared", order_id, checked.cart_id)
            confirmation.warnings.append("Order placed, but the cart could not be cleared")

        saga.commit()
        return confirmation

    # ── helpers ───────────────────────────────────

    async def _announce_commit(self, saga: CheckoutSaga, confirmation: CheckoutConfirmation) -> None:
        # the order is placed; a fault from here on is only logged
        try:
            event = CheckoutCommitted(
                order_id=confirmation.order_id,
                order_number=confirmation.order_number,
                user_id=saga.user_id,
                total_price=str(confirmation.totals.total),
                saga_log=saga.log,
                timestamp=datetime.now(timezone.utc),
            )
            await self._publish(CHECKOUT_CHANNEL, event)
        except Exception:
            logger.exception("Order %s committed but its event was not published", confirmation.order_id)

    async def _bounded(self, awaitable: Awaitable[T], what: str, entry: dict | None = None) -> T:
        """Await a store call under the policy timeout; store failures become PersistenceError."""
        timeout = self.policy.store_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError:
            logger.error("Timed out after %ss trying to %s", timeout, what)
            error = PersistenceError(f"Timed out trying to {what}")
        except SQLAlchemyError:
            logger.exception("Store error trying to %s", what)
            error = PersistenceError(f"Failed to {what}")
        if entry is not None:
            entry["status"] = "FAILED"
            entry["error"] = error.message
        raise error

    async def _undo(self, command, order_id: str) -> bool:
        async with self.session_factory() as session:
            result = await self._bounded(command(session, order_id), f"undo {command.__name__}")
        return result.success

    async def _release(self, content_id: str, order_id: str) -> bool:
        """
        Compensation for a stock reservation.

        A release that times out may still have committed. The reservation
        ledger settles it: once the reservation row is gone, the stock is back.
        """
        try:
            async with self.session_factory() as session:
                result = await self._bounded(
                    inventory.release_stock(session, content_id, order_id), "release stock"
                )
        except PersistenceError:
            async with self.session_factory() as session:
                remaining = await self._bounded(
                    inventory.reserved_quantity(session, content_id, order_id),
                    "check stock reservation",
                )
            if remaining is not None:
                return False
            logger.warning(
                "Release of content %s for order %s timed out after committing", content_id, order_id
            )
            return True

        if not result.success:
            return False
        if result.released:
            await self._publish(
                INVENTORY_CHANNEL,
                StockReleased(
                    content_id=content_id,
                    order_id=order_id,
                    quantity=result.released,
                    timestamp=datetime.now(timezone.utc),
                ),
            )
        return True

    async def _publish(self, channel: str, event: BaseModel) -> None:
        """Best-effort publish under its own timeout. Never fails the checkout."""
        try:
            await asyncio.wait_for(
                self.publisher.publish(channel, event),
                self.policy.store_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Publishing %s on %s timed out", type(event).__name__, channel)
