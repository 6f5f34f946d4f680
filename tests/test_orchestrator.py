import asyncio
import json
from decimal import Decimal
from unittest.mock import patch

from checkout_service import inventory, validation
from checkout_service.aggregate import SagaState
from checkout_service.commands import WriteResult
from checkout_service.config import CheckoutPolicy
from checkout_service.events import CHECKOUT_CHANNEL, INVENTORY_CHANNEL
from checkout_service.orchestrator import CheckoutOrchestrator

from .factories import checkout_request


def published(redis, channel):
    return [
        json.loads(call.args[1])
        for call in redis.publish.await_args_list
        if call.args[0] == channel
    ]


class TestSuccessfulCheckout:
    async def test_end_to_end_totals(self, store, orchestrator):
        first = await store.content(title="Book A", price="500.00", stock=5)
        second = await store.content(title="Book B", price="300.00", stock=5)
        await store.cart_item("u1", first, 2)
        await store.cart_item("u1", second, 1)
        await store.discount("SAVE10", "fixed", "10")

        outcome = await orchestrator.execute("u1", checkout_request(discount_code="save10"))

        assert outcome.success
        totals = outcome.confirmation.totals
        assert totals.subtotal == Decimal("1300.00")
        assert totals.discount == Decimal("10.00")
        assert totals.shipping == Decimal("500.00")
        assert totals.tax == Decimal("0.00")
        assert totals.total == Decimal("1790.00")
        assert outcome.confirmation.discount_code == "SAVE10"
        assert outcome.confirmation.warnings == []

    async def test_persisted_state(self, store, orchestrator):
        first = await store.content(title="Book A", price="500.00", stock=5)
        second = await store.content(title="Book B", price="300.00", stock=1)
        await store.cart_item("u1", first, 2)
        await store.cart_item("u1", second, 1)

        outcome = await orchestrator.execute("u1", checkout_request())

        [order] = await store.orders()
        items = await store.order_items()
        assert order.id == outcome.confirmation.order_id
        assert order.order_number == outcome.confirmation.order_number
        assert order.status == "pending"
        assert sum(item.total_price for item in items) == order.sub_total
        assert order.total_price == order.sub_total + order.tax + order.shipping - order.discount
        assert [(item.content_id, item.quantity) for item in items] == [(first, 2), (second, 1)]
        assert await store.stock(first) == 3
        assert await store.stock(second) == 0
        assert await store.cart_lines("u1") == []

    async def test_saga_log_and_event(self, store, orchestrator, redis):
        content_id = await store.content(stock=2)
        await store.cart_item("u1", content_id, 1)

        outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.state is SagaState.COMMITTED
        actions = [entry["action"] for entry in outcome.saga_log]
        assert actions == [
            "ValidateCart",
            "PriceOrder",
            "CreateOrder",
            "CreateOrderItems",
            f"ReserveStock {content_id}",
            "ClearCart",
        ]
        assert all(entry["status"] == "COMPLETED" for entry in outcome.saga_log)
        [event] = published(redis, CHECKOUT_CHANNEL)
        assert event["event_type"] == "CheckoutCommitted"
        assert event["data"]["order_id"] == outcome.confirmation.order_id

    async def test_order_keeps_checkout_snapshot(self, store, orchestrator):
        content_id = await store.content(title="Title at checkout", stock=2)
        await store.cart_item("u1", content_id, 1)

        await orchestrator.execute("u1", checkout_request())
        await store.set_price(content_id, "999.00")

        [item] = await store.order_items()
        assert item.title == "Title at checkout"
        assert item.unit_price == Decimal("500.00")

    async def test_cart_clear_failure_still_commits(self, store, orchestrator):
        content_id = await store.content(stock=2)
        await store.cart_item("u1", content_id, 1)

        async def refuse(session, cart_id):
            return WriteResult(success=False, reason="Failed to clear cart")

        with patch("checkout_service.cart.clear_cart", refuse):
            outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.success
        assert outcome.confirmation.warnings == ["Order placed, but the cart could not be cleared"]
        assert len(await store.orders()) == 1
        assert await store.stock(content_id) == 1
        assert len(await store.cart_lines("u1")) == 1


class TestFailedCheckout:
    async def test_no_cart(self, orchestrator, redis):
        outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.state is SagaState.FAILED
        assert outcome.error.category == "cart_empty"
        assert outcome.rollback_complete
        [event] = published(redis, CHECKOUT_CHANNEL)
        assert event["event_type"] == "CheckoutCompensated"
        assert event["data"]["order_id"] is None

    async def test_invalid_line_blocks_checkout(self, store, orchestrator):
        content_id = await store.content(price="100.00")
        await store.cart_item("u1", content_id, 1)
        await store.set_price(content_id, "150.00")

        outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.error.category == "validation"
        assert outcome.error.details[0]["error_type"] == "price_changed"
        assert await store.orders() == []
        assert await store.stock(content_id) == 10

    async def test_validator_stock_shortage(self, store, orchestrator):
        content_id = await store.content(stock=1)
        await store.cart_item("u1", content_id, 2)

        outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.error.category == "stock"
        assert outcome.error.details[0]["details"]["available_quantity"] == 1
        assert await store.orders() == []

    async def test_stock_lost_before_reservation_rolls_everything_back(self, store, orchestrator, redis):
        first = await store.content(title="A", stock=5)
        second = await store.content(title="B", stock=5)
        await store.cart_item("u1", first, 2)
        await store.cart_item("u1", second, 3)

        real_validate = validation.validate_cart

        async def validate_then_sell_out(session, user_id, threshold):
            result = await real_validate(session, user_id, threshold)
            await store.set_stock(second, 1)
            return result

        with patch("checkout_service.validation.validate_cart", validate_then_sell_out):
            outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.state is SagaState.FAILED
        assert outcome.error.category == "stock"
        assert outcome.error.details == [
            {
                "content_id": second,
                "title": "B",
                "requested_quantity": 3,
                "available_quantity": 1,
                "error": "Insufficient stock for B",
            }
        ]
        assert outcome.rollback_complete
        assert await store.orders() == []
        assert await store.order_items() == []
        assert await store.stock(first) == 5
        assert await store.stock(second) == 1
        assert len(await store.cart_lines("u1")) == 2

        compensations = [e["action"] for e in outcome.saga_log if e["action"].endswith("(COMPENSATING)")]
        assert compensations == [
            f"ReserveStock {first} (COMPENSATING)",
            "CreateOrderItems (COMPENSATING)",
            "CreateOrder (COMPENSATING)",
        ]
        events = [json.loads(call.args[1])["event_type"] for call in redis.publish.await_args_list]
        assert events == ["StockReserved", "StockReleased", "CheckoutCompensated"]

    async def test_item_insert_failure_deletes_order(self, store, orchestrator):
        content_id = await store.content(stock=3)
        await store.cart_item("u1", content_id, 1)

        async def fail(session, order_id, lines):
            return WriteResult(success=False, reason="Failed to create order items", order_id=order_id)

        with patch("checkout_service.commands.create_order_items", fail):
            outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.error.category == "persistence"
        assert outcome.rollback_complete
        assert await store.orders() == []
        assert await store.stock(content_id) == 3
        assert len(await store.cart_lines("u1")) == 1

    async def test_store_timeout_is_a_persistence_failure(self, store, session_factory, publisher):
        content_id = await store.content(stock=3)
        await store.cart_item("u1", content_id, 1)
        orchestrator = CheckoutOrchestrator(
            session_factory, publisher, CheckoutPolicy(store_timeout_seconds=0.5)
        )

        async def hang(session, order_id, lines):
            await asyncio.sleep(5)

        with patch("checkout_service.commands.create_order_items", hang):
            outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.error.category == "persistence"
        assert outcome.error.message == "Timed out trying to create order items"
        assert await store.orders() == []

    async def test_unexpected_error_is_internal(self, store, orchestrator):
        content_id = await store.content(stock=3)
        await store.cart_item("u1", content_id, 1)

        async def explode(session, order_id, lines):
            raise KeyError("line_total")

        with patch("checkout_service.commands.create_order_items", explode):
            outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.error.category == "internal"
        assert outcome.error.message == "An unexpected error occurred"
        assert await store.orders() == []

    async def test_failed_compensation_is_reported(self, store, orchestrator):
        content_id = await store.content(stock=3)
        await store.cart_item("u1", content_id, 1)

        async def fail_items(session, order_id, lines):
            return WriteResult(success=False, reason="Failed to create order items")

        async def fail_delete(session, order_id):
            return WriteResult(success=False, reason="Failed to delete order")

        with patch("checkout_service.commands.create_order_items", fail_items), patch(
            "checkout_service.commands.delete_order", fail_delete
        ):
            outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.error.category == "persistence"
        assert not outcome.rollback_complete


def slow_policy_orchestrator(session_factory, publisher):
    return CheckoutOrchestrator(
        session_factory, publisher, CheckoutPolicy(store_timeout_seconds=0.5)
    )


def sell_out_after_validation(store, content_id, remaining):
    real_validate = validation.validate_cart

    async def validate_then_sell_out(session, user_id, threshold):
        result = await real_validate(session, user_id, threshold)
        await store.set_stock(content_id, remaining)
        return result

    return patch("checkout_service.validation.validate_cart", validate_then_sell_out)


class TestSlowStore:
    async def test_slow_stock_event_does_not_fail_checkout(self, store, session_factory, publisher, redis):
        content_id = await store.content(stock=5)
        await store.cart_item("u1", content_id, 2)
        orchestrator = slow_policy_orchestrator(session_factory, publisher)

        async def slow_inventory_channel(channel, payload):
            if channel == INVENTORY_CHANNEL:
                await asyncio.sleep(2)

        redis.publish.side_effect = slow_inventory_channel
        outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.success
        assert await store.stock(content_id) == 3
        assert len(await store.orders()) == 1
        [event] = published(redis, CHECKOUT_CHANNEL)
        assert event["event_type"] == "CheckoutCommitted"

    async def test_reservation_committed_then_timed_out_is_released(self, store, session_factory, publisher):
        content_id = await store.content(stock=5)
        await store.cart_item("u1", content_id, 2)
        orchestrator = slow_policy_orchestrator(session_factory, publisher)
        real_reserve = inventory.reserve_stock

        async def reserve_then_stall(session, content_id, order_id, quantity):
            result = await real_reserve(session, content_id, order_id, quantity)
            await asyncio.sleep(2)
            return result

        with patch("checkout_service.inventory.reserve_stock", reserve_then_stall):
            outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.state is SagaState.FAILED
        assert outcome.error.category == "persistence"
        assert outcome.error.message == "Timed out trying to reserve stock"
        assert outcome.rollback_complete
        assert await store.stock(content_id) == 5
        assert await store.orders() == []
        assert len(await store.cart_lines("u1")) == 1
        compensations = [e["action"] for e in outcome.saga_log if e["action"].endswith("(COMPENSATING)")]
        assert compensations[0] == f"ReserveStock {content_id} (COMPENSATING)"

    async def test_reservation_timed_out_before_writing_changes_nothing(
        self, store, session_factory, publisher
    ):
        content_id = await store.content(stock=5)
        await store.cart_item("u1", content_id, 2)
        orchestrator = slow_policy_orchestrator(session_factory, publisher)

        async def stall(session, content_id, order_id, quantity):
            await asyncio.sleep(2)

        with patch("checkout_service.inventory.reserve_stock", stall):
            outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.error.message == "Timed out trying to reserve stock"
        assert outcome.rollback_complete
        assert await store.stock(content_id) == 5
        assert await store.orders() == []

    async def test_release_committed_then_timed_out_counts_as_done(self, store, session_factory, publisher):
        first = await store.content(title="A", stock=5)
        second = await store.content(title="B", stock=5)
        await store.cart_item("u1", first, 2)
        await store.cart_item("u1", second, 3)
        orchestrator = slow_policy_orchestrator(session_factory, publisher)
        real_release = inventory.release_stock

        async def release_then_stall(session, content_id, order_id):
            result = await real_release(session, content_id, order_id)
            await asyncio.sleep(2)
            return result

        with sell_out_after_validation(store, second, 1), patch(
            "checkout_service.inventory.release_stock", release_then_stall
        ):
            outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.error.category == "stock"
        assert outcome.rollback_complete
        assert await store.stock(first) == 5
        assert await store.stock(second) == 1
        assert await store.orders() == []

    async def test_release_that_never_lands_is_reported(self, store, session_factory, publisher):
        first = await store.content(title="A", stock=5)
        second = await store.content(title="B", stock=5)
        await store.cart_item("u1", first, 2)
        await store.cart_item("u1", second, 3)
        orchestrator = slow_policy_orchestrator(session_factory, publisher)

        async def stall(session, content_id, order_id):
            await asyncio.sleep(2)

        with sell_out_after_validation(store, second, 1), patch(
            "checkout_service.inventory.release_stock", stall
        ):
            outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.error.category == "stock"
        assert not outcome.rollback_complete
        assert await store.stock(first) == 3
        assert await store.orders() == []


class TestCommitBoundary:
    async def test_confirmation_fault_rolls_back_before_cart_is_cleared(self, store, orchestrator):
        content_id = await store.content(stock=5)
        await store.cart_item("u1", content_id, 2)

        with patch(
            "checkout_service.orchestrator.CheckoutConfirmation", side_effect=RuntimeError("boom")
        ):
            outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.state is SagaState.FAILED
        assert outcome.error.category == "internal"
        assert outcome.rollback_complete
        assert await store.orders() == []
        assert await store.stock(content_id) == 5
        assert len(await store.cart_lines("u1")) == 1

    async def test_fault_after_commit_keeps_the_order(self, store, orchestrator, redis):
        content_id = await store.content(stock=5)
        await store.cart_item("u1", content_id, 2)

        with patch("checkout_service.orchestrator.CheckoutCommitted", side_effect=ValueError("bad event")):
            outcome = await orchestrator.execute("u1", checkout_request())

        assert outcome.success
        assert outcome.error is None
        [order] = await store.orders()
        assert order.id == outcome.confirmation.order_id
        assert await store.stock(content_id) == 3
        assert published(redis, CHECKOUT_CHANNEL) == []


class TestConcurrency:
    async def test_single_unit_race(self, store, orchestrator):
        content_id = await store.content(stock=1)
        await store.cart_item("alice", content_id, 1)
        await store.cart_item("bob", content_id, 1)

        outcomes = await asyncio.gather(
            orchestrator.execute("alice", checkout_request()),
            orchestrator.execute("bob", checkout_request()),
        )

        winners = [o for o in outcomes if o.success]
        losers = [o for o in outcomes if not o.success]
        assert len(winners) == 1
        assert len(losers) == 1
        assert losers[0].error.category == "stock"
        assert await store.stock(content_id) == 0
        [order] = await store.orders()
        assert order.id == winners[0].confirmation.order_id
        assert len(await store.order_items()) == 1
