"""Tests for applying multi-item order updates to the ledger."""

import pytest

from services.inventory.app.commands import InventoryUpdateCoordinator
from services.inventory.app.events import Operation
from services.shared.errors import (
    AlreadyExistsError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)


class TestApplyOrderItems:
    async def test_deducts_every_item_and_publishes_one_event(
        self, coordinator, stocked, publisher, redis
    ):
        records = await coordinator.apply_order_items(
            [
                {"product_id": "sku-1", "quantity": 2},
                {"product_id": "sku-2", "quantity": 5},
            ]
        )
        await publisher.drain()

        assert {r.product_id: r.quantity for r in records} == {
            "sku-1": 3,
            "sku-2": 15,
        }
        assert redis.event_types() == ["InventoryUpdated"]
        (event,) = redis.events("InventoryUpdated")
        assert event["operation"] == "DEDUCT"
        assert {item["product_id"] for item in event["items"]} == {"sku-1", "sku-2"}

    async def test_restock_adds_quantities(self, coordinator, stocked, publisher, redis):
        await coordinator.apply_order_items(
            [{"product_id": "sku-1", "quantity": 4}], Operation.RESTOCK
        )
        await publisher.drain()

        assert (await stocked.get_item("sku-1")).quantity == 9
        assert redis.events("InventoryUpdated")[0]["operation"] == "RESTOCK"

    async def test_multi_item_update_is_not_atomic(
        self, coordinator, ledger, publisher, redis
    ):
        await ledger.create_item("A", 10)
        await ledger.create_item("B", 3)

        with pytest.raises(InsufficientStockError) as exc_info:
            await coordinator.apply_order_items(
                [
                    {"product_id": "A", "quantity": 5},
                    {"product_id": "B", "quantity": 1000},
                ]
            )
        await publisher.drain()

        assert exc_info.value.product_id == "B"
        # A stays deducted; the coordinator does not undo earlier successes.
        assert (await ledger.get_item("A")).quantity == 5
        assert (await ledger.get_item("B")).quantity == 3
        assert redis.event_types() == []

    async def test_unknown_product_surfaces_not_found(self, coordinator, stocked):
        with pytest.raises(NotFoundError):
            await coordinator.apply_order_items(
                [
                    {"product_id": "sku-1", "quantity": 1},
                    {"product_id": "nope", "quantity": 1},
                ]
            )

        assert (await stocked.get_item("sku-1")).quantity == 4

    async def test_publish_failure_does_not_roll_back_deduction(
        self, coordinator, stocked, publisher, redis, caplog
    ):
        redis.unreachable = True

        records = await coordinator.apply_order_items(
            [{"product_id": "sku-1", "quantity": 3}]
        )
        await publisher.drain()

        assert records[0].quantity == 2
        assert (await stocked.get_item("sku-1")).quantity == 2
        assert "Detached event publication failed" in caplog.text

    @pytest.mark.parametrize(
        "items",
        [
            [],
            None,
            [{"product_id": "sku-1", "quantity": 0}],
            [{"product_id": "", "quantity": 1}],
            [{"quantity": 1}],
        ],
    )
    async def test_rejects_invalid_items_before_writing(
        self, coordinator, stocked, items
    ):
        with pytest.raises(ValidationError):
            await coordinator.apply_order_items(items)

        assert (await stocked.get_item("sku-1")).quantity == 5

    async def test_low_stock_warning_when_threshold_crossed(
        self, ledger, publisher, redis, stocked
    ):
        coordinator = InventoryUpdateCoordinator(
            ledger, publisher, low_stock_threshold=2
        )

        await coordinator.apply_order_items(
            [
                {"product_id": "sku-1", "quantity": 4},
                {"product_id": "sku-2", "quantity": 1},
            ]
        )
        await publisher.drain()

        (warning,) = redis.events("LowStockWarning")
        assert warning["product_id"] == "sku-1"
        assert warning["quantity"] == 1


class TestOrderReservations:
    async def test_duplicate_lines_reserve_the_combined_quantity(
        self, coordinator, stocked, publisher, redis
    ):
        records = await coordinator.reserve_order_items(
            "order-1",
            [
                {"product_id": "sku-2", "quantity": 3},
                {"product_id": "sku-2", "quantity": 4},
            ],
        )
        await publisher.drain()

        assert [(r.product_id, r.quantity) for r in records] == [("sku-2", 13)]
        assert redis.events("InventoryUpdated")[0]["operation"] == "DEDUCT"

    async def test_redelivered_reservation_changes_nothing(
        self, coordinator, stocked, publisher, redis
    ):
        items = [{"product_id": "sku-1", "quantity": 2}]
        await coordinator.reserve_order_items("order-1", items)
        await publisher.drain()
        redis.published.clear()

        again = await coordinator.reserve_order_items("order-1", items)
        await publisher.drain()

        assert again == []
        assert (await stocked.get_item("sku-1")).quantity == 3
        assert redis.published == []

    async def test_release_after_partial_reservation_restores_only_what_was_taken(
        self, coordinator, ledger, publisher, redis
    ):
        await ledger.create_item("A", 10)
        await ledger.create_item("B", 3)
        with pytest.raises(InsufficientStockError):
            await coordinator.reserve_order_items(
                "order-1",
                [
                    {"product_id": "A", "quantity": 5},
                    {"product_id": "B", "quantity": 1000},
                ],
            )
        assert (await ledger.get_item("A")).quantity == 5

        restored = await coordinator.release_order_items("order-1")
        await publisher.drain()

        assert [(r.product_id, r.quantity) for r in restored] == [("A", 10)]
        assert (await ledger.get_item("B")).quantity == 3
        (event,) = redis.events("InventoryUpdated")
        assert event["operation"] == "RESTOCK"

    async def test_release_without_reservation_is_a_no_op(
        self, coordinator, stocked, publisher, redis
    ):
        assert await coordinator.release_order_items("order-unknown") == []
        await publisher.drain()

        assert (await stocked.get_item("sku-1")).quantity == 5
        assert redis.published == []


class TestCreateInventory:
    async def test_creates_item(self, coordinator, ledger):
        record = await coordinator.create_inventory("sku-9", 0)

        assert record.quantity == 0
        assert (await ledger.get_item("sku-9")).quantity == 0

    @pytest.mark.parametrize("product_id,quantity", [("", 1), ("sku-9", -1)])
    async def test_rejects_invalid_input(self, coordinator, product_id, quantity):
        with pytest.raises(ValidationError):
            await coordinator.create_inventory(product_id, quantity)

    async def test_duplicate_create_conflicts(self, coordinator, stocked):
        with pytest.raises(AlreadyExistsError):
            await coordinator.create_inventory("sku-1", 50)

        assert (await stocked.get_item("sku-1")).quantity == 5
