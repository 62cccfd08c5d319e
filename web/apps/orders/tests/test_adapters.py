"""Tests for the in-process gateway stubs."""

from apps.orders.adapters import InventoryStub


def test_inventory_release_tolerates_double_release():
    inventory = InventoryStub(stock={"work-1": 3})
    assert inventory.reserve("work-1", 2) is True

    inventory.release("work-1", 2)
    inventory.release("work-1", 2)

    assert inventory.stock["work-1"] == 3
    assert inventory.released == [("work-1", 2), ("work-1", 2)]


def test_inventory_release_of_unreserved_stock_is_a_no_op():
    inventory = InventoryStub()

    inventory.release("work-1", 1)

    assert inventory.stock["work-1"] == 10
