"""InventoryCoordinator のテスト。

在庫の不変条件 (非負・減算時の在庫充足) と、商品サービスとの
連携時のエラー伝播・縮退レスポンスを検証する。
"""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from inventory_service.coordinator import InventoryCoordinator
from inventory_service.errors import (
    ConcurrentModification,
    DuplicateInventory,
    InsufficientStock,
    InvalidArgument,
    InventoryNotFound,
    ProductNotFound,
    ProductResponseMalformed,
    ProductServiceError,
    ProductServiceUnavailable,
)
from inventory_service.models import StockRecord
from inventory_service.store import InMemoryStockStore


# --- query ---


@pytest.mark.asyncio
async def test_query_merges_stock_and_product(coordinator, seed, laptop):
    await seed(1, 100)

    result = await coordinator.query(1)

    assert result.product_id == 1
    assert result.quantity == 100
    assert result.product == laptop
    assert not result.degraded


@pytest.mark.asyncio
async def test_query_unknown_product_never_calls_remote(coordinator, product_client):
    with pytest.raises(InventoryNotFound):
        await coordinator.query(999)

    assert product_client.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ProductNotFound(1),
        ProductServiceUnavailable("Error communicating with product service"),
        ProductResponseMalformed("Could not convert product data"),
    ],
)
async def test_query_propagates_product_errors_unchanged(
    coordinator, product_client, seed, error
):
    await seed(1, 10)
    product_client.error = error

    with pytest.raises(ProductServiceError) as exc_info:
        await coordinator.query(1)

    assert exc_info.value is error


# --- create ---


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity", [0, 1, 100, 10_000])
async def test_create_then_query_returns_exact_quantity(coordinator, quantity):
    created = await coordinator.create(1, quantity)

    assert created.id is not None
    assert created.quantity == quantity
    assert (await coordinator.query(1)).quantity == quantity


@pytest.mark.asyncio
async def test_create_unknown_product_is_rejected(coordinator, store):
    with pytest.raises(ProductNotFound):
        await coordinator.create(42, 5)

    assert await store.find_by_product_id(42) is None


@pytest.mark.asyncio
async def test_create_with_product_service_down_is_rejected(
    coordinator, product_client, store
):
    product_client.error = ProductServiceUnavailable("down")

    with pytest.raises(ProductServiceUnavailable):
        await coordinator.create(1, 5)

    assert not await store.exists_by_product_id(1)


@pytest.mark.asyncio
async def test_create_duplicate_is_rejected_before_remote_call(
    coordinator, product_client, seed
):
    await seed(1, 10)

    with pytest.raises(DuplicateInventory):
        await coordinator.create(1, 5)

    assert product_client.calls == []


@pytest.mark.asyncio
async def test_create_duplicate_from_store_race_surfaces_as_conflict(product_client):
    store = AsyncMock(spec=InMemoryStockStore)
    store.exists_by_product_id.return_value = False
    store.add.side_effect = DuplicateInventory(1)
    coordinator = InventoryCoordinator(store, product_client)

    with pytest.raises(DuplicateInventory):
        await coordinator.create(1, 5)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "product_id, quantity",
    [(1, -1), (0, 5), (-3, 5), (1, "10"), (1, None), (1, True)],
)
async def test_create_validates_before_io(coordinator, product_client, product_id, quantity):
    with pytest.raises(InvalidArgument):
        await coordinator.create(product_id, quantity)

    assert product_client.calls == []


# --- set_quantity ---


@pytest.mark.asyncio
async def test_set_quantity_persists_and_emits_event(coordinator, store, seed, caplog):
    await seed(1, 100)

    with caplog.at_level(logging.INFO, logger="inventory_service.events"):
        result = await coordinator.set_quantity(1, 40)

    assert result.quantity == 40
    assert (await store.find_by_product_id(1)).quantity == 40
    event_lines = [r.getMessage() for r in caplog.records if r.name == "inventory_service.events"]
    assert len(event_lines) == 1
    assert "InventoryQuantityChanged" in event_lines[0]
    assert '"previous_quantity":100' in event_lines[0]
    assert '"new_quantity":40' in event_lines[0]


@pytest.mark.asyncio
async def test_set_quantity_rejects_negative(coordinator, store, seed):
    await seed(1, 100)

    with pytest.raises(InvalidArgument):
        await coordinator.set_quantity(1, -5)

    assert (await store.find_by_product_id(1)).quantity == 100


@pytest.mark.asyncio
async def test_set_quantity_unknown_product(coordinator):
    with pytest.raises(InventoryNotFound):
        await coordinator.set_quantity(5, 1)


@pytest.mark.asyncio
async def test_set_quantity_keeps_commit_when_enrichment_fails(
    coordinator, product_client, store, seed
):
    await seed(1, 100)
    product_client.error = ProductServiceUnavailable("down")

    result = await coordinator.set_quantity(1, 60)

    assert result.quantity == 60
    assert result.product is None
    assert result.degraded
    assert (await store.find_by_product_id(1)).quantity == 60


# --- decrement / increment ---


@pytest.mark.asyncio
@pytest.mark.parametrize("q1, q2", [(0, 1), (3, 10), (70, 100), (0, 500)])
async def test_decrement_by_difference(coordinator, seed, q1, q2):
    await seed(1, q2)

    result = await coordinator.decrement(1, q2 - q1)

    assert result.quantity == q1


@pytest.mark.asyncio
async def test_decrement_more_than_available_leaves_state_unchanged(
    coordinator, store, seed, caplog
):
    await seed(1, 10)

    with caplog.at_level(logging.INFO, logger="inventory_service.events"):
        with pytest.raises(InsufficientStock) as exc_info:
            await coordinator.decrement(1, 11)

    assert exc_info.value.available == 10
    assert exc_info.value.requested == 11
    assert (await store.find_by_product_id(1)).quantity == 10
    assert not [r for r in caplog.records if r.name == "inventory_service.events"]


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -1])
async def test_decrement_and_increment_require_positive_amount(coordinator, seed, amount):
    await seed(1, 10)

    with pytest.raises(InvalidArgument):
        await coordinator.decrement(1, amount)
    with pytest.raises(InvalidArgument):
        await coordinator.increment(1, amount)


@pytest.mark.asyncio
async def test_increment_then_decrement_is_round_trip(coordinator, seed):
    await seed(1, 42)

    await coordinator.increment(1, 8)
    result = await coordinator.decrement(1, 8)

    assert result.quantity == 42


@pytest.mark.asyncio
async def test_decrement_does_not_mutate_when_product_service_fails(
    coordinator, product_client, store, seed
):
    await seed(1, 10)
    product_client.error = ProductServiceUnavailable("down")

    with pytest.raises(ProductServiceUnavailable):
        await coordinator.decrement(1, 1)

    assert (await store.find_by_product_id(1)).quantity == 10


@pytest.mark.asyncio
async def test_stock_scenario(coordinator, store, seed, laptop):
    await seed(1, 100)

    assert (await coordinator.decrement(1, 30)).quantity == 70
    with pytest.raises(InsufficientStock):
        await coordinator.decrement(1, 1000)
    assert (await store.find_by_product_id(1)).quantity == 70

    result = await coordinator.increment(1, 5)
    assert result.quantity == 75
    assert result.product == laptop


# --- concurrency ---


@pytest.mark.asyncio
async def test_concurrent_decrements_do_not_lose_updates(coordinator, store, seed):
    await seed(1, 100)

    await asyncio.gather(*(coordinator.decrement(1, 1) for _ in range(20)))

    assert (await store.find_by_product_id(1)).quantity == 80


@pytest.mark.asyncio
async def test_concurrent_decrements_never_go_negative(coordinator, store, seed):
    await seed(1, 5)

    results = await asyncio.gather(
        *(coordinator.decrement(1, 1) for _ in range(8)), return_exceptions=True
    )

    succeeded = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InsufficientStock)]
    assert len(succeeded) == 5
    assert len(rejected) == 3
    assert (await store.find_by_product_id(1)).quantity == 0


@pytest.mark.asyncio
async def test_concurrent_mixed_updates_are_serialized(coordinator, store, seed):
    await seed(1, 50)

    await asyncio.gather(
        *(coordinator.increment(1, 3) for _ in range(10)),
        *(coordinator.decrement(1, 2) for _ in range(10)),
    )

    assert (await store.find_by_product_id(1)).quantity == 60


@pytest.mark.asyncio
async def test_conflict_rechecks_stock_against_fresh_quantity(product_client, laptop):
    store = InMemoryStockStore()
    await store.save(StockRecord(product_id=1, quantity=5))
    coordinator = InventoryCoordinator(store, product_client)

    # query が 5 を読んだ後、CAS の前に別のリクエストが 4 個売った状態を作る
    original_cas = store.compare_and_swap_quantity
    interfered = False

    async def cas_with_interference(product_id, expected, new):
        nonlocal interfered
        if not interfered:
            interfered = True
            await store.save(StockRecord(product_id=1, quantity=1))
        return await original_cas(product_id, expected, new)

    store.compare_and_swap_quantity = cas_with_interference

    with pytest.raises(InsufficientStock) as exc_info:
        await coordinator.decrement(1, 3)

    assert exc_info.value.available == 1
    assert (await store.find_by_product_id(1)).quantity == 1


@pytest.mark.asyncio
async def test_persistent_conflict_gives_up(product_client, laptop):
    store = AsyncMock(spec=InMemoryStockStore)
    store.find_by_product_id.return_value = StockRecord(id=1, product_id=1, quantity=10)
    store.compare_and_swap_quantity.return_value = False
    coordinator = InventoryCoordinator(store, product_client, conflict_retries=3)

    with pytest.raises(ConcurrentModification):
        await coordinator.increment(1, 1)

    assert store.compare_and_swap_quantity.await_count == 3


# --- check_availability ---


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "required, expected", [(0, True), (1, True), (25, True), (26, False), (1000, False)]
)
async def test_check_availability(coordinator, seed, required, expected):
    await seed(1, 25)

    result = await coordinator.check_availability(1, required)

    assert result.is_available is expected
    assert result.available_quantity == 25
    assert result.required_quantity == required
    assert result.product_name == "Laptop HP"


@pytest.mark.asyncio
async def test_check_availability_is_read_only(coordinator, store, seed):
    await seed(1, 25)

    await coordinator.check_availability(1, 10)

    assert (await store.find_by_product_id(1)).quantity == 25


@pytest.mark.asyncio
async def test_check_availability_rejects_negative_requirement(coordinator, seed):
    await seed(1, 25)

    with pytest.raises(InvalidArgument):
        await coordinator.check_availability(1, -1)
