from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
import respx

from inventory_service.coordinator import InventoryCoordinator
from inventory_service.errors import ProductNotFound
from inventory_service.models import ProductSummary, StockRecord
from inventory_service.store import InMemoryStockStore

PRODUCT_SERVICE_URL = "http://products.test"
API_KEY = "test-api-key"


class FakeProductClient:
    """商品サービスの代役。呼び出し回数を記録し、毎回イベントループに制御を返す。"""

    def __init__(self, products: dict[int, ProductSummary] | None = None):
        self.products = products or {}
        self.error: Exception | None = None
        self.calls: list[int] = []

    async def fetch_product(self, product_id: int) -> ProductSummary:
        self.calls.append(product_id)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        try:
            return self.products[product_id]
        except KeyError:
            raise ProductNotFound(product_id) from None


def product_document(
    product_id: object = "1", nombre: object = "Laptop HP", precio: object = "1500.00"
) -> dict:
    return {
        "data": {
            "type": "productos",
            "id": product_id,
            "attributes": {"nombre": nombre, "precio": precio},
        }
    }


@pytest.fixture
def laptop() -> ProductSummary:
    return ProductSummary(product_id=1, name="Laptop HP", price=Decimal("1500.00"))


@pytest.fixture
def product_client(laptop) -> FakeProductClient:
    return FakeProductClient({1: laptop})


@pytest.fixture
def store() -> InMemoryStockStore:
    return InMemoryStockStore()


@pytest.fixture
def coordinator(store, product_client) -> InventoryCoordinator:
    return InventoryCoordinator(store, product_client, conflict_retries=50)


@pytest.fixture
def seed(store):
    """在庫レコードを直接ストアに投入する。"""

    async def _seed(product_id: int = 1, quantity: int = 100) -> StockRecord:
        return await store.save(StockRecord(product_id=product_id, quantity=quantity))

    return _seed


@pytest.fixture
def respx_mock():
    with respx.mock(base_url=PRODUCT_SERVICE_URL, assert_all_called=False) as router:
        yield router
