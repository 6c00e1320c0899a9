"""
Inventory Service — 在庫コーディネーター

ローカルの在庫ストアと商品サービスを組み合わせて問い合わせ・更新を行う。
各操作は呼び出しをまたぐ状態を持たない一方向のパイプライン:

  検証 → ローカル読み取り → (必要なら) 商品サービス → ローカル更新 → マージ

  ┌────────────────────────────────────────────────────────────┐
  │  query          : ストア → 商品サービス → マージ           │
  │  set_quantity   : ストア → 保存 → イベント → 商品サービス  │
  │  create         : 重複確認 → 商品サービス (存在確認) → 挿入│
  │  decrement      : query → 在庫確認 → CAS 更新              │
  │  increment      : query → CAS 更新                         │
  │  check_availability : query のみ (読み取り専用)            │
  └────────────────────────────────────────────────────────────┘

ローカル更新は確定 (コミット) として扱う。更新後に商品情報の取得が
失敗してもロールバックはせず、product=None の縮退レスポンスを返す。
"""

import logging
from typing import Protocol

from . import events
from .errors import (
    ConcurrentModification,
    DuplicateInventory,
    InsufficientStock,
    InvalidArgument,
    InventoryNotFound,
    ProductServiceError,
)
from .models import Availability, EnrichedInventory, ProductSummary, StockRecord
from .store import StockStore

logger = logging.getLogger(__name__)


class ProductClient(Protocol):
    async def fetch_product(self, product_id: int) -> ProductSummary: ...


def _require_int(name: str, value: object, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{name} must be an integer")
    if value < minimum:
        if minimum == 0:
            raise InvalidArgument(f"{name} cannot be negative")
        raise InvalidArgument(f"{name} must be greater than or equal to {minimum}")
    return value


class InventoryCoordinator:
    """在庫操作のオーケストレーター"""

    def __init__(
        self,
        store: StockStore,
        product_client: ProductClient,
        conflict_retries: int = 5,
    ):
        self.store = store
        self.product_client = product_client
        self.conflict_retries = conflict_retries

    # ── 読み取り ────────────────────────────────

    async def query(self, product_id: int) -> EnrichedInventory:
        logger.info("Querying inventory for product ID: %s", product_id)
        record = await self._require_record(product_id)

        # 商品サービスのエラーは分類を変えずに伝播する
        product = await self.product_client.fetch_product(product_id)

        logger.info(
            "Inventory queried: product=%s, quantity=%s", product.name, record.quantity
        )
        return EnrichedInventory(
            product_id=record.product_id, quantity=record.quantity, product=product
        )

    async def check_availability(
        self, product_id: int, required_quantity: int
    ) -> Availability:
        _require_int("required_quantity", required_quantity, 0)
        logger.info(
            "Checking availability of %s units for product ID: %s",
            required_quantity,
            product_id,
        )
        current = await self.query(product_id)
        return Availability(
            product_id=product_id,
            required_quantity=required_quantity,
            available_quantity=current.quantity,
            is_available=current.quantity >= required_quantity,
            product_name=current.product.name if current.product else None,
        )

    # ── 更新 ────────────────────────────────────

    async def set_quantity(
        self, product_id: int, new_quantity: int
    ) -> EnrichedInventory:
        _require_int("quantity", new_quantity, 0)
        logger.info(
            "Updating inventory for product ID: %s to quantity: %s",
            product_id,
            new_quantity,
        )
        record = await self._require_record(product_id)
        previous_quantity = record.quantity

        saved = await self.store.save(record.model_copy(update={"quantity": new_quantity}))
        events.emit(
            events.InventoryQuantityChanged(
                product_id=product_id,
                previous_quantity=previous_quantity,
                new_quantity=new_quantity,
            )
        )

        try:
            product = await self.product_client.fetch_product(product_id)
        except ProductServiceError as exc:
            # ローカル更新は確定済み。商品情報なしで返す。
            logger.warning(
                "Inventory for product ID %s updated but enrichment failed: %s",
                product_id,
                exc.detail,
            )
            product = None

        logger.info("Inventory updated for product ID: %s", product_id)
        return EnrichedInventory(
            product_id=saved.product_id, quantity=saved.quantity, product=product
        )

    async def create(self, product_id: int, initial_quantity: int) -> StockRecord:
        _require_int("product_id", product_id, 1)
        _require_int("initial_quantity", initial_quantity, 0)
        logger.info(
            "Creating inventory for product ID: %s with initial quantity: %s",
            product_id,
            initial_quantity,
        )

        if await self.store.exists_by_product_id(product_id):
            logger.warning("Inventory already exists for product ID: %s", product_id)
            raise DuplicateInventory(product_id)

        # 存在しない商品の在庫は作らない
        await self.product_client.fetch_product(product_id)

        created = await self.store.add(
            StockRecord(product_id=product_id, quantity=initial_quantity)
        )
        events.emit(
            events.InventoryCreated(product_id=product_id, quantity=initial_quantity)
        )
        logger.info("Inventory created for product ID: %s", product_id)
        return created

    async def decrement(self, product_id: int, amount: int) -> EnrichedInventory:
        _require_int("amount", amount, 1)
        logger.info(
            "Decrementing stock for product ID: %s by %s units", product_id, amount
        )
        current = await self.query(product_id)
        return await self._adjust(current, -amount)

    async def increment(self, product_id: int, amount: int) -> EnrichedInventory:
        _require_int("amount", amount, 1)
        logger.info(
            "Incrementing stock for product ID: %s by %s units", product_id, amount
        )
        current = await self.query(product_id)
        return await self._adjust(current, amount)

    # ── 内部処理 ────────────────────────────────

    async def _require_record(self, product_id: int) -> StockRecord:
        record = await self.store.find_by_product_id(product_id)
        if record is None:
            logger.warning("Inventory not found for product ID: %s", product_id)
            raise InventoryNotFound(product_id)
        return record

    async def _adjust(self, current: EnrichedInventory, delta: int) -> EnrichedInventory:
        """
        在庫数を delta だけ変更する。

        compare_and_swap_quantity で書き込み、他のリクエストとの競合を
        検出したらローカルの値を読み直して在庫チェックからやり直す。
        商品情報は最初の query で取得したものを使い回す。
        """
        product_id = current.product_id
        quantity = current.quantity

        for _ in range(self.conflict_retries):
            new_quantity = quantity + delta
            if new_quantity < 0:
                logger.warning(
                    "Insufficient stock for product ID %s: available=%s, requested=%s",
                    product_id,
                    quantity,
                    -delta,
                )
                raise InsufficientStock(product_id, quantity, -delta)

            if await self.store.compare_and_swap_quantity(
                product_id, quantity, new_quantity
            ):
                events.emit(
                    events.InventoryQuantityChanged(
                        product_id=product_id,
                        previous_quantity=quantity,
                        new_quantity=new_quantity,
                    )
                )
                logger.info("Inventory updated for product ID: %s", product_id)
                return EnrichedInventory(
                    product_id=product_id,
                    quantity=new_quantity,
                    product=current.product,
                )

            logger.info(
                "Concurrent update detected for product ID %s; retrying", product_id
            )
            quantity = (await self._require_record(product_id)).quantity

        raise ConcurrentModification(product_id, self.conflict_retries)
