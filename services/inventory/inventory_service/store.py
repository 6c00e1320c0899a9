"""
Inventory Service — 在庫ストア

product_id をキーとする在庫レコードの永続化。
コーディネーターは StockStore 抽象だけを知っていればよい。

  ┌─────────────────────┐
  │ InventoryCoordinator │
  └──────────┬──────────┘
             │ StockStore
     ┌───────┴────────┐
     ▼                ▼
  SqlStockStore   InMemoryStockStore
  (SQLAlchemy)    (ローカル実行・テスト用)

読み取り→書き込みの競合は compare_and_swap_quantity で検出する。
ストア自体はロックを公開しない。
"""

import abc
import asyncio
import logging
from contextlib import contextmanager

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    Integer,
    MetaData,
    Table,
    text,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import sessionmaker

from .errors import DuplicateInventory, UnexpectedError
from .models import StockRecord

logger = logging.getLogger(__name__)


class StockStore(abc.ABC):
    @abc.abstractmethod
    async def find_by_product_id(self, product_id: int) -> StockRecord | None: ...

    @abc.abstractmethod
    async def exists_by_product_id(self, product_id: int) -> bool: ...

    @abc.abstractmethod
    async def save(self, record: StockRecord) -> StockRecord:
        """product_id をキーとした upsert"""

    @abc.abstractmethod
    async def add(self, record: StockRecord) -> StockRecord:
        """新規挿入。product_id が既に存在すれば DuplicateInventory。"""

    @abc.abstractmethod
    async def compare_and_swap_quantity(
        self, product_id: int, expected: int, new: int
    ) -> bool:
        """現在値が expected の場合に限り new へ更新する。"""


# ── SQL 実装 ─────────────────────────────────────

metadata = MetaData()

inventories = Table(
    "inventories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", BigInteger, nullable=False, unique=True),
    Column("quantity", Integer, nullable=False),
    CheckConstraint("quantity >= 0", name="ck_inventories_quantity_non_negative"),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


@contextmanager
def _persistence_errors(operation: str):
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Stock store operation failed: %s", operation)
        raise UnexpectedError() from exc


class SqlStockStore(StockStore):
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def find_by_product_id(self, product_id: int) -> StockRecord | None:
        with _persistence_errors("find_by_product_id"):
            async with self._session_factory() as session:
                result = await session.execute(
                    text("""
                        SELECT id, product_id, quantity
                        FROM inventories
                        WHERE product_id = :product_id
                    """),
                    {"product_id": product_id},
                )
                row = result.fetchone()
        if not row:
            return None
        return StockRecord(id=row.id, product_id=row.product_id, quantity=row.quantity)

    async def exists_by_product_id(self, product_id: int) -> bool:
        with _persistence_errors("exists_by_product_id"):
            async with self._session_factory() as session:
                result = await session.execute(
                    text("SELECT 1 FROM inventories WHERE product_id = :product_id"),
                    {"product_id": product_id},
                )
                return result.first() is not None

    async def save(self, record: StockRecord) -> StockRecord:
        with _persistence_errors("save"):
            async with self._session_factory() as session:
                result = await session.execute(
                    text("""
                        INSERT INTO inventories (product_id, quantity)
                        VALUES (:product_id, :quantity)
                        ON CONFLICT (product_id)
                        DO UPDATE SET quantity = excluded.quantity
                        RETURNING id
                    """),
                    {"product_id": record.product_id, "quantity": record.quantity},
                )
                record_id = result.scalar_one()
                await session.commit()
        return record.model_copy(update={"id": record_id})

    async def add(self, record: StockRecord) -> StockRecord:
        with _persistence_errors("add"):
            async with self._session_factory() as session:
                try:
                    result = await session.execute(
                        text("""
                            INSERT INTO inventories (product_id, quantity)
                            VALUES (:product_id, :quantity)
                            RETURNING id
                        """),
                        {"product_id": record.product_id, "quantity": record.quantity},
                    )
                    record_id = result.scalar_one()
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    # 一意制約違反のときだけ重複とみなす。CHECK 違反などは内部エラー
                    existing = await session.execute(
                        text("SELECT 1 FROM inventories WHERE product_id = :product_id"),
                        {"product_id": record.product_id},
                    )
                    if existing.first() is not None:
                        raise DuplicateInventory(record.product_id) from exc
                    logger.exception("Stock store operation failed: add")
                    raise UnexpectedError() from exc
        return record.model_copy(update={"id": record_id})

    async def compare_and_swap_quantity(
        self, product_id: int, expected: int, new: int
    ) -> bool:
        with _persistence_errors("compare_and_swap_quantity"):
            async with self._session_factory() as session:
                result = await session.execute(
                    text("""
                        UPDATE inventories
                        SET quantity = :new
                        WHERE product_id = :product_id AND quantity = :expected
                    """),
                    {"product_id": product_id, "expected": expected, "new": new},
                )
                await session.commit()
                return result.rowcount == 1


# ── インメモリ実装 ───────────────────────────────


class InMemoryStockStore(StockStore):
    """1つの asyncio.Lock でレコード単位の原子性を保証する。"""

    def __init__(self) -> None:
        self._records: dict[int, StockRecord] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def find_by_product_id(self, product_id: int) -> StockRecord | None:
        async with self._lock:
            record = self._records.get(product_id)
            return record.model_copy() if record else None

    async def exists_by_product_id(self, product_id: int) -> bool:
        async with self._lock:
            return product_id in self._records

    async def save(self, record: StockRecord) -> StockRecord:
        async with self._lock:
            existing = self._records.get(record.product_id)
            if existing:
                stored = existing.model_copy(update={"quantity": record.quantity})
            else:
                stored = self._allocate(record)
            self._records[record.product_id] = stored
            return stored.model_copy()

    async def add(self, record: StockRecord) -> StockRecord:
        async with self._lock:
            if record.product_id in self._records:
                raise DuplicateInventory(record.product_id)
            stored = self._allocate(record)
            self._records[record.product_id] = stored
            return stored.model_copy()

    async def compare_and_swap_quantity(
        self, product_id: int, expected: int, new: int
    ) -> bool:
        async with self._lock:
            record = self._records.get(product_id)
            if record is None or record.quantity != expected:
                return False
            self._records[product_id] = record.model_copy(update={"quantity": new})
            return True

    def _allocate(self, record: StockRecord) -> StockRecord:
        stored = record.model_copy(update={"id": self._next_id})
        self._next_id += 1
        return stored
