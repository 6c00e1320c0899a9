"""
Inventory Service — データモデル

StockRecord はローカルで永続化される唯一の状態。
ProductSummary は商品サービスが所有し、リクエストごとに取得して捨てる。
EnrichedInventory / Availability はレスポンス専用で永続化しない。
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class StockRecord(BaseModel):
    id: int | None = None
    product_id: int
    quantity: int = Field(ge=0)


class ProductSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    product_id: int
    name: str = Field(min_length=1)
    price: Decimal


class EnrichedInventory(BaseModel):
    """在庫数 + 商品情報。product が None の場合は縮退レスポンス。"""

    product_id: int
    quantity: int
    product: ProductSummary | None = None

    @property
    def degraded(self) -> bool:
        return self.product is None


class Availability(BaseModel):
    product_id: int
    required_quantity: int
    available_quantity: int
    is_available: bool
    product_name: str | None
