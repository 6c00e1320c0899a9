"""
Inventory Service — イベント定義

在庫ドメインで発生するイベント。
メッセージキューには流さず、専用ロガーに1行で書き出す (ログ型通知)。
"""

import logging
from datetime import datetime, timezone

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InventoryCreated(BaseModel):
    """在庫レコードが作成された"""
    product_id: int
    quantity: int
    timestamp: datetime = Field(default_factory=_now)


class InventoryQuantityChanged(BaseModel):
    """在庫数が変更された"""
    product_id: int
    previous_quantity: int
    new_quantity: int
    timestamp: datetime = Field(default_factory=_now)


def emit(event: BaseModel) -> None:
    logger.info(
        "[INVENTORY_EVENT] %s %s", type(event).__name__, event.model_dump_json()
    )
