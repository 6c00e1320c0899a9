"""
Inventory Service — レスポンスエンベロープ

成功も失敗も JSON:API 形式の同じ文書構造で返す。

  成功: {"data": {...}, "meta": {...}, "jsonapi": {"version": "1.0"}}
  失敗: {"errors": [{"status": "404", "title": ..., "detail": ...}],
         "jsonapi": {"version": "1.0"}}
"""

from typing import Any

from pydantic import BaseModel, Field

from .errors import InventoryServiceError


class JsonApiError(BaseModel):
    status: str
    title: str
    detail: str | None = None


class JsonApiDocument(BaseModel):
    data: Any = None
    errors: list[JsonApiError] | None = None
    meta: dict[str, Any] | None = None
    jsonapi: dict[str, str] = Field(default_factory=lambda: {"version": "1.0"})

    def render(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def success(data: Any, meta: dict[str, Any] | None = None) -> dict[str, Any]:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    return JsonApiDocument(data=data, meta=meta).render()


def error(*errors: JsonApiError) -> dict[str, Any]:
    return JsonApiDocument(errors=list(errors)).render()


def from_exception(exc: InventoryServiceError) -> dict[str, Any]:
    return error(
        JsonApiError(status=str(exc.status), title=exc.title, detail=exc.detail)
    )
