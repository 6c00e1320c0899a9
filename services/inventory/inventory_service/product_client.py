"""
Inventory Service — 商品サービスクライアント

商品情報は別サービス (商品カタログ) が所有する。在庫サービスは
リクエストごとに HTTP で問い合わせ、応答文書を ProductSummary に変換する。

  ┌───────────────────┐   GET /api/productos/{id}   ┌─────────────────┐
  │ Inventory Service │ ─────────────────────────▶ │ Product Service │
  │                   │ ◀───── {"data": {...}} ─── │                 │
  └───────────────────┘        X-API-Key            └─────────────────┘

失敗の分類:
  - 404                      → ProductNotFound (リトライしない)
  - 2xx/404 以外, 通信エラー → ProductServiceUnavailable (リトライ対象)
  - 応答文書が想定外, 本文の復号失敗 → ProductResponseMalformed (リトライしない)

キャッシュもサーキットブレーカーも持たない。呼び出しごとに取得し直す。
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal

import httpx
from pydantic import BaseModel, Field, ValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .errors import (
    ProductNotFound,
    ProductResponseMalformed,
    ProductServiceUnavailable,
)
from .models import ProductSummary

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"


@dataclass(frozen=True)
class RetryPolicy:
    """リトライ方針。固定間隔で最大 max_attempts 回まで試行する。"""

    max_attempts: int = 3
    delay: float = 2.0
    retry_on: tuple[type[BaseException], ...] = (ProductServiceUnavailable,)

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.delay),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )


# ── 商品サービスの応答スキーマ ───────────────────


class ProductAttributes(BaseModel):
    nombre: str = Field(min_length=1)
    precio: Decimal = Field(allow_inf_nan=False)


class ProductData(BaseModel):
    # 文字列で送られてくる数値 ID
    id: str = Field(pattern=r"^[0-9]+$")
    type: str | None = None
    attributes: ProductAttributes


class ProductDocument(BaseModel):
    data: ProductData


def decode_product(payload: bytes | str) -> ProductSummary:
    """応答本文を ProductSummary に変換する。部分的な値で埋めることはしない。"""
    try:
        # 数値の precio を float 経由にせず Decimal として読む
        raw = json.loads(payload, parse_float=Decimal)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProductResponseMalformed("Product response is not valid JSON") from exc
    try:
        document = ProductDocument.model_validate(raw)
    except ValidationError as exc:
        raise ProductResponseMalformed(
            f"Could not convert product data: {exc.error_count()} invalid field(s)"
        ) from exc
    data = document.data
    return ProductSummary(
        product_id=int(data.id),
        name=data.attributes.nombre,
        price=data.attributes.precio,
    )


class RemoteProductClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 5.0,
        retry_policy: RetryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.retry_policy = retry_policy or RetryPolicy()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def __aenter__(self) -> "RemoteProductClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def product_url(self, product_id: int) -> str:
        return f"{self.base_url}/api/productos/{product_id}"

    async def fetch_product(self, product_id: int) -> ProductSummary:
        """
        商品を取得する。

        一時的な失敗は RetryPolicy に従って再試行し、使い切ったら最後の
        ProductServiceUnavailable を送出する。
        """
        async for attempt in self.retry_policy.retrying():
            with attempt:
                return await self._fetch_once(product_id)
        raise AssertionError("unreachable")  # reraise=True のため到達しない

    async def _fetch_once(self, product_id: int) -> ProductSummary:
        url = self.product_url(product_id)
        logger.info("Fetching product ID %s from %s", product_id, url)

        try:
            response = await self._http.get(url, headers={API_KEY_HEADER: self.api_key})
        except httpx.DecodingError as exc:
            logger.error("Could not decode product service response body: %s", exc)
            raise ProductResponseMalformed(
                "Could not decode product service response"
            ) from exc
        except httpx.RequestError as exc:
            logger.warning(
                "Timeout or connection error calling product service: %s", exc
            )
            raise ProductServiceUnavailable(
                "Error communicating with product service"
            ) from exc

        if response.status_code == 404:
            logger.warning("Product not found with ID: %s", product_id)
            raise ProductNotFound(product_id)
        if not response.is_success:
            logger.warning(
                "Product service responded with status %s for product ID %s",
                response.status_code,
                product_id,
            )
            raise ProductServiceUnavailable(
                f"Product service responded with status {response.status_code}"
            )

        try:
            product = decode_product(response.content)
        except ProductResponseMalformed:
            logger.error("Malformed product response for product ID %s", product_id)
            raise

        logger.info("Product fetched: %s", product)
        return product
