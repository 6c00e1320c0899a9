"""
Inventory Service — FastAPI エントリーポイント

在庫管理サービス。在庫数はローカル DB に持ち、商品情報 (名前・価格) は
商品サービスに問い合わせてレスポンスに付け加える。

  ┌────────┐     ┌───────────────────┐     ┌─────────────────┐
  │ Client │────▶│ Inventory Service │────▶│ Product Service │
  └────────┘     │  coordinator      │     └─────────────────┘
                 └─────────┬─────────┘
                           │
                  ┌────────▼────────┐
                  │  Inventory DB   │
                  └─────────────────┘

ルーティングは薄いラッパーで、処理はすべて InventoryCoordinator に委譲する。
"""

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import envelope
from .config import Settings
from .coordinator import InventoryCoordinator
from .errors import InventoryServiceError, UnexpectedError
from .product_client import RemoteProductClient, RetryPolicy
from .store import SqlStockStore, create_schema

logger = logging.getLogger(__name__)

JSON_API_MEDIA_TYPE = "application/vnd.api+json"


def create_app(
    settings: Settings | None = None,
    coordinator: InventoryCoordinator | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    coordinator を渡した場合は lifespan で DB や HTTP クライアントを作らない
    (テストから差し替える用途)。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if coordinator is not None:
            app.state.coordinator = coordinator
            yield
            return

        cfg = settings or Settings.from_env()
        logging.basicConfig(
            level=cfg.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        engine = create_async_engine(cfg.database_url, echo=False)
        async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        await create_schema(engine)

        product_client = RemoteProductClient(
            cfg.product_service_url,
            cfg.product_service_api_key,
            timeout=cfg.product_service_timeout,
            retry_policy=RetryPolicy(
                max_attempts=cfg.product_service_retry_attempts,
                delay=cfg.product_service_retry_delay,
            ),
        )
        app.state.coordinator = InventoryCoordinator(
            SqlStockStore(async_session),
            product_client,
            conflict_retries=cfg.conflict_retries,
        )
        logger.info("Inventory service started (product service: %s)", product_client.base_url)
        try:
            yield
        finally:
            await product_client.aclose()
            await engine.dispose()

    app = FastAPI(title="Inventory Service", lifespan=lifespan)
    if coordinator is not None:
        app.state.coordinator = coordinator

    _register_exception_handlers(app)
    app.include_router(_build_router())
    return app


# ── Request Models ───────────────────────────────


class UpdateQuantityRequest(BaseModel):
    quantity: int = Field(ge=0)


class CreateInventoryRequest(BaseModel):
    product_id: int = Field(gt=0)
    initial_quantity: int = Field(ge=0)


# ── Endpoints ────────────────────────────────────


def get_coordinator(request: Request) -> InventoryCoordinator:
    return request.app.state.coordinator


def _document(data, status_code: int = 200, meta: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=envelope.success(data, meta),
        media_type=JSON_API_MEDIA_TYPE,
    )


def _inventory_document(inventory) -> JSONResponse:
    meta = {"degraded": True} if inventory.degraded else None
    return _document(inventory, meta=meta)


def _build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/api/inventory/{product_id}")
    async def query_inventory(
        product_id: int, coordinator: InventoryCoordinator = Depends(get_coordinator)
    ):
        """在庫数と商品情報を取得"""
        return _inventory_document(await coordinator.query(product_id))

    @router.put("/api/inventory/{product_id}")
    async def update_inventory(
        product_id: int,
        req: UpdateQuantityRequest,
        coordinator: InventoryCoordinator = Depends(get_coordinator),
    ):
        """在庫数を上書き更新"""
        return _inventory_document(
            await coordinator.set_quantity(product_id, req.quantity)
        )

    @router.post("/api/inventory")
    async def create_inventory(
        req: CreateInventoryRequest,
        coordinator: InventoryCoordinator = Depends(get_coordinator),
    ):
        """在庫レコードを作成 (商品の存在確認つき)"""
        record = await coordinator.create(req.product_id, req.initial_quantity)
        return _document(record, status_code=201)

    @router.patch("/api/inventory/{product_id}/decrement")
    async def decrement_stock(
        product_id: int,
        amount: int = Query(ge=1),
        coordinator: InventoryCoordinator = Depends(get_coordinator),
    ):
        """販売などで在庫を減らす"""
        return _inventory_document(await coordinator.decrement(product_id, amount))

    @router.patch("/api/inventory/{product_id}/increment")
    async def increment_stock(
        product_id: int,
        amount: int = Query(ge=1),
        coordinator: InventoryCoordinator = Depends(get_coordinator),
    ):
        """入荷などで在庫を増やす"""
        return _inventory_document(await coordinator.increment(product_id, amount))

    @router.get("/api/inventory/{product_id}/availability")
    async def check_availability(
        product_id: int,
        required_quantity: int = Query(ge=0),
        coordinator: InventoryCoordinator = Depends(get_coordinator),
    ):
        """指定数量の在庫があるか確認"""
        availability = await coordinator.check_availability(product_id, required_quantity)
        return _document(availability)

    @router.get("/health")
    async def health():
        return {"status": "ok", "service": "inventory-service"}

    return router


# ── Exception Handlers ───────────────────────────


def _error_response(status_code: int, content: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content=content, media_type=JSON_API_MEDIA_TYPE
    )


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(InventoryServiceError)
    async def handle_service_error(request: Request, exc: InventoryServiceError):
        if exc.status >= 500:
            logger.error("%s: %s", exc.title, exc.detail)
        else:
            logger.warning("%s: %s", exc.title, exc.detail)
        return _error_response(exc.status, envelope.from_exception(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = [
            envelope.JsonApiError(
                status="400",
                title="Validation error",
                detail=f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}",
            )
            for err in exc.errors()
        ]
        logger.warning("Validation error: %s", [e.detail for e in errors])
        return _error_response(400, envelope.error(*errors))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception("Unexpected error")
        return _error_response(500, envelope.from_exception(UnexpectedError()))


app = create_app()
