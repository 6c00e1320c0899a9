"""
Inventory Service — エラー分類

すべての失敗はここで定義した型付きエラーのどれか1つとして表現される。
各クラスは境界層 (main.py) が JSON:API エラー文書に変換するための
HTTP ステータスとタイトルを持つ。
"""


class InventoryServiceError(Exception):
    """在庫サービスの基底エラー"""

    status: int = 500
    title: str = "Internal server error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class InventoryNotFound(InventoryServiceError):
    status = 404
    title = "Inventory not found"

    def __init__(self, product_id: int) -> None:
        super().__init__(f"Inventory not found for product ID: {product_id}")
        self.product_id = product_id


class InvalidArgument(InventoryServiceError):
    status = 400
    title = "Validation error"


class InsufficientStock(InventoryServiceError):
    status = 400
    title = "Insufficient stock"

    def __init__(self, product_id: int, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for product ID {product_id}. "
            f"Available: {available}, Requested: {requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class DuplicateInventory(InventoryServiceError):
    status = 409
    title = "Inventory already exists"

    def __init__(self, product_id: int) -> None:
        super().__init__(f"Inventory already exists for product ID: {product_id}")
        self.product_id = product_id


class ConcurrentModification(InventoryServiceError):
    """CAS が規定回数内に成功しなかった"""

    status = 409
    title = "Concurrent modification"

    def __init__(self, product_id: int, attempts: int) -> None:
        super().__init__(
            f"Inventory for product ID {product_id} was modified concurrently; "
            f"gave up after {attempts} attempts"
        )
        self.product_id = product_id


class UnexpectedError(InventoryServiceError):
    """内部例外のテキストは外に出さない"""

    status = 500
    title = "Internal server error"

    def __init__(
        self, detail: str = "An unexpected error occurred while processing the request"
    ) -> None:
        super().__init__(detail)


# ── 商品サービス連携エラー ───────────────────────


class ProductServiceError(InventoryServiceError):
    """
    商品サービスとの通信で発生したエラーの共通親クラス。
    コーディネーターは分類を変えずにそのまま上位へ伝播する。
    """


class ProductNotFound(ProductServiceError):
    status = 404
    title = "Product not found"

    def __init__(self, product_id: int) -> None:
        super().__init__(f"Product not found: {product_id}")
        self.product_id = product_id


class ProductServiceUnavailable(ProductServiceError):
    """一時的な失敗 (接続エラー・タイムアウト・2xx/404 以外)。リトライ対象。"""

    status = 503
    title = "Service unavailable"


class ProductResponseMalformed(ProductServiceError):
    """応答文書のデコード失敗。リトライしない。"""

    status = 503
    title = "Malformed product response"
