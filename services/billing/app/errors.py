"""
Billing Service — エラー定義

ビジネスルール違反はクライアントに原因が分かる形で返す。
status_code は HTTP レスポンスへの対応付けに使う。
"""


class BillingError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(BillingError):
    """入力不正（副作用は一切発生していない）"""

    status_code = 400

    def __init__(self, errors: list[dict]) -> None:
        self.errors = errors
        summary = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        super().__init__(f"Validation failed: {summary}")

    def to_dict(self) -> dict:
        return {"error": self.message, "errors": self.errors}


class DuplicateError(BillingError):
    status_code = 400


class ConflictError(BillingError):
    status_code = 409


class CustomerNotFoundError(BillingError):
    status_code = 404

    def __init__(self, customer_id: str) -> None:
        self.customer_id = customer_id
        super().__init__(f"Customer {customer_id} not found")


class ProductNotFoundError(BillingError):
    status_code = 404

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(f"Product with ID {product_id} not found")

    def to_dict(self) -> dict:
        return {"error": self.message, "productId": self.product_id}


class InsufficientStockError(BillingError):
    """在庫不足 — 要求数と在庫数を保持する"""

    status_code = 400

    def __init__(
        self,
        product_id: str,
        requested: int,
        available: int,
        product_name: str | None = None,
    ) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.product_name = product_name
        label = product_name or product_id
        super().__init__(
            f"Not enough stock for product {label}. "
            f"Available: {available}, Requested: {requested}"
        )

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "productId": self.product_id,
            "requested": self.requested,
            "available": self.available,
        }


class InvoiceNotFoundError(BillingError):
    status_code = 404

    def __init__(self, invoice_id: str) -> None:
        self.invoice_id = invoice_id
        super().__init__(f"Invoice {invoice_id} not found")


class AllocatorUnavailableError(BillingError):
    """採番ストアに到達できない（請求書作成は中断）"""


class PersistenceError(BillingError):
    pass


class TransactionTimeoutError(BillingError):
    status_code = 504


class NotificationError(BillingError):
    """通知失敗 — ログに残すだけで呼び出し元には返さない"""
