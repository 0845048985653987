"""
Shared — エラー分類 (Error Taxonomy)

各サービス境界で扱うエラーを閉じた種別 (ErrorKind) で表現する。
境界では文字列比較ではなく kind で分岐する。

  恒久的エラー (Permanent):
    VALIDATION / NOT_FOUND / INSUFFICIENT_STOCK / CONFLICT / PAYMENT
    → 境界で構造化された失敗結果に変換する（リトライしても無駄）
  一時的エラー (Transient):
    TRANSIENT
    → 再送出してトリガー側のリトライに任せる
"""

from enum import Enum

from fastapi import HTTPException


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    CONFLICT = "CONFLICT"
    PAYMENT = "PAYMENT"
    TRANSIENT = "TRANSIENT"

    @property
    def is_permanent(self) -> bool:
        return self is not ErrorKind.TRANSIENT


HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INSUFFICIENT_STOCK: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.PAYMENT: 402,
    ErrorKind.TRANSIENT: 503,
}


class ServiceError(Exception):
    """全サービス共通の基底エラー"""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def status_code(self) -> int:
        return HTTP_STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict:
        return {
            "error": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ServiceError):
    """入力が不正（4xx 相当、リトライしない）"""

    kind = ErrorKind.VALIDATION


class NotFoundError(ServiceError):
    """参照したエンティティが存在しない"""

    kind = ErrorKind.NOT_FOUND


class InsufficientStockError(ServiceError):
    """在庫の条件付き更新で数量ガードが失敗した"""

    kind = ErrorKind.INSUFFICIENT_STOCK

    def __init__(self, product_id: str, requested: int | None = None) -> None:
        super().__init__(
            f"Insufficient stock for product: {product_id}",
            {"product_id": product_id, "requested": requested},
        )
        self.product_id = product_id
        self.requested = requested


class ConflictError(ServiceError):
    kind = ErrorKind.CONFLICT


class AlreadyExistsError(ConflictError):
    """同じキーのレコードが既に存在する（冪等な作成ガード）"""


class PaymentError(ServiceError):
    """
    決済ステップの失敗。

    payment_processed が True の場合のみ、補償で決済の取り消しを発行する。
    ステップの位置からは推測しない。
    """

    kind = ErrorKind.PAYMENT

    def __init__(self, message: str, payment_processed: bool = False) -> None:
        super().__init__(message, {"payment_processed": payment_processed})
        self.payment_processed = payment_processed


class TransientError(ServiceError):
    """ストアやバスが一時的に利用できない（トリガー側でリトライ可能）"""

    kind = ErrorKind.TRANSIENT


class EventPublishError(TransientError):
    def __init__(self, event_type: str, cause: Exception | None = None) -> None:
        super().__init__(
            f"Failed to publish {event_type} event",
            {"event_type": event_type, "cause": str(cause) if cause else None},
        )
        self.event_type = event_type


def to_http_exception(error: ServiceError) -> HTTPException:
    """ServiceError を FastAPI の HTTPException に変換する。"""
    return HTTPException(status_code=error.status_code, detail=error.to_dict())


def failure_result(error: ServiceError, **extra) -> dict:
    """イベントトリガー向けの構造化された失敗結果"""
    return {
        "status": "FAILED",
        "kind": error.kind.value,
        "error": error.message,
        **extra,
    }
