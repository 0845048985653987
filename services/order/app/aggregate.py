"""
Order Service — 注文集約 (Order Aggregate)

状態遷移:
    CREATED → COMPLETED  (Saga の全ステップ成功)
    CREATED → FAILED     (在庫引き当て・決済の失敗 = 補償)
    COMPLETED → FAILED   (全ステップ開始後に決済失敗が届いた場合の補償)

それ以外の遷移は ConflictError。
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel

from services.shared.errors import ConflictError
from services.shared.models import LineItem


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"


ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.CREATED: {OrderStatus.COMPLETED, OrderStatus.FAILED},
    OrderStatus.COMPLETED: {OrderStatus.FAILED},
    OrderStatus.FAILED: set(),
}


class OrderAggregate(BaseModel):
    id: str
    user_id: str
    items: list[LineItem]
    total_amount: float
    status: OrderStatus = OrderStatus.CREATED
    failure_reason: str | None = None
    created_at: datetime
    updated_at: datetime

    def transition_to(self, status: OrderStatus, reason: str | None = None) -> None:
        if status == self.status:
            return
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise ConflictError(
                f"Order {self.id} cannot move from {self.status.value} to {status.value}",
                {"order_id": self.id},
            )
        self.status = status
        self.failure_reason = reason
        self.updated_at = datetime.now(timezone.utc)

    def mark_completed(self) -> None:
        self.transition_to(OrderStatus.COMPLETED)

    def mark_failed(self, reason: str) -> None:
        self.transition_to(OrderStatus.FAILED, reason)
