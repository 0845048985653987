"""
Order Service — イベント定義

イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime

from pydantic import BaseModel

from services.shared.event_bus import DomainEvent, EventPublisher
from services.shared.models import LineItem

from .aggregate import OrderAggregate

SOURCE = "ecommerce.orders"


class OrderCreated(BaseModel):
    """注文が作成された"""
    order_id: str
    user_id: str
    items: list[LineItem]
    total_amount: float
    created_at: datetime


class OrderFailed(BaseModel):
    """注文が失敗した（在庫不足・Saga の補償）"""
    order_id: str | None
    reason: str
    error: str | None = None


class OrderUpdated(BaseModel):
    """注文のステータスが変わった"""
    order_id: str
    status: str
    updated_at: datetime


def order_created(publisher: EventPublisher, order: OrderAggregate) -> DomainEvent:
    payload = OrderCreated(
        order_id=order.id,
        user_id=order.user_id,
        items=order.items,
        total_amount=order.total_amount,
        created_at=order.created_at,
    )
    return publisher.event(SOURCE, "OrderCreated", payload.model_dump(mode="json"))


def order_failed(
    publisher: EventPublisher,
    order_id: str | None,
    reason: str,
    error: str | None = None,
    **extra,
) -> DomainEvent:
    payload = OrderFailed(order_id=order_id, reason=reason, error=error)
    return publisher.event(
        SOURCE, "OrderFailed", {**extra, **payload.model_dump(mode="json")}
    )


def order_updated(publisher: EventPublisher, order: OrderAggregate) -> DomainEvent:
    payload = OrderUpdated(
        order_id=order.id, status=order.status.value, updated_at=order.updated_at
    )
    return publisher.event(SOURCE, "OrderUpdated", payload.model_dump(mode="json"))
