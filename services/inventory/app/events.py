"""
Inventory Service — イベント定義

在庫ドメインで発生するイベント。どちらも通知目的で、
発行の失敗が在庫更新を失敗させることはない。
"""

from enum import Enum

from pydantic import BaseModel

from services.shared.event_bus import DomainEvent, EventPublisher

from .ledger import InventoryRecord

SOURCE = "ecommerce.inventory"


class Operation(str, Enum):
    DEDUCT = "DEDUCT"
    RESTOCK = "RESTOCK"


class InventoryUpdated(BaseModel):
    """注文に対する在庫更新がすべて適用された"""
    items: list[InventoryRecord]
    operation: Operation


class LowStockWarning(BaseModel):
    """在庫数が閾値以下になった"""
    product_id: str
    quantity: int


def inventory_updated(
    publisher: EventPublisher,
    records: list[InventoryRecord],
    operation: Operation,
) -> DomainEvent:
    payload = InventoryUpdated(items=records, operation=operation)
    return publisher.event(SOURCE, "InventoryUpdated", payload.model_dump(mode="json"))


def low_stock_warning(publisher: EventPublisher, record: InventoryRecord) -> DomainEvent:
    payload = LowStockWarning(product_id=record.product_id, quantity=record.quantity)
    return publisher.event(SOURCE, "LowStockWarning", payload.model_dump(mode="json"))
