"""
Inventory Service — クエリハンドラ (CQRS Read 側)
"""

from services.shared.errors import NotFoundError

from .ledger import InventoryLedger, InventoryRecord


async def get_inventory(ledger: InventoryLedger, product_id: str) -> InventoryRecord:
    record = await ledger.get_item(product_id)
    if record is None:
        raise NotFoundError(
            f"Inventory not found for product: {product_id}",
            {"product_id": product_id},
        )
    return record


async def list_inventory(ledger: InventoryLedger) -> list[dict]:
    return [r.model_dump(mode="json") for r in await ledger.list_items()]
