"""
Order Service — クエリハンドラ (CQRS の Read 側)
"""

from services.shared.errors import NotFoundError

from .store import OrderStore


async def get_order(store: OrderStore, order_id: str) -> dict:
    order = await store.get(order_id)
    if order is None:
        raise NotFoundError(f"Order not found: {order_id}", {"order_id": order_id})
    return order.model_dump(mode="json")


async def list_orders(store: OrderStore) -> list[dict]:
    """全注文一覧を新しい順に返す。"""
    return [order.model_dump(mode="json") for order in await store.list_all()]
