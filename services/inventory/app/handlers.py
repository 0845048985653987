"""
Inventory Service — イベントトリガーのハンドラ

Saga のステップイベントを受けて在庫を更新する。

  InventoryReservationStarted   → 在庫を引き当て (DEDUCT)
  InventoryCompensationStarted  → 引き当てた在庫を戻す (RESTOCK, 補償)

引き当ては注文ごとに記録されるため、同じイベントが再配送されても
二重に減算・返却されない。

エラー方針:
  恒久的エラー (入力不正・商品なし・在庫不足) は構造化された FAILED 結果を返す。
  同じ入力で再実行しても結果は変わらないため、トリガー側にリトライさせない。
  一時的エラーは再送出してトリガー側のリトライに任せる。
"""

import logging
from typing import Awaitable, Callable

from services.shared.errors import ServiceError, ValidationError, failure_result

from .commands import InventoryUpdateCoordinator
from .events import Operation

logger = logging.getLogger(__name__)


async def _run(
    operation: Operation,
    order_id: str | None,
    apply: Callable[[], Awaitable[list]],
) -> dict:
    try:
        if not order_id:
            raise ValidationError("Invalid order data in event: order_id is required")
        updated = await apply()
    except ServiceError as e:
        if not e.kind.is_permanent:
            raise
        logger.warning(
            "Inventory %s failed - order %s may need compensation: %s",
            operation.value,
            order_id,
            e.message,
        )
        return failure_result(e, order_id=order_id)

    logger.info(
        "Inventory %s applied for order %s (%d items)",
        operation.value,
        order_id,
        len(updated),
    )
    return {"status": "SUCCESS", "order_id": order_id, "updated_items": len(updated)}


async def update_inventory_handler(
    coordinator: InventoryUpdateCoordinator, detail: dict
) -> dict:
    order_id = detail.get("order_id")
    return await _run(
        Operation.DEDUCT,
        order_id,
        lambda: coordinator.reserve_order_items(order_id, detail.get("items")),
    )


async def restock_inventory_handler(
    coordinator: InventoryUpdateCoordinator, detail: dict
) -> dict:
    """補償: この注文で引き当てた分だけ在庫を戻す。イベントの明細は使わない。"""
    order_id = detail.get("order_id")
    return await _run(
        Operation.RESTOCK,
        order_id,
        lambda: coordinator.release_order_items(order_id),
    )


HANDLERS = {
    "InventoryReservationStarted": update_inventory_handler,
    "InventoryCompensationStarted": restock_inventory_handler,
}


async def handle_event(
    coordinator: InventoryUpdateCoordinator, event_type: str, detail: dict
) -> dict | None:
    """イベントタイプに応じたハンドラを呼び出す。対象外のイベントは無視する。"""
    handler = HANDLERS.get(event_type)
    if handler is None:
        return None
    return await handler(coordinator, detail)
