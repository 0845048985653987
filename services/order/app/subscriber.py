"""
Order Service — Saga イベントのディスパッチ

Saga が補償の最後に発行する OrderFailed を受けて注文を FAILED にする。
補償が place_order 以外（補償 API・スイープ）から始まっても、
注文ステータスは Saga の結果に追従する。

Order Service 自身が在庫不足で発行する OrderFailed は対象外（source で区別）。
"""

import json
import logging

from services.saga.app.orchestrator import SOURCE as SAGA_SOURCE
from services.shared.errors import NotFoundError

from .aggregate import OrderAggregate
from .commands import OrderWorkflow

logger = logging.getLogger(__name__)


async def dispatch_message(workflow: OrderWorkflow, raw: str) -> OrderAggregate | None:
    event = json.loads(raw)
    if event.get("event_type") != "OrderFailed" or event.get("source") != SAGA_SOURCE:
        return None

    data = event.get("data", {})
    order_id = data.get("order_id")
    reason = data.get("reason") or "Saga failed"
    try:
        order = await workflow.fail_order(order_id, reason)
    except NotFoundError:
        logger.warning("Saga reported failure for unknown order %s", order_id)
        return None
    logger.info("Order %s failed by saga %s", order_id, data.get("saga_id"))
    return order
