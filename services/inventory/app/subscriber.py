"""
Inventory Service — Saga イベントのディスパッチ

Saga のイベントチャネルから受信したステップイベントを在庫ハンドラに渡す。
購読ループ自体は services.shared.subscriber が担う。
"""

import json
import logging

from . import handlers
from .commands import InventoryUpdateCoordinator

logger = logging.getLogger(__name__)


async def dispatch_message(
    coordinator: InventoryUpdateCoordinator, raw: str
) -> dict | None:
    event = json.loads(raw)
    event_type = event.get("event_type")
    event_data = event.get("data", {})
    result = await handlers.handle_event(coordinator, event_type, event_data)
    if result is not None:
        logger.info("Handled event %s: %s", event_type, result["status"])
    return result
