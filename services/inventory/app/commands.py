"""
Inventory Service — 在庫更新コーディネーター (CQRS Write 側)

1つの注文に含まれる複数商品の在庫変更を適用する。

重要: 複数商品の更新は原子的ではない。
  明細ごとの条件付き更新を並行・独立に発行するため、
  5件中3件目が在庫不足で失敗しても 1〜2件目は既に確定している。
  このコンポーネントは成功分を元に戻さない。
  部分適用の補償は呼び出し側 (Saga) の責務。

Saga 経由の引き当ては reserve_order_items で行い、商品ごとに
引き当て記録を残す。補償の release_order_items は記録にある分だけを戻す。
"""

import asyncio
import logging
from collections import defaultdict

from services.shared.errors import ValidationError
from services.shared.event_bus import EventPublisher
from services.shared.models import parse_line_items

from . import events
from .events import Operation
from .ledger import InventoryLedger, InventoryRecord

logger = logging.getLogger(__name__)


class InventoryUpdateCoordinator:
    def __init__(
        self,
        ledger: InventoryLedger,
        publisher: EventPublisher,
        low_stock_threshold: int | None = None,
    ) -> None:
        self.ledger = ledger
        self.publisher = publisher
        self.low_stock_threshold = low_stock_threshold

    async def apply_order_items(
        self,
        items: list,
        operation: Operation = Operation.DEDUCT,
    ) -> list[InventoryRecord]:
        """
        注文明細を在庫台帳に適用する。

        1. 明細ごとに delta を計算 (DEDUCT は -quantity, RESTOCK は +quantity)
        2. 台帳の adjust_quantity を並行に発行（処理順序は保証しない）
        3. 失敗があれば最初の失敗を送出する（成功分はそのまま残る）
        4. 全件成功時のみ InventoryUpdated を1件だけ fire-and-forget で発行
        """
        line_items = parse_line_items(items)
        sign = -1 if operation is Operation.DEDUCT else 1

        results = await asyncio.gather(
            *(
                self.ledger.adjust_quantity(item.product_id, sign * item.quantity)
                for item in line_items
            ),
            return_exceptions=True,
        )
        updated = self._raise_first_failure(results, operation)
        self._announce(updated, operation)
        return updated

    async def reserve_order_items(
        self, order_id: str, items: list
    ) -> list[InventoryRecord]:
        """
        注文単位の引き当て。

        同じ商品の明細は合算してから1件の引き当てにする。
        既に引き当て済みの商品はスキップし、今回減算した分だけを返す。
        失敗時の扱いは apply_order_items と同じ（成功分は残る）。
        """
        required: dict[str, int] = defaultdict(int)
        for item in parse_line_items(items):
            required[item.product_id] += item.quantity

        results = await asyncio.gather(
            *(
                self.ledger.reserve(order_id, product_id, quantity)
                for product_id, quantity in required.items()
            ),
            return_exceptions=True,
        )
        applied = self._raise_first_failure(results, Operation.DEDUCT)
        updated = [r for r in applied if r is not None]
        if not updated:
            logger.info("Order %s is already reserved, nothing to deduct", order_id)
            return updated
        self._announce(updated, Operation.DEDUCT)
        return updated

    async def release_order_items(self, order_id: str) -> list[InventoryRecord]:
        """補償: 注文 order_id で引き当てた分だけ在庫を戻す。"""
        restored = await self.ledger.release(order_id)
        if restored:
            self._announce(restored, Operation.RESTOCK)
        else:
            logger.info("No reservation recorded for order %s", order_id)
        return restored

    async def create_inventory(self, product_id: str, quantity: int) -> InventoryRecord:
        if not product_id:
            raise ValidationError("productId and quantity are required")
        if not isinstance(quantity, int) or isinstance(quantity, bool):
            raise ValidationError("Quantity must be an integer")
        if quantity < 0:
            raise ValidationError("Quantity cannot be negative")
        return await self.ledger.create_item(product_id, quantity)

    def _raise_first_failure(self, results: list, operation: Operation) -> list:
        failures = [r for r in results if isinstance(r, BaseException)]
        applied = [r for r in results if not isinstance(r, BaseException)]
        if failures:
            logger.error(
                "%s partially applied: %d of %d items updated, first failure: %s",
                operation.value,
                len(applied),
                len(results),
                failures[0],
            )
            raise failures[0]
        return applied

    def _announce(self, updated: list[InventoryRecord], operation: Operation) -> None:
        self.publisher.publish_detached(
            events.inventory_updated(self.publisher, updated, operation)
        )
        if operation is Operation.DEDUCT and self.low_stock_threshold is not None:
            for record in updated:
                if record.quantity <= self.low_stock_threshold:
                    self.publisher.publish_detached(
                        events.low_stock_warning(self.publisher, record)
                    )
