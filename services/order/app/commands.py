"""
Order Service — 注文ワークフロー (CQRS の Write 側)

注文作成:
  1. 入力を検証 (user_id 必須・明細は1件以上)
  2. 在庫の事前チェック（拘束力のない読み取り。実際の引き当ては
     在庫台帳の条件付き更新が行うため、ここを通っても在庫不足はあり得る）
  3. 注文を CREATED で保存
  4. OrderCreated を発行（デタッチ。発行失敗で作成は失敗しない）

在庫不足で拒否した場合に限り OrderFailed を発行する（ベストエフォート）。
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from uuid import uuid4

from services.inventory.app.ledger import InventoryLedger
from services.saga.app.orchestrator import OrderSagaOrchestrator
from services.saga.app.state import SagaInstance, SagaStatus
from services.shared.errors import (
    InsufficientStockError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from services.shared.event_bus import EventPublisher
from services.shared.models import LineItem, parse_line_items

from . import events
from .aggregate import OrderAggregate, OrderStatus
from .store import OrderStore

logger = logging.getLogger(__name__)


def validate_order_request(request: dict) -> tuple[str, list[LineItem], float]:
    user_id = request.get("user_id")
    items = request.get("items")
    if not user_id or not items:
        raise ValidationError("UserId and items are required")
    line_items = parse_line_items(items)

    total_amount = request.get("total_amount", 0)
    if isinstance(total_amount, bool) or not isinstance(total_amount, (int, float)):
        raise ValidationError("totalAmount must be a number")
    if total_amount < 0:
        raise ValidationError("totalAmount cannot be negative")
    return str(user_id), line_items, float(total_amount)


class OrderWorkflow:
    def __init__(
        self,
        store: OrderStore,
        inventory: InventoryLedger,
        publisher: EventPublisher,
        saga: OrderSagaOrchestrator | None = None,
    ) -> None:
        self.store = store
        self.inventory = inventory
        self.publisher = publisher
        self.saga = saga

    async def create_order(self, request: dict) -> OrderAggregate:
        """
        注文作成コマンド

        request に order_id があり、その注文が既に保存済みなら
        それをそのまま返す（トリガーからの再実行に安全）。
        """
        user_id, items, total_amount = validate_order_request(request)

        order_id = request.get("order_id")
        if order_id:
            existing = await self.store.get(order_id)
            if existing is not None:
                logger.info("Order %s already exists, skipping create", order_id)
                return existing
        else:
            order_id = str(uuid4())

        try:
            await self.check_inventory(items)
        except InsufficientStockError as e:
            self.publisher.publish_detached(
                events.order_failed(
                    self.publisher,
                    order_id,
                    "INSUFFICIENT_STOCK",
                    e.message,
                    user_id=user_id,
                    items=[item.model_dump() for item in items],
                )
            )
            raise

        now = datetime.now(timezone.utc)
        order = OrderAggregate(
            id=order_id,
            user_id=user_id,
            items=items,
            total_amount=total_amount,
            status=OrderStatus.CREATED,
            created_at=now,
            updated_at=now,
        )
        await self.store.save(order)
        logger.info("Order %s created for user %s", order.id, order.user_id)

        # レスポンスと競合する発行。失敗はパブリッシャーがログに記録する
        self.publisher.publish_detached(events.order_created(self.publisher, order))
        return order

    async def check_inventory(self, items: list[LineItem]) -> None:
        """
        在庫の事前チェック（非拘束）

        同じ商品が複数明細にある場合は合計数量で判定する。
        """
        required: dict[str, int] = defaultdict(int)
        for item in items:
            required[item.product_id] += item.quantity

        for product_id, quantity in required.items():
            record = await self.inventory.get_item(product_id)
            if record is None:
                raise NotFoundError(
                    f"Inventory not found for product: {product_id}",
                    {"product_id": product_id},
                )
            if record.quantity < quantity:
                raise InsufficientStockError(product_id, requested=quantity)

    async def place_order(
        self, request: dict
    ) -> tuple[OrderAggregate, SagaInstance]:
        """
        注文を作成し、フルフィルメント Saga を開始する。

        Saga の結果で注文ステータスを決める:
          COMPLETED → 注文 COMPLETED
          失敗      → Saga が補償済み。注文 FAILED にして例外を再送出
        """
        if self.saga is None:
            raise RuntimeError("OrderWorkflow was built without a saga orchestrator")

        order = await self.create_order(request)
        try:
            saga = await self.saga.start_saga(order.model_dump(mode="json"))
        except Exception as e:
            reason = e.message if isinstance(e, ServiceError) else str(e)
            try:
                await self.fail_order(order.id, reason or type(e).__name__)
            except Exception:
                logger.exception("Order %s could not be marked FAILED", order.id)
            raise

        if saga.status is SagaStatus.COMPLETED:
            order = await self._transition(order, OrderStatus.COMPLETED)
        return order, saga

    async def fail_order(self, order_id: str, reason: str) -> OrderAggregate:
        order = await self.store.get(order_id)
        if order is None:
            raise NotFoundError(f"Order not found: {order_id}", {"order_id": order_id})
        return await self._transition(order, OrderStatus.FAILED, reason)

    async def _transition(
        self, order: OrderAggregate, status: OrderStatus, reason: str | None = None
    ) -> OrderAggregate:
        if order.status is status:
            return order
        order.transition_to(status, reason)
        await self.store.update_status(order)
        logger.info("Order %s moved to %s", order.id, status.value)
        await self.publisher.publish_best_effort(
            events.order_updated(self.publisher, order)
        )
        return order
