"""
Saga Orchestrator — 注文フルフィルメント Saga

Saga パターン（オーケストレーション型）:
  分散トランザクションは存在しない。各ステップの開始をイベントで通知し、
  失敗時は補償イベントを発行して整合性を回復する。

  フロー:
  ┌─────────────────────────────────────────────────────────┐
  │  1. InventoryReservationStarted を発行                   │
  │  2. PaymentProcessingStarted を発行                      │
  │     ├─ 全て成功 → COMPLETED                              │
  │     └─ 失敗    → COMPENSATING                            │
  │          開始済みステップを開始と逆順に補償               │
  │          (決済の補償は決済が実際に処理された場合のみ)     │
  │          最後に OrderFailed を1件発行 → FAILED            │
  └─────────────────────────────────────────────────────────┘

補償はベストエフォート: 補償イベントの発行に失敗してもログに残して
残りの補償を続ける。部分的に補償された Saga は記録されるが、
ここでは自動リトライしない（スイープで回収する）。
"""

import logging
from datetime import datetime, timedelta, timezone

from services.shared.errors import (
    AlreadyExistsError,
    EventPublishError,
    NotFoundError,
    PaymentError,
    TransientError,
)
from services.shared.event_bus import EventPublisher

from .state import SagaInstance, SagaStatus, SagaStep, SagaStore, StepStatus

logger = logging.getLogger(__name__)

SOURCE = "ecommerce.saga"

FORWARD_STEPS = [SagaStep.RESERVE_INVENTORY, SagaStep.PROCESS_PAYMENT]

# ステップ → (開始イベント, 補償イベント)
STEP_EVENTS: dict[SagaStep, tuple[str, str]] = {
    SagaStep.RESERVE_INVENTORY: (
        "InventoryReservationStarted",
        "InventoryCompensationStarted",
    ),
    SagaStep.PROCESS_PAYMENT: (
        "PaymentProcessingStarted",
        "PaymentCompensationStarted",
    ),
}


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(self, publisher: EventPublisher, store: SagaStore) -> None:
        self.publisher = publisher
        self.store = store

    async def start_saga(self, order: dict) -> SagaInstance:
        """
        Saga を開始し、各ステップの開始イベントを順に発行する。

        いずれかの発行に失敗した時点で残りのステップは打ち切り、
        補償を実行してから元の例外を送出する（補償自体が失敗しても元の例外）。
        同じ注文に対して既に Saga があればそれを返す（再実行・並行実行に安全）。
        """
        existing = await self.store.find_by_order(order["id"])
        if existing is not None:
            logger.info(
                "Saga %s already exists for order %s", existing.saga_id, order["id"]
            )
            return existing

        try:
            saga = await self.store.create(SagaInstance.begin(order))
        except AlreadyExistsError:
            # 同じ注文の Saga が並行して作られた。先に作られた方に任せる
            existing = await self.store.find_by_order(order["id"])
            logger.info(
                "Saga %s was started concurrently for order %s",
                existing.saga_id,
                order["id"],
            )
            return existing
        logger.info("Saga %s started for order %s", saga.saga_id, saga.order_id)

        try:
            for step in FORWARD_STEPS:
                started_event, _ = STEP_EVENTS[step]
                await self._publish(saga, started_event, order)
                saga.record_started(step)
                await self.store.save(saga)
        except Exception as e:
            logger.warning(
                "Saga %s failed during forward steps: %s", saga.saga_id, e
            )
            try:
                await self.compensate(saga.saga_id, order, e)
            except Exception:
                logger.exception("Saga %s compensation did not finish", saga.saga_id)
            raise

        saga.complete()
        await self.store.save(saga)
        logger.info("Saga %s completed", saga.saga_id)
        return saga

    async def compensate(
        self,
        saga_id: str,
        order: dict | None,
        cause: Exception,
    ) -> SagaInstance:
        """
        開始済みステップを逆順に補償し、最後に OrderFailed を発行する。

        決済の補償は cause が PaymentError かつ payment_processed の場合のみ。
        既に FAILED の Saga に対しては何もしない（冪等）。
        """
        saga = await self.store.get(saga_id)
        if saga is None:
            raise NotFoundError(f"Saga not found: {saga_id}", {"saga_id": saga_id})
        if saga.status is SagaStatus.FAILED:
            logger.info("Saga %s already compensated", saga_id)
            return saga

        order = order or saga.payload
        reason = str(cause) or type(cause).__name__
        payment_processed = isinstance(cause, PaymentError) and cause.payment_processed

        logger.warning(
            "Starting saga compensation: saga=%s order=%s reason=%s",
            saga_id,
            saga.order_id,
            reason,
        )
        saga.begin_compensation()
        await self.store.save(saga)

        for step in reversed(saga.started_steps()):
            if step.name is SagaStep.PROCESS_PAYMENT and not payment_processed:
                continue
            _, compensation_event = STEP_EVENTS[step.name]
            try:
                await self._publish(saga, compensation_event, order)
            except EventPublishError:
                logger.exception(
                    "Saga compensation step failed: saga=%s step=%s",
                    saga_id,
                    step.name.value,
                )
                continue
            step.status = StepStatus.COMPENSATED

        try:
            await self._publish(saga, "OrderFailed", order, reason=reason)
        except EventPublishError:
            logger.exception("Saga terminal OrderFailed was not delivered: %s", saga_id)

        saga.fail(reason)
        await self.store.save(saga)
        return saga

    async def sweep_stale_sagas(self, stale_after_seconds: int) -> list[SagaInstance]:
        """
        RUNNING / COMPENSATING のまま止まった Saga を補償して終わらせる。
        プロセスが Saga の途中で落ちた場合の回収用。
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_after_seconds)
        swept = []
        for saga in await self.store.list_stale(cutoff):
            swept.append(
                await self.compensate(
                    saga.saga_id, None, TransientError("Saga timed out")
                )
            )
        if swept:
            logger.info("Swept %d stale sagas", len(swept))
        return swept

    async def _publish(
        self, saga: SagaInstance, event_type: str, order: dict, **extra
    ) -> None:
        detail = {
            "saga_id": saga.saga_id,
            "order_id": saga.order_id,
            "user_id": order.get("user_id"),
            "items": order.get("items", []),
            "total_amount": order.get("total_amount"),
            **extra,
        }
        await self.publisher.publish(self.publisher.event(SOURCE, event_type, detail))
