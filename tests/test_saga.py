"""Tests for the order saga state machine and its compensation rules."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from services.saga.app.orchestrator import OrderSagaOrchestrator
from services.saga.app.state import (
    SagaInstance,
    SagaStatus,
    SagaStep,
    SagaStore,
    StepStatus,
)
from services.shared.errors import (
    AlreadyExistsError,
    EventPublishError,
    NotFoundError,
    PaymentError,
)

ORDER = {
    "id": "order-1",
    "user_id": "user-1",
    "items": [{"product_id": "sku-1", "quantity": 2}],
    "total_amount": 20.0,
}


class TestStartSaga:
    async def test_publishes_started_events_in_order(self, orchestrator, redis):
        saga = await orchestrator.start_saga(ORDER)

        assert saga.saga_id.startswith("saga-order-1-")
        assert saga.status is SagaStatus.COMPLETED
        assert redis.event_types() == [
            "InventoryReservationStarted",
            "PaymentProcessingStarted",
        ]
        for _, message in redis.published:
            assert message["source"] == "ecommerce.saga"
            assert message["data"]["saga_id"] == saga.saga_id
            assert message["data"]["items"] == ORDER["items"]
            assert "timestamp" in message["data"]

    async def test_persists_step_progress(self, orchestrator, saga_store):
        saga = await orchestrator.start_saga(ORDER)

        stored = await saga_store.get(saga.saga_id)
        assert stored.status is SagaStatus.COMPLETED
        assert [(s.name, s.status) for s in stored.steps] == [
            (SagaStep.RESERVE_INVENTORY, StepStatus.SUCCEEDED),
            (SagaStep.PROCESS_PAYMENT, StepStatus.SUCCEEDED),
        ]

    async def test_one_saga_per_order(self, orchestrator, redis):
        first = await orchestrator.start_saga(ORDER)
        second = await orchestrator.start_saga(ORDER)

        assert second.saga_id == first.saga_id
        assert len(redis.published) == 2

    async def test_concurrent_starts_share_one_saga(self, orchestrator, redis):
        first, second = await asyncio.gather(
            orchestrator.start_saga(ORDER), orchestrator.start_saga(ORDER)
        )

        assert first.saga_id == second.saga_id
        assert redis.event_types() == [
            "InventoryReservationStarted",
            "PaymentProcessingStarted",
        ]

    async def test_store_allows_one_saga_per_order(self, saga_store):
        await saga_store.create(SagaInstance.begin(ORDER))

        with pytest.raises(AlreadyExistsError):
            await saga_store.create(
                SagaInstance(saga_id="saga-order-1-other", order_id="order-1")
            )

    async def test_failed_step_short_circuits_and_compensates(
        self, orchestrator, saga_store, redis
    ):
        redis.fail_on.add("PaymentProcessingStarted")

        with pytest.raises(EventPublishError):
            await orchestrator.start_saga(ORDER)

        assert redis.event_types() == [
            "InventoryReservationStarted",
            "InventoryCompensationStarted",
            "OrderFailed",
        ]
        saga = await saga_store.find_by_order("order-1")
        assert saga.status is SagaStatus.FAILED
        assert saga.steps[0].status is StepStatus.COMPENSATED
        assert len(saga.steps) == 1

    async def test_first_step_failure_only_reports_order_failed(
        self, orchestrator, redis
    ):
        redis.fail_on.add("InventoryReservationStarted")

        with pytest.raises(EventPublishError):
            await orchestrator.start_saga(ORDER)

        assert redis.event_types() == ["OrderFailed"]
        assert "InventoryReservationStarted" in redis.events("OrderFailed")[0]["reason"]

    async def test_forward_error_survives_a_failed_compensation(
        self, publisher, session_factory, redis, caplog
    ):
        class UnreadableSagaStore(SagaStore):
            async def get(self, saga_id):
                raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        orchestrator = OrderSagaOrchestrator(
            publisher, UnreadableSagaStore(session_factory)
        )
        redis.fail_on.add("PaymentProcessingStarted")

        with pytest.raises(EventPublishError):
            await orchestrator.start_saga(ORDER)

        assert "compensation did not finish" in caplog.text


class TestCompensate:
    async def test_processed_payment_is_compensated_before_inventory(
        self, orchestrator, redis
    ):
        saga = await orchestrator.start_saga(ORDER)
        redis.published.clear()

        result = await orchestrator.compensate(
            saga.saga_id, ORDER, PaymentError("card declined", payment_processed=True)
        )

        assert redis.event_types() == [
            "PaymentCompensationStarted",
            "InventoryCompensationStarted",
            "OrderFailed",
        ]
        assert redis.events("OrderFailed")[0]["reason"] == "card declined"
        assert result.status is SagaStatus.FAILED
        assert result.failure_reason == "card declined"
        assert all(s.status is StepStatus.COMPENSATED for s in result.steps)

    async def test_unprocessed_payment_is_not_compensated(self, orchestrator, redis):
        saga = await orchestrator.start_saga(ORDER)
        redis.published.clear()

        await orchestrator.compensate(
            saga.saga_id, ORDER, PaymentError("gateway timeout")
        )

        assert redis.event_types() == ["InventoryCompensationStarted", "OrderFailed"]

    async def test_compensation_continues_past_publish_failures(
        self, orchestrator, saga_store, redis
    ):
        saga = await orchestrator.start_saga(ORDER)
        redis.published.clear()
        redis.fail_on.add("PaymentCompensationStarted")

        result = await orchestrator.compensate(
            saga.saga_id, None, PaymentError("refund needed", payment_processed=True)
        )

        assert redis.event_types() == ["InventoryCompensationStarted", "OrderFailed"]
        assert result.status is SagaStatus.FAILED
        stored = await saga_store.get(saga.saga_id)
        steps = {s.name: s.status for s in stored.steps}
        assert steps[SagaStep.PROCESS_PAYMENT] is StepStatus.SUCCEEDED
        assert steps[SagaStep.RESERVE_INVENTORY] is StepStatus.COMPENSATED

    async def test_saga_fails_even_when_terminal_event_is_lost(
        self, orchestrator, redis
    ):
        saga = await orchestrator.start_saga(ORDER)
        redis.unreachable = True

        result = await orchestrator.compensate(saga.saga_id, None, PaymentError("x"))

        assert result.status is SagaStatus.FAILED

    async def test_compensation_is_idempotent(self, orchestrator, redis):
        saga = await orchestrator.start_saga(ORDER)
        await orchestrator.compensate(saga.saga_id, ORDER, PaymentError("declined"))
        redis.published.clear()

        result = await orchestrator.compensate(
            saga.saga_id, ORDER, PaymentError("declined")
        )

        assert result.status is SagaStatus.FAILED
        assert redis.published == []

    async def test_unknown_saga(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.compensate("saga-missing", ORDER, PaymentError("x"))


class TestSweep:
    async def test_stale_running_saga_is_compensated(
        self, orchestrator, saga_store, redis
    ):
        stale = SagaInstance.begin(ORDER)
        stale.record_started(SagaStep.RESERVE_INVENTORY)
        stale.updated_at = datetime.now(timezone.utc) - timedelta(hours=1)
        await saga_store.create(stale)

        fresh = await orchestrator.start_saga({**ORDER, "id": "order-2"})
        redis.published.clear()

        swept = await orchestrator.sweep_stale_sagas(60)

        assert [s.saga_id for s in swept] == [stale.saga_id]
        assert redis.event_types() == ["InventoryCompensationStarted", "OrderFailed"]
        assert redis.events("OrderFailed")[0]["reason"] == "Saga timed out"
        assert (await saga_store.get(fresh.saga_id)).status is SagaStatus.COMPLETED
