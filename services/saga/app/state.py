"""
Saga Service — Saga インスタンスの永続化

Saga の進行状況をステップ単位で記録する。
発行の途中でプロセスが落ちても、どのステップが開始済みで
どの補償が届いたかを後から確認できる（定期スイープで回収する）。

  RUNNING ──▶ COMPLETED
     │
     └──▶ COMPENSATING ──▶ FAILED
"""

import json
import time
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from services.shared.errors import AlreadyExistsError, NotFoundError


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class SagaStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPENSATING = "COMPENSATING"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"


class SagaStep(str, Enum):
    RESERVE_INVENTORY = "RESERVE_INVENTORY"
    PROCESS_PAYMENT = "PROCESS_PAYMENT"


class StepStatus(str, Enum):
    STARTED = "STARTED"
    SUCCEEDED = "SUCCEEDED"
    COMPENSATED = "COMPENSATED"


class StepRecord(BaseModel):
    name: SagaStep
    status: StepStatus = StepStatus.STARTED


class SagaInstance(BaseModel):
    saga_id: str
    order_id: str
    status: SagaStatus = SagaStatus.RUNNING
    steps: list[StepRecord] = Field(default_factory=list)
    payload: dict = Field(default_factory=dict)
    failure_reason: str | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @classmethod
    def begin(cls, order: dict) -> "SagaInstance":
        saga_id = f"saga-{order['id']}-{int(time.time() * 1000)}"
        return cls(saga_id=saga_id, order_id=order["id"], payload=order)

    def record_started(self, step: SagaStep) -> None:
        self.steps.append(StepRecord(name=step))
        self.updated_at = _now()

    def started_steps(self) -> list[StepRecord]:
        """補償対象（開始済みで未補償）のステップを開始順に返す。"""
        return [s for s in self.steps if s.status is not StepStatus.COMPENSATED]

    def complete(self) -> None:
        for step in self.steps:
            step.status = StepStatus.SUCCEEDED
        self.status = SagaStatus.COMPLETED
        self.updated_at = _now()

    def begin_compensation(self) -> None:
        self.status = SagaStatus.COMPENSATING
        self.updated_at = _now()

    def fail(self, reason: str) -> None:
        self.status = SagaStatus.FAILED
        self.failure_reason = reason
        self.updated_at = _now()


def _from_row(row) -> SagaInstance:
    return SagaInstance(
        saga_id=row.saga_id,
        order_id=row.order_id,
        status=row.status,
        steps=json.loads(row.steps),
        payload=json.loads(row.payload),
        failure_reason=row.failure_reason,
        created_at=datetime.fromisoformat(row.created_at),
        updated_at=datetime.fromisoformat(row.updated_at),
    )


class SagaStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def create(self, saga: SagaInstance) -> SagaInstance:
        """注文ごとに Saga は1つ。同じ order_id が既にあれば AlreadyExistsError。"""
        async with self.session_factory() as session:
            try:
                await session.execute(
                    text("""
                        INSERT INTO saga_instances
                            (saga_id, order_id, status, steps, payload,
                             failure_reason, created_at, updated_at)
                        VALUES
                            (:saga_id, :order_id, :status, :steps, :payload,
                             :failure_reason, :created_at, :updated_at)
                    """),
                    {
                        "saga_id": saga.saga_id,
                        "order_id": saga.order_id,
                        "status": saga.status.value,
                        "steps": json.dumps(
                            [s.model_dump(mode="json") for s in saga.steps]
                        ),
                        "payload": json.dumps(saga.payload, default=str),
                        "failure_reason": saga.failure_reason,
                        "created_at": _iso(saga.created_at),
                        "updated_at": _iso(saga.updated_at),
                    },
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise AlreadyExistsError(
                    f"Saga already exists for order: {saga.order_id}",
                    {"order_id": saga.order_id},
                ) from e
        return saga

    async def save(self, saga: SagaInstance) -> SagaInstance:
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE saga_instances
                    SET status = :status, steps = :steps,
                        failure_reason = :failure_reason, updated_at = :updated_at
                    WHERE saga_id = :saga_id
                """),
                {
                    "status": saga.status.value,
                    "steps": json.dumps(
                        [s.model_dump(mode="json") for s in saga.steps]
                    ),
                    "failure_reason": saga.failure_reason,
                    "updated_at": _iso(saga.updated_at),
                    "saga_id": saga.saga_id,
                },
            )
            if result.rowcount == 0:
                await session.rollback()
                raise NotFoundError(
                    f"Saga not found: {saga.saga_id}", {"saga_id": saga.saga_id}
                )
            await session.commit()
        return saga

    async def get(self, saga_id: str) -> SagaInstance | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT * FROM saga_instances WHERE saga_id = :id"),
                {"id": saga_id},
            )
            row = result.fetchone()
        return _from_row(row) if row else None

    async def find_by_order(self, order_id: str) -> SagaInstance | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text(
                    "SELECT * FROM saga_instances WHERE order_id = :order_id "
                    "ORDER BY created_at ASC"
                ),
                {"order_id": order_id},
            )
            row = result.fetchone()
        return _from_row(row) if row else None

    async def list_stale(self, older_than: datetime) -> list[SagaInstance]:
        """RUNNING / COMPENSATING のまま older_than より前に止まっている Saga"""
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT * FROM saga_instances
                    WHERE status IN ('RUNNING', 'COMPENSATING')
                      AND updated_at < :cutoff
                    ORDER BY updated_at ASC
                """),
                {"cutoff": _iso(older_than)},
            )
            return [_from_row(row) for row in result.fetchall()]
