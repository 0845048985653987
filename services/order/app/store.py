"""
Order Service — 注文レコードストア

注文エンティティ（ステータス・明細・合計金額）を永続化する。
明細は JSON テキストとして1列に保存する。
"""

import json
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from services.shared.errors import AlreadyExistsError, NotFoundError

from .aggregate import OrderAggregate


def _from_row(row) -> OrderAggregate:
    return OrderAggregate(
        id=row.id,
        user_id=row.user_id,
        items=json.loads(row.items),
        total_amount=float(row.total_amount),
        status=row.status,
        failure_reason=row.failure_reason,
        created_at=datetime.fromisoformat(row.created_at),
        updated_at=datetime.fromisoformat(row.updated_at),
    )


class OrderStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def save(self, order: OrderAggregate) -> OrderAggregate:
        """新しい注文を保存する。同じ id が既にあれば AlreadyExistsError。"""
        async with self.session_factory() as session:
            try:
                await session.execute(
                    text("""
                        INSERT INTO orders
                            (id, user_id, items, total_amount, status,
                             failure_reason, created_at, updated_at)
                        VALUES
                            (:id, :user_id, :items, :total_amount, :status,
                             :failure_reason, :created_at, :updated_at)
                    """),
                    {
                        "id": order.id,
                        "user_id": order.user_id,
                        "items": json.dumps(
                            [item.model_dump() for item in order.items]
                        ),
                        "total_amount": order.total_amount,
                        "status": order.status.value,
                        "failure_reason": order.failure_reason,
                        "created_at": order.created_at.isoformat(),
                        "updated_at": order.updated_at.isoformat(),
                    },
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise AlreadyExistsError(
                    f"Order already exists: {order.id}", {"order_id": order.id}
                ) from e
        return order

    async def get(self, order_id: str) -> OrderAggregate | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT * FROM orders WHERE id = :id"),
                {"id": order_id},
            )
            row = result.fetchone()
        return _from_row(row) if row else None

    async def list_all(self) -> list[OrderAggregate]:
        async with self.session_factory() as session:
            result = await session.execute(
                text("SELECT * FROM orders ORDER BY created_at DESC"),
            )
            return [_from_row(row) for row in result.fetchall()]

    async def update_status(self, order: OrderAggregate) -> OrderAggregate:
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE orders
                    SET status = :status, failure_reason = :reason, updated_at = :now
                    WHERE id = :id
                """),
                {
                    "status": order.status.value,
                    "reason": order.failure_reason,
                    "now": order.updated_at.isoformat(),
                    "id": order.id,
                },
            )
            if result.rowcount == 0:
                await session.rollback()
                raise NotFoundError(
                    f"Order not found: {order.id}", {"order_id": order.id}
                )
            await session.commit()
        return order
