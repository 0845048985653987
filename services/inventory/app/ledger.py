"""
Inventory Service — 在庫台帳 (Inventory Ledger)

商品ごとの在庫数を保持する唯一の正本。
数量の減算は必ず次の条件付き UPDATE を通る
(adjust_quantity と注文単位の reserve が共有する)。

  UPDATE inventory
     SET quantity = quantity + :delta
   WHERE product_id = :id AND quantity + :delta >= 0

チェックと書き込みが1文で原子的に行われるため、
読んでから書くまでの競合ウィンドウが存在しない。
同じ商品への同時減算はストアの行ロックで直列化され、
別の商品への更新は並列に進む。

Saga からの引き当ては (order_id, product_id) ごとに記録する。
再配送された引き当ては記録済みとしてスキップし、
補償 (release) は記録にある数量だけを戻して記録を消す。
"""

import logging
from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from services.shared.errors import (
    AlreadyExistsError,
    InsufficientStockError,
    NotFoundError,
    ServiceError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class InventoryRecord(BaseModel):
    product_id: str
    quantity: int
    updated_at: datetime

    @classmethod
    def from_row(cls, row) -> "InventoryRecord":
        return cls(
            product_id=row.product_id,
            quantity=row.quantity,
            updated_at=datetime.fromisoformat(row.updated_at),
        )


class InventoryLedger:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def get_item(self, product_id: str) -> InventoryRecord | None:
        async with self.session_factory() as session:
            result = await session.execute(
                text(
                    "SELECT product_id, quantity, updated_at "
                    "FROM inventory WHERE product_id = :id"
                ),
                {"id": product_id},
            )
            row = result.fetchone()
        return InventoryRecord.from_row(row) if row else None

    async def list_items(self) -> list[InventoryRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                text(
                    "SELECT product_id, quantity, updated_at "
                    "FROM inventory ORDER BY product_id"
                ),
            )
            return [InventoryRecord.from_row(row) for row in result.fetchall()]

    async def create_item(self, product_id: str, quantity: int) -> InventoryRecord:
        """
        在庫レコードを作成する。

        既に同じ product_id がある場合は AlreadyExistsError。
        既存レコードの数量には一切触れない。
        """
        if quantity < 0:
            raise ValidationError(
                "Quantity cannot be negative", {"product_id": product_id}
            )
        now = datetime.now(timezone.utc).isoformat()
        async with self.session_factory() as session:
            try:
                await session.execute(
                    text("""
                        INSERT INTO inventory (product_id, quantity, created_at, updated_at)
                        VALUES (:id, :qty, :now, :now)
                    """),
                    {"id": product_id, "qty": quantity, "now": now},
                )
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise AlreadyExistsError(
                    f"Inventory item already exists for product: {product_id}",
                    {"product_id": product_id},
                ) from e

        logger.info("Inventory item created: %s (quantity=%d)", product_id, quantity)
        return InventoryRecord(
            product_id=product_id,
            quantity=quantity,
            updated_at=datetime.fromisoformat(now),
        )

    async def adjust_quantity(self, product_id: str, delta: int) -> InventoryRecord:
        """
        在庫数を delta だけ原子的に増減する。

        減算 (delta < 0) は quantity >= |delta| のときだけ成功する。
        条件不成立時はクランプせずに拒否する:
          - レコードが無い       → NotFoundError
          - 在庫が足りない       → InsufficientStockError
        """
        async with self.session_factory() as session:
            row = await _conditional_update(session, product_id, delta)
            if row is not None:
                await session.commit()
                return InventoryRecord.from_row(row)
            error = await _rejection(session, product_id, delta)
            await session.rollback()
        raise error

    async def reserve(
        self, order_id: str, product_id: str, quantity: int
    ) -> InventoryRecord | None:
        """
        注文 order_id の分として product_id を quantity だけ引き当てる。

        引き当て記録の INSERT と条件付き減算を同じトランザクションで行う。
        (order_id, product_id) が既に記録済みなら在庫には触れず None を返す。
        減算が拒否された場合は記録も残らない。
        """
        now = datetime.now(timezone.utc).isoformat()
        async with self.session_factory() as session:
            try:
                await session.execute(
                    text("""
                        INSERT INTO inventory_reservations
                            (order_id, product_id, quantity, created_at)
                        VALUES (:order_id, :product_id, :qty, :now)
                    """),
                    {
                        "order_id": order_id,
                        "product_id": product_id,
                        "qty": quantity,
                        "now": now,
                    },
                )
            except IntegrityError:
                await session.rollback()
                logger.info(
                    "Reservation already recorded: order=%s product=%s",
                    order_id,
                    product_id,
                )
                return None

            row = await _conditional_update(session, product_id, -quantity)
            if row is not None:
                await session.commit()
                return InventoryRecord.from_row(row)
            error = await _rejection(session, product_id, -quantity)
            await session.rollback()
        raise error

    async def release(self, order_id: str) -> list[InventoryRecord]:
        """
        注文 order_id の引き当て記録を削除し、記録されていた数量だけ在庫を戻す。

        記録が無ければ何もしない。2回目以降の呼び出しは空リストを返す。
        """
        now = datetime.now(timezone.utc).isoformat()
        restored = []
        async with self.session_factory() as session:
            result = await session.execute(
                text("""
                    DELETE FROM inventory_reservations
                    WHERE order_id = :order_id
                    RETURNING product_id, quantity
                """),
                {"order_id": order_id},
            )
            for reservation in result.fetchall():
                updated = await session.execute(
                    text("""
                        UPDATE inventory
                        SET quantity = quantity + :qty, updated_at = :now
                        WHERE product_id = :id
                        RETURNING product_id, quantity, updated_at
                    """),
                    {
                        "qty": reservation.quantity,
                        "now": now,
                        "id": reservation.product_id,
                    },
                )
                restored.append(InventoryRecord.from_row(updated.fetchone()))
            await session.commit()

        if restored:
            logger.info(
                "Released reservation for order %s (%d items)", order_id, len(restored)
            )
        return restored


async def _conditional_update(session, product_id: str, delta: int):
    result = await session.execute(
        text("""
            UPDATE inventory
            SET quantity = quantity + :delta, updated_at = :now
            WHERE product_id = :id AND quantity + :delta >= 0
            RETURNING product_id, quantity, updated_at
        """),
        {
            "delta": delta,
            "now": datetime.now(timezone.utc).isoformat(),
            "id": product_id,
        },
    )
    return result.fetchone()


async def _rejection(session, product_id: str, delta: int) -> ServiceError:
    # 条件が成立しなかった。原因を区別するためにキーの有無だけ確認する。
    # レコードは削除されないので、この読み取りが判定と競合することはない。
    exists = await session.execute(
        text("SELECT 1 FROM inventory WHERE product_id = :id"),
        {"id": product_id},
    )
    if exists.fetchone() is None:
        return NotFoundError(
            f"Inventory not found for product: {product_id}",
            {"product_id": product_id},
        )
    logger.warning("Conditional update rejected for %s (delta=%d)", product_id, delta)
    return InsufficientStockError(product_id, requested=-delta)
