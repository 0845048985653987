"""
Shared — データベース接続とスキーマ

各サービスは SQLAlchemy の非同期エンジンを lifespan で生成し、
操作ごとにセッションを開く。SQL は text() で直接記述する。

在庫テーブルの CHECK 制約は最後の防波堤で、
マイナス在庫の防止は台帳 (ledger) の条件付き UPDATE が担う。

引き当て記録 (inventory_reservations) は注文ごとに何をいくつ減らしたかを持つ。
補償ではこの記録にある分だけを戻す。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS inventory (
        product_id  TEXT PRIMARY KEY,
        quantity    INTEGER NOT NULL CHECK (quantity >= 0),
        created_at  TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_reservations (
        order_id    TEXT NOT NULL,
        product_id  TEXT NOT NULL,
        quantity    INTEGER NOT NULL CHECK (quantity > 0),
        created_at  TEXT NOT NULL,
        PRIMARY KEY (order_id, product_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id              TEXT PRIMARY KEY,
        user_id         TEXT NOT NULL,
        items           TEXT NOT NULL,
        total_amount    NUMERIC NOT NULL,
        status          TEXT NOT NULL,
        failure_reason  TEXT,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS saga_instances (
        saga_id         TEXT PRIMARY KEY,
        order_id        TEXT NOT NULL UNIQUE,
        status          TEXT NOT NULL,
        steps           TEXT NOT NULL,
        payload         TEXT NOT NULL,
        failure_reason  TEXT,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL
    )
    """,
)


def create_engine_and_sessions(
    database_url: str,
) -> tuple[AsyncEngine, sessionmaker]:
    engine = create_async_engine(database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, async_session


async def create_schema(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する（起動時・テスト用）。"""
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))
