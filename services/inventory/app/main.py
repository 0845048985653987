"""
Inventory Service — FastAPI エントリーポイント

在庫台帳と在庫更新コーディネーターを HTTP API として公開し、
バックグラウンドで Saga のイベントを購読する。

lifespan がコンポジションルート: エンジン・Redis クライアント・
パブリッシャーをここで一度だけ生成し app.state に載せる。
"""

import asyncio
from contextlib import asynccontextmanager
from functools import partial

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from pydantic import BaseModel

from services.shared.config import Settings, configure_logging
from services.shared.database import create_engine_and_sessions, create_schema
from services.shared.errors import ServiceError, to_http_exception
from services.shared.event_bus import EventPublisher
from services.shared.subscriber import run_subscriber

from . import queries
from .commands import InventoryUpdateCoordinator
from .events import Operation
from .ledger import InventoryLedger
from .subscriber import dispatch_message


def build_coordinator(
    session_factory, publisher: EventPublisher, settings: Settings
) -> InventoryUpdateCoordinator:
    return InventoryUpdateCoordinator(
        InventoryLedger(session_factory),
        publisher,
        low_stock_threshold=settings.low_stock_threshold,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    engine, async_session = create_engine_and_sessions(settings.database_url)
    await create_schema(engine)
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
    publisher = EventPublisher(redis_pool, settings.event_bus_name)
    app.state.coordinator = build_coordinator(async_session, publisher, settings)

    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(
        run_subscriber(
            redis_pool,
            [settings.event_bus_name],
            partial(dispatch_message, app.state.coordinator),
            shutdown_event,
        )
    )
    yield
    shutdown_event.set()
    subscriber_task.cancel()
    try:
        await subscriber_task
    except asyncio.CancelledError:
        pass
    await publisher.drain()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)


def get_coordinator(request: Request) -> InventoryUpdateCoordinator:
    return request.app.state.coordinator


# ── Request Models ───────────────────────────────


class CreateInventoryRequest(BaseModel):
    product_id: str
    quantity: int


class AdjustRequest(BaseModel):
    delta: int


class ApplyItemsRequest(BaseModel):
    items: list[dict]
    operation: Operation = Operation.DEDUCT


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/inventory", status_code=201)
async def cmd_create_inventory(req: CreateInventoryRequest, request: Request):
    """在庫レコード作成コマンド（同じ商品の二重作成は 409）"""
    try:
        record = await get_coordinator(request).create_inventory(
            req.product_id, req.quantity
        )
    except ServiceError as e:
        raise to_http_exception(e) from e
    return record.model_dump(mode="json")


@app.post("/commands/inventory/{product_id}/adjust")
async def cmd_adjust(product_id: str, req: AdjustRequest, request: Request):
    """在庫数の条件付き増減コマンド"""
    try:
        record = await get_coordinator(request).ledger.adjust_quantity(
            product_id, req.delta
        )
    except ServiceError as e:
        raise to_http_exception(e) from e
    return record.model_dump(mode="json")


@app.post("/commands/inventory/apply")
async def cmd_apply_items(req: ApplyItemsRequest, request: Request):
    """注文明細の一括適用（原子的ではない）"""
    try:
        records = await get_coordinator(request).apply_order_items(
            req.items, req.operation
        )
    except ServiceError as e:
        raise to_http_exception(e) from e
    return [r.model_dump(mode="json") for r in records]


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/inventory")
async def query_list_inventory(request: Request):
    return await queries.list_inventory(get_coordinator(request).ledger)


@app.get("/queries/inventory/{product_id}")
async def query_get_inventory(product_id: str, request: Request):
    try:
        record = await queries.get_inventory(
            get_coordinator(request).ledger, product_id
        )
    except ServiceError as e:
        raise to_http_exception(e) from e
    return record.model_dump(mode="json")


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service"}
