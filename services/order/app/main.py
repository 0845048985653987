"""
Order Service — FastAPI エントリーポイント

CQRS パターンに従い、Command (POST) と Query (GET) のエンドポイントを分離。

エラー方針:
  入力不正・商品なし・在庫不足は 4xx の構造化レスポンスに変換する。
  ストアやバスの一時的な障害は 503 として返し、呼び出し側のリトライに任せる。
"""

import asyncio
from contextlib import asynccontextmanager
from functools import partial

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from pydantic import BaseModel

from services.inventory.app.ledger import InventoryLedger
from services.saga.app.orchestrator import OrderSagaOrchestrator
from services.saga.app.state import SagaStore
from services.shared.config import Settings, configure_logging
from services.shared.database import create_engine_and_sessions, create_schema
from services.shared.errors import ServiceError, to_http_exception
from services.shared.event_bus import EventPublisher
from services.shared.subscriber import run_subscriber

from . import queries
from .commands import OrderWorkflow
from .store import OrderStore
from .subscriber import dispatch_message


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    engine, async_session = create_engine_and_sessions(settings.database_url)
    await create_schema(engine)
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
    publisher = EventPublisher(redis_pool, settings.event_bus_name)
    app.state.workflow = OrderWorkflow(
        OrderStore(async_session),
        InventoryLedger(async_session),
        publisher,
        OrderSagaOrchestrator(publisher, SagaStore(async_session)),
    )

    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(
        run_subscriber(
            redis_pool,
            [settings.event_bus_name],
            partial(dispatch_message, app.state.workflow),
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


app = FastAPI(title="Order Service", lifespan=lifespan)


def get_workflow(request: Request) -> OrderWorkflow:
    return request.app.state.workflow


# ── Request Models ───────────────────────────────


class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int


class CreateOrderRequest(BaseModel):
    order_id: str | None = None
    user_id: str | None = None
    items: list[OrderItemRequest] = []
    total_amount: float = 0


class FailOrderRequest(BaseModel):
    reason: str


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/orders", status_code=201)
async def cmd_create_order(req: CreateOrderRequest, request: Request):
    """注文作成コマンド"""
    try:
        order = await get_workflow(request).create_order(req.model_dump())
    except ServiceError as e:
        raise to_http_exception(e) from e
    return order.model_dump(mode="json")


@app.post("/commands/orders/place", status_code=201)
async def cmd_place_order(req: CreateOrderRequest, request: Request):
    """注文作成 + フルフィルメント Saga 開始"""
    try:
        order, saga = await get_workflow(request).place_order(req.model_dump())
    except ServiceError as e:
        raise to_http_exception(e) from e
    return {
        "order": order.model_dump(mode="json"),
        "saga_id": saga.saga_id,
        "saga_status": saga.status.value,
    }


@app.post("/commands/orders/{order_id}/fail")
async def cmd_fail_order(order_id: str, req: FailOrderRequest, request: Request):
    """注文失敗コマンド（Saga の補償完了後に呼ばれる）"""
    try:
        order = await get_workflow(request).fail_order(order_id, req.reason)
    except ServiceError as e:
        raise to_http_exception(e) from e
    return {"order_id": order.id, "status": order.status.value}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/orders")
async def query_list_orders(request: Request):
    return await queries.list_orders(get_workflow(request).store)


@app.get("/queries/orders/{order_id}")
async def query_get_order(order_id: str, request: Request):
    try:
        return await queries.get_order(get_workflow(request).store, order_id)
    except ServiceError as e:
        raise to_http_exception(e) from e


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
