"""
Saga Service — FastAPI エントリーポイント

Saga インスタンスの参照と、外部から届いた失敗（決済失敗など）による
補償の起動、止まった Saga のスイープを HTTP API として公開する。
Saga の開始は Order Service のワークフローから行う。
"""

from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from services.shared.config import Settings, configure_logging
from services.shared.database import create_engine_and_sessions, create_schema
from services.shared.errors import PaymentError, ServiceError, to_http_exception
from services.shared.event_bus import EventPublisher

from .orchestrator import OrderSagaOrchestrator
from .state import SagaStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    engine, async_session = create_engine_and_sessions(settings.database_url)
    await create_schema(engine)
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
    publisher = EventPublisher(redis_pool, settings.event_bus_name)
    app.state.settings = settings
    app.state.orchestrator = OrderSagaOrchestrator(publisher, SagaStore(async_session))
    yield
    await publisher.drain()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Saga Orchestrator Service", lifespan=lifespan)


def get_orchestrator(request: Request) -> OrderSagaOrchestrator:
    return request.app.state.orchestrator


class CompensateRequest(BaseModel):
    reason: str
    payment_processed: bool = False


class SweepRequest(BaseModel):
    stale_after_seconds: int | None = None


@app.get("/saga/{saga_id}")
async def get_saga(saga_id: str, request: Request):
    saga = await get_orchestrator(request).store.get(saga_id)
    if saga is None:
        raise HTTPException(404, "Saga not found")
    return saga.model_dump(mode="json")


@app.post("/saga/{saga_id}/compensate")
async def compensate_saga(saga_id: str, req: CompensateRequest, request: Request):
    """
    決済サービスなどから届いた失敗で補償を起動する。
    payment_processed が True の場合のみ決済の補償を発行する。
    """
    cause = PaymentError(req.reason, payment_processed=req.payment_processed)
    try:
        saga = await get_orchestrator(request).compensate(saga_id, None, cause)
    except ServiceError as e:
        raise to_http_exception(e) from e
    return saga.model_dump(mode="json")


@app.post("/saga/sweep")
async def sweep(req: SweepRequest, request: Request):
    stale_after = req.stale_after_seconds
    if stale_after is None:
        stale_after = request.app.state.settings.saga_stale_after_seconds
    swept = await get_orchestrator(request).sweep_stale_sagas(stale_after)
    return {"swept": [s.saga_id for s in swept]}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "saga-service"}
