"""
Shared — イベントパブリッシャー

ドメインイベントを Redis Pub/Sub に発行する。チャネル名は
イベントの bus_target（既定は EVENT_BUS_NAME）。

発行モードは3つ:
  publish             必須イベント。失敗は EventPublishError として呼び出し元へ
  publish_best_effort 通知目的のイベント。失敗はログに残して握りつぶす
  publish_detached    呼び出し元のレスポンスと競合する fire-and-forget 発行。
                      順序保証なし。失敗はタスク完了時にロガーへ流す

注意: Redis Pub/Sub は購読者がいなければイベントは失われる。
exactly-once 配送は保証しない。
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
from pydantic import BaseModel, ConfigDict, Field
from redis.exceptions import RedisError

from .errors import EventPublishError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DomainEvent(BaseModel):
    """発行されたら変更しない。パブリッシャーに渡したら保持しない。"""

    model_config = ConfigDict(frozen=True)

    source: str
    event_type: str
    detail: dict[str, Any]
    bus_target: str
    timestamp: datetime = Field(default_factory=utcnow)

    def to_message(self) -> str:
        timestamp = self.timestamp.isoformat()
        return json.dumps(
            {
                "source": self.source,
                "event_type": self.event_type,
                "data": {**self.detail, "timestamp": timestamp},
                "timestamp": timestamp,
            },
            default=str,
        )


class EventPublisher:
    def __init__(self, redis: aioredis.Redis, default_bus: str = "default") -> None:
        self.redis = redis
        self.default_bus = default_bus
        self._pending: set[asyncio.Task] = set()

    def event(
        self,
        source: str,
        event_type: str,
        detail: dict[str, Any],
        bus_target: str | None = None,
    ) -> DomainEvent:
        return DomainEvent(
            source=source,
            event_type=event_type,
            detail=detail,
            bus_target=bus_target or self.default_bus,
        )

    async def publish(self, event: DomainEvent) -> None:
        try:
            await self.redis.publish(event.bus_target, event.to_message())
        except (RedisError, OSError) as e:
            logger.error(
                "Failed to publish %s event to %s: %s",
                event.event_type,
                event.bus_target,
                e,
            )
            raise EventPublishError(event.event_type, e) from e
        logger.info("%s event published (source=%s)", event.event_type, event.source)

    async def publish_best_effort(self, event: DomainEvent) -> bool:
        try:
            await self.publish(event)
        except EventPublishError:
            logger.exception("Advisory event %s was dropped", event.event_type)
            return False
        return True

    def publish_detached(self, event: DomainEvent) -> asyncio.Task:
        """
        発行をデタッチしたタスクとしてスケジュールする。

        タスクは完了まで強参照で保持し、例外は未処理のまま残さず
        ロガーに記録する。
        """
        task = asyncio.create_task(self.publish(event))
        self._pending.add(task)
        task.add_done_callback(self._on_detached_done)
        return task

    def _on_detached_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Detached event publication failed", exc_info=error)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """保留中のデタッチ発行がすべて終わるまで待つ。"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
