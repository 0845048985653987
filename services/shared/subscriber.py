"""
Shared — Redis Pub/Sub サブスクライバー

チャネルを購読し、受信したメッセージを dispatch に渡し続ける。
各サービスは自分の dispatch（イベントタイプ → ハンドラ）だけを用意する。

注意: Redis Pub/Sub は fire-and-forget 方式。
サービスがダウンしている間のイベントは失われ、再配送もされない。
ハンドラは同じ入力で再実行されても安全である必要がある。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


async def run_subscriber(
    redis: aioredis.Redis,
    channels: list[str],
    dispatch: Callable[[str], Awaitable[Any]],
    shutdown_event: asyncio.Event,
) -> None:
    """shutdown_event がセットされるまで channels のメッセージを dispatch に渡す。"""
    pubsub = redis.pubsub()
    await pubsub.subscribe(*channels)
    logger.info("Subscribed to %s", ", ".join(channels))

    try:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "message":
                try:
                    await dispatch(message["data"])
                except Exception:
                    logger.exception("Failed to process event")
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.unsubscribe(*channels)
        await pubsub.aclose()
