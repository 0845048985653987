"""
Shared — 設定

環境変数から一度だけ読み込み、各サービスの lifespan (コンポジションルート)
に明示的に渡す。モジュールが直接 os.environ を読むことはしない。
"""

import logging
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"
    event_bus_name: str = "default"
    low_stock_threshold: int | None = None
    saga_stale_after_seconds: int = 300
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        threshold = os.environ.get("LOW_STOCK_THRESHOLD")
        return cls(
            database_url=os.environ["DATABASE_URL"],
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            event_bus_name=os.environ.get("EVENT_BUS_NAME", "default"),
            low_stock_threshold=int(threshold) if threshold else None,
            saga_stale_after_seconds=int(
                os.environ.get("SAGA_STALE_AFTER_SECONDS", "300")
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
