"""
Marketplace — イベント定義と発行

注文や メニューで発生した事実をイベントとして定義する。
イベントは過去形で命名し、不変(immutable)として扱う。

発行は Redis Pub/Sub (fire-and-forget)。REDIS_URL が未設定なら発行しない。
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ORDER_CHANNEL = "order_events"
MENU_CHANNEL = "menu_events"


class OrderCreated(BaseModel):
    """注文が作成された"""
    order_id: str
    user_id: str
    store_id: str
    total_price: float
    timestamp: datetime


class OrderStatusAdvanced(BaseModel):
    """注文ステータスが前に進んだ"""
    order_id: str
    previous_status: str
    status: str
    timestamp: datetime


class MenuTitleSynced(BaseModel):
    """メニュータイトルが再計算された"""
    menu_id: str
    title: str
    title_v: int
    timestamp: datetime


class EventPublisher:
    """Redis Pub/Sub への発行口"""

    def __init__(self, redis: aioredis.Redis | None = None) -> None:
        self.redis = redis

    async def publish(self, channel: str, event: BaseModel) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                channel,
                json.dumps(
                    {
                        "event_type": type(event).__name__,
                        "data": event.model_dump(mode="json"),
                    },
                    default=str,
                ),
            )
        except RedisError:
            # 通知の失敗で本処理は止めない
            logger.exception("Failed to publish %s", type(event).__name__)
