"""
Order Service — イベント定義と発行

注文で発生した事実 (イベント) を Redis Pub/Sub で他サービスへ通知する。
イベントは過去形で命名する。

発行はベストエフォート: Redis に届かなくても注文処理の結果は変えない。
"""

import json
import logging
from datetime import datetime
from decimal import Decimal

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"
SAGA_EVENTS_CHANNEL = "saga_events"


class OrderCreated(BaseModel):
    """注文が作成された"""
    order_id: str
    order_number: str
    owner: str
    total: Decimal
    item_count: int
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが変更された"""
    order_id: str
    previous_status: str
    status: str
    timestamp: datetime


class EventPublisher:
    """Redis Pub/Sub へのイベント発行"""

    def __init__(self, redis: aioredis.Redis | None):
        self.redis = redis

    async def publish(self, channel: str, event_type: str, data: dict) -> None:
        if self.redis is None:
            return
        message = json.dumps({"event_type": event_type, "data": data}, default=str)
        try:
            await self.redis.publish(channel, message)
        except (RedisError, OSError) as e:
            logger.warning(f"Failed to publish {event_type} to {channel}: {e}")
