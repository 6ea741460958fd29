"""
Billing Service — イベント定義

請求書のコミット後に Redis Pub/Sub (invoice_events) へ発行する。
購読側がいなくても請求書作成には影響しない。
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

INVOICE_CHANNEL = "invoice_events"


class InvoiceLineSold(BaseModel):
    product_id: str
    quantity: int
    price: float


class InvoiceCreated(BaseModel):
    """請求書が作成された（在庫は引き当て済み）"""
    invoice_id: str
    invoice_number: str
    customer_id: str
    items: list[InvoiceLineSold]
    grand_total: float
    timestamp: datetime


async def publish_event(
    redis: aioredis.Redis | None,
    event_type: str,
    event: BaseModel,
    channel: str = INVOICE_CHANNEL,
) -> bool:
    """イベントを発行する。失敗はログに残して False を返す。"""
    if redis is None:
        return False
    try:
        await redis.publish(
            channel,
            json.dumps(
                {
                    "event_type": event_type,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
    except RedisError:
        logger.exception("Failed to publish %s", event_type)
        return False
    return True
