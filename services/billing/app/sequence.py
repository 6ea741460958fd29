"""
Billing Service — 採番 (Sequence Allocator)

名前付きカウンタを原子的にインクリメントして新しい値を返す。
「読んでから書く」ではなく 1 回の read-modify-write なので、
同時に呼ばれても同じ値が2回返ることはない。

バックエンド:
  - SqlSequenceAllocator:   sequence_counters テーブルの UPSERT。
                            請求書と同じトランザクションで実行するので
                            ロールバックすれば番号も戻る。
  - RedisSequenceAllocator: INCR。ロールバックされないので欠番が出うる
                            (欠番は許容、重複は不可)。
"""

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import AllocatorUnavailableError

logger = logging.getLogger(__name__)

INVOICE_SEQUENCE = "invoiceNumber"


def format_invoice_number(value: int, prefix: str = "INV-", width: int = 5) -> str:
    """INV-00001 形式。width を超える値は切り詰めずにそのまま出す。"""
    return f"{prefix}{value:0{width}d}"


class SqlSequenceAllocator:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def next(self, sequence_name: str) -> int:
        try:
            result = await self.session.execute(
                text("""
                    INSERT INTO sequence_counters (name, value)
                    VALUES (:name, 1)
                    ON CONFLICT (name) DO UPDATE
                        SET value = sequence_counters.value + 1
                    RETURNING value
                """),
                {"name": sequence_name},
            )
            value = result.scalar_one()
        except SQLAlchemyError as e:
            raise AllocatorUnavailableError(
                f"Sequence {sequence_name} unavailable: {e}"
            ) from e
        logger.debug("Allocated %s=%d", sequence_name, value)
        return value


class RedisSequenceAllocator:
    def __init__(self, redis: aioredis.Redis, key_prefix: str = "sequence:") -> None:
        self.redis = redis
        self.key_prefix = key_prefix

    async def next(self, sequence_name: str) -> int:
        try:
            value = await self.redis.incr(f"{self.key_prefix}{sequence_name}")
        except RedisError as e:
            raise AllocatorUnavailableError(
                f"Sequence {sequence_name} unavailable: {e}"
            ) from e
        logger.debug("Allocated %s=%d", sequence_name, value)
        return int(value)
