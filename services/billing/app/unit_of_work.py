"""
Billing Service — Unit of Work

在庫引き当て + 採番 + 請求書保存 を 1 つのトランザクションにまとめる。

    async with UnitOfWork(async_session) as uow:
        await uow.reserve(product_id, 3)
        number = await uow.sequences.next("invoiceNumber")
        ...
        await uow.commit()

commit() せずにブロックを抜けると (例外・キャンセルを含む) ロールバックする。
成功した引き当ては記録しておき、release_reservations() で逆順に解放できる。
"""

import logging
from typing import Callable, NamedTuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import PersistenceError
from .ledger import StockLedger
from .sequence import SqlSequenceAllocator

logger = logging.getLogger(__name__)


class Reservation(NamedTuple):
    product_id: str
    quantity: int


class UnitOfWork:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        allocator_factory: Callable = SqlSequenceAllocator,
    ) -> None:
        self.session_factory = session_factory
        self.allocator_factory = allocator_factory
        self.reservations: list[Reservation] = []
        self._committed = False

    async def __aenter__(self) -> "UnitOfWork":
        self.session = self.session_factory()
        self.ledger = StockLedger(self.session)
        self.sequences = self.allocator_factory(self.session)
        self.reservations = []
        self._committed = False
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if not self._committed:
                try:
                    await self.rollback()
                except SQLAlchemyError:
                    logger.exception("Rollback failed")
                    if exc_type is None:
                        raise
        finally:
            await self.session.close()

    async def reserve(self, product_id: str, quantity: int) -> int:
        stock = await self.ledger.reserve(product_id, quantity)
        self.reservations.append(Reservation(product_id, quantity))
        return stock

    async def release_reservations(self) -> None:
        """記録済みの引き当てを逆順に1回ずつ解放する。"""
        while self.reservations:
            reservation = self.reservations.pop()
            await self.ledger.release(reservation.product_id, reservation.quantity)
            logger.info(
                "Released reservation: product=%s quantity=%d",
                reservation.product_id,
                reservation.quantity,
            )

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Commit failed: {e}") from e
        self._committed = True
        self.reservations.clear()

    async def rollback(self) -> None:
        # トランザクションの破棄で未コミットの引き当てもすべて戻る
        self.reservations.clear()
        await self.session.rollback()
