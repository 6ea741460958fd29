"""
Billing Service — 在庫台帳 (Stock Ledger)

商品の在庫数を変更できるのはこのモジュールだけ。
引き当ては「条件付き減算」1文で行うので、同じ商品への同時引き当てが
在庫を負にすることはない（行ロックで直列化される）。

呼び出し元のトランザクション内で実行する。コミットされるまで
他のトランザクションからは減算後の値は見えない。
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InsufficientStockError, PersistenceError, ProductNotFoundError

logger = logging.getLogger(__name__)


class StockLedger:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def reserve(self, product_id: str, quantity: int) -> int:
        """
        在庫引き当て

        quantity <= stock なら stock を減算して新しい在庫数を返す。
        不足なら InsufficientStockError、商品がなければ ProductNotFoundError。
        失敗時は在庫を変更しない。
        """
        try:
            result = await self.session.execute(
                text("""
                    UPDATE products
                    SET stock = stock - :qty, updated_at = :now
                    WHERE id = :id AND stock >= :qty
                    RETURNING stock
                """),
                {"qty": quantity, "now": datetime.now(timezone.utc), "id": product_id},
            )
            row = result.fetchone()
            if row is not None:
                return row.stock

            # 減算できなかった理由を調べる
            result = await self.session.execute(
                text("SELECT name, stock FROM products WHERE id = :id"),
                {"id": product_id},
            )
            current = result.fetchone()
        except SQLAlchemyError as e:
            # デッドロック検出などもここに来る
            raise PersistenceError(f"Stock reservation failed: {e}") from e
        if current is None:
            raise ProductNotFoundError(product_id)

        logger.info(
            "Reservation refused: product=%s requested=%d available=%d",
            product_id,
            quantity,
            current.stock,
        )
        raise InsufficientStockError(
            product_id, quantity, current.stock, product_name=current.name
        )

    async def release(self, product_id: str, quantity: int) -> int:
        """在庫解放（引き当ての取り消し）"""
        try:
            result = await self.session.execute(
                text("""
                    UPDATE products
                    SET stock = stock + :qty, updated_at = :now
                    WHERE id = :id
                    RETURNING stock
                """),
                {"qty": quantity, "now": datetime.now(timezone.utc), "id": product_id},
            )
            row = result.fetchone()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Stock release failed: {e}") from e
        if row is None:
            raise ProductNotFoundError(product_id)
        return row.stock
