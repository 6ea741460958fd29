"""
Billing Service — 請求書トランザクション・コーディネーター

請求書作成の流れ:
  ┌──────────────────────────────────────────────────────────┐
  │  1. リクエスト検証 (副作用なし)                            │
  │  2. 顧客の解決                                             │
  │  3. 明細ごとに 商品の解決 → 在庫の引き当て (呼び出し順)    │
  │     └─ 失敗 → それまでの引き当てを解放して中断             │
  │  4. 合計金額の照合・税額計算                               │
  │  5. 請求書番号を採番                                       │
  │  6. 請求書を保存してコミット                               │
  │     └─ 失敗 → ロールバック (在庫の減算も残らない)          │
  │  7. コミット後: イベント発行・SMS 通知 (結果は返さない)    │
  └──────────────────────────────────────────────────────────┘

2〜6 は 1 つのトランザクション (UnitOfWork)。
保存までを invoice_timeout_seconds で打ち切り、超過時はロールバックする。
コミット自体は打ち切りの対象外。
"""

import asyncio
import logging
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands, queries
from .config import Settings
from .errors import (
    CustomerNotFoundError,
    InsufficientStockError,
    ProductNotFoundError,
    TransactionTimeoutError,
    ValidationError,
)
from .events import InvoiceCreated, InvoiceLineSold, publish_event
from .models import (
    Customer,
    DraftItem,
    Invoice,
    InvoiceDraft,
    InvoiceStatus,
    LineItem,
    Product,
)
from .notifications import NotificationDispatcher, build_invoice_message
from .sequence import INVOICE_SEQUENCE, SqlSequenceAllocator, format_invoice_number
from .unit_of_work import UnitOfWork
from .validators import validate_invoice_request

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def price_line(item: DraftItem, product: Product) -> LineItem:
    price = to_money(item.price if item.price is not None else product.price)
    return LineItem(
        product=product.id,
        product_name=product.name,
        quantity=item.quantity,
        price=float(price),
        subtotal=float(price * item.quantity),
    )


class InvoiceCoordinator:
    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        settings: Settings,
        dispatcher: NotificationDispatcher,
        redis: aioredis.Redis | None = None,
        allocator_factory: Callable = SqlSequenceAllocator,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.dispatcher = dispatcher
        self.redis = redis
        self.allocator_factory = allocator_factory
        self._pending: set[asyncio.Task] = set()

    async def create_invoice(self, payload) -> Invoice:
        """
        請求書を作成して返す。

        入力形式の検証エラーは在庫台帳に触れる前に送出する。
        通知の成否は呼び出し元には返らない。
        """
        draft = validate_invoice_request(payload)

        async with UnitOfWork(self.session_factory, self.allocator_factory) as uow:
            try:
                invoice, customer = await asyncio.wait_for(
                    self._prepare(uow, draft),
                    timeout=self.settings.invoice_timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                logger.warning(
                    "Invoice creation for customer %s timed out after %.1fs",
                    draft.customer_id,
                    self.settings.invoice_timeout_seconds,
                )
                raise TransactionTimeoutError(
                    "Invoice creation timed out; no stock was debited"
                ) from e
            await uow.commit()

        logger.info(
            "Invoice %s created for customer %s (grand total %.2f)",
            invoice.invoice_number,
            customer.id,
            invoice.grand_total,
        )
        self._after_commit(invoice, customer)
        return invoice

    async def _prepare(
        self, uow: UnitOfWork, draft: InvoiceDraft
    ) -> tuple[Invoice, Customer]:
        """引き当て・採番・保存まで。コミットは呼び出し元が行う。"""
        # ── Step 2: 顧客を解決 ────────────────────────
        customer = await queries.get_customer(uow.session, draft.customer_id)
        if customer is None:
            raise CustomerNotFoundError(draft.customer_id)

        # ── Step 3: 明細ごとに商品を解決して引き当て ──
        lines: list[LineItem] = []
        try:
            for item in draft.items:
                product = await queries.get_product(uow.session, item.product_id)
                if product is None:
                    raise ProductNotFoundError(item.product_id)
                await uow.reserve(item.product_id, item.quantity)
                lines.append(price_line(item, product))

            # ── Step 4: 合計金額 ──────────────────────
            total = sum((to_money(line.subtotal) for line in lines), Decimal("0"))
            self._check_client_total(draft, total)
        except (InsufficientStockError, ProductNotFoundError, ValidationError) as e:
            logger.info("Invoice aborted, releasing reservations: %s", e)
            await uow.release_reservations()
            raise
        tax = to_money(total * Decimal(str(self.settings.tax_rate)))

        # ── Step 5: 採番 ──────────────────────────────
        value = await uow.sequences.next(INVOICE_SEQUENCE)
        invoice_number = format_invoice_number(
            value,
            self.settings.invoice_prefix,
            self.settings.invoice_number_width,
        )

        # ── Step 6: 保存 ──────────────────────────────
        now = datetime.now(timezone.utc)
        invoice = Invoice(
            id=str(uuid4()),
            invoice_number=invoice_number,
            customer=customer.id,
            customer_name=customer.name,
            items=lines,
            total=float(total),
            tax=float(tax),
            grand_total=float(total + tax),
            date=draft.date or date.today().isoformat(),
            status=InvoiceStatus.PAID,
            created_at=now.isoformat(),
        )
        await commands.insert_invoice(uow.session, invoice, now)
        return invoice, customer

    def _check_client_total(self, draft: InvoiceDraft, total: Decimal) -> None:
        if draft.total is None:
            return
        tolerance = Decimal(str(self.settings.total_tolerance))
        if abs(Decimal(str(draft.total)) - total) > tolerance:
            raise ValidationError(
                [
                    {
                        "field": "total",
                        "message": f"does not match the sum of line items ({total})",
                    }
                ]
            )

    def _after_commit(self, invoice: Invoice, customer: Customer) -> None:
        """コミット後の副作用をバックグラウンドで開始する。失敗は呼び出し元に返さない。"""
        event = InvoiceCreated(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            customer_id=customer.id,
            items=[
                InvoiceLineSold(
                    product_id=line.product, quantity=line.quantity, price=line.price
                )
                for line in invoice.items
            ],
            grand_total=invoice.grand_total,
            timestamp=datetime.now(timezone.utc),
        )
        task = asyncio.create_task(publish_event(self.redis, "InvoiceCreated", event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

        message = build_invoice_message(
            invoice,
            customer.name,
            self.settings.shop_name,
            self.settings.currency_symbol,
        )
        self.dispatcher.schedule(customer.phone, message)

    async def drain(self) -> None:
        """未完了のイベント発行をすべて待つ（シャットダウン時・テスト用）。"""
        if self._pending:
            await asyncio.gather(*list(self._pending))
