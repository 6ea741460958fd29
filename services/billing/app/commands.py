"""
Billing Service — コマンドハンドラ (Write 側)

顧客・商品の登録/更新/削除と、請求書レコードの INSERT。
商品の在庫数は作成時に設定するだけで、以降は ledger.py だけが変更する。
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import queries
from .errors import (
    ConflictError,
    CustomerNotFoundError,
    DuplicateError,
    PersistenceError,
    ProductNotFoundError,
)
from .models import Customer, Invoice, Product


# ── 顧客 ─────────────────────────────────────────


async def _ensure_unique_customer(
    session: AsyncSession, data: dict, exclude_id: str | None = None
) -> None:
    field = await queries.find_customer_conflict(
        session, data["email"], data["phone"], exclude_id
    )
    if field == "email":
        raise DuplicateError("Customer with this email already exists")
    if field == "phone":
        raise DuplicateError("Customer with this phone number already exists")


async def create_customer(session: AsyncSession, data: dict) -> Customer:
    await _ensure_unique_customer(session, data)

    customer_id = str(uuid4())
    now = datetime.now(timezone.utc)
    try:
        await session.execute(
            text("""
                INSERT INTO customers (id, name, email, phone, address, created_at)
                VALUES (:id, :name, :email, :phone, :address, :now)
            """),
            {"id": customer_id, "now": now, **data},
        )
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise DuplicateError("Customer with this email or phone already exists") from e

    return Customer(id=customer_id, created_at=now.isoformat(), **data)


async def update_customer(session: AsyncSession, customer_id: str, data: dict) -> Customer:
    if await queries.get_customer(session, customer_id) is None:
        raise CustomerNotFoundError(customer_id)
    await _ensure_unique_customer(session, data, exclude_id=customer_id)

    try:
        await session.execute(
            text("""
                UPDATE customers
                SET name = :name, email = :email, phone = :phone, address = :address
                WHERE id = :id
            """),
            {"id": customer_id, **data},
        )
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise DuplicateError("Customer with this email or phone already exists") from e

    return await queries.get_customer(session, customer_id)


async def delete_customer(session: AsyncSession, customer_id: str) -> None:
    """請求書が残っている顧客は削除できない。"""
    result = await session.execute(
        text("SELECT 1 FROM invoices WHERE customer_id = :id LIMIT 1"),
        {"id": customer_id},
    )
    if result.fetchone():
        raise ConflictError("Customer has invoices and cannot be deleted")

    result = await session.execute(
        text("DELETE FROM customers WHERE id = :id"),
        {"id": customer_id},
    )
    if result.rowcount == 0:
        raise CustomerNotFoundError(customer_id)
    await session.commit()


# ── 商品 ─────────────────────────────────────────


async def create_product(session: AsyncSession, data: dict) -> Product:
    if await queries.get_product_by_name(session, data["name"]):
        raise DuplicateError("Product with this name already exists")

    product_id = str(uuid4())
    now = datetime.now(timezone.utc)
    try:
        await session.execute(
            text("""
                INSERT INTO products
                    (id, name, description, price, stock, category, created_at, updated_at)
                VALUES
                    (:id, :name, :description, :price, :stock, :category, :now, :now)
            """),
            {"id": product_id, "now": now, **data},
        )
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise DuplicateError("Product with this name already exists") from e

    return Product(
        id=product_id,
        created_at=now.isoformat(),
        updated_at=now.isoformat(),
        **data,
    )


async def update_product(session: AsyncSession, product_id: str, data: dict) -> Product:
    """名前・説明・価格・カテゴリを更新する（在庫数は変更しない）。"""
    existing = await queries.get_product_by_name(session, data["name"])
    if existing and existing.id != product_id:
        raise DuplicateError("Product with this name already exists")

    try:
        result = await session.execute(
            text("""
                UPDATE products
                SET name = :name, description = :description, price = :price,
                    category = :category, updated_at = :now
                WHERE id = :id
            """),
            {"id": product_id, "now": datetime.now(timezone.utc), **data},
        )
        if result.rowcount == 0:
            raise ProductNotFoundError(product_id)
        await session.commit()
    except IntegrityError as e:
        await session.rollback()
        raise DuplicateError("Product with this name already exists") from e

    return await queries.get_product(session, product_id)


async def delete_product(session: AsyncSession, product_id: str) -> None:
    result = await session.execute(
        text("DELETE FROM products WHERE id = :id"),
        {"id": product_id},
    )
    if result.rowcount == 0:
        raise ProductNotFoundError(product_id)
    await session.commit()


# ── 請求書 ───────────────────────────────────────


async def insert_invoice(session: AsyncSession, invoice: Invoice, now: datetime) -> None:
    """
    請求書と明細を INSERT する（コミットは呼び出し元の UnitOfWork が行う）。
    """
    try:
        await session.execute(
            text("""
                INSERT INTO invoices
                    (id, invoice_number, customer_id, customer_name,
                     total, tax, grand_total, date, status, created_at)
                VALUES
                    (:id, :number, :customer_id, :customer_name,
                     :total, :tax, :grand_total, :date, :status, :now)
            """),
            {
                "id": invoice.id,
                "number": invoice.invoice_number,
                "customer_id": invoice.customer,
                "customer_name": invoice.customer_name,
                "total": invoice.total,
                "tax": invoice.tax,
                "grand_total": invoice.grand_total,
                "date": invoice.date,
                "status": invoice.status.value,
                "now": now,
            },
        )
        await session.execute(
            text("""
                INSERT INTO invoice_items
                    (invoice_id, position, product_id, product_name,
                     quantity, price, subtotal)
                VALUES
                    (:invoice_id, :position, :product_id, :product_name,
                     :quantity, :price, :subtotal)
            """),
            [
                {
                    "invoice_id": invoice.id,
                    "position": position,
                    "product_id": line.product,
                    "product_name": line.product_name,
                    "quantity": line.quantity,
                    "price": line.price,
                    "subtotal": line.subtotal,
                }
                for position, line in enumerate(invoice.items)
            ],
        )
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to save invoice {invoice.invoice_number}: {e}") from e
