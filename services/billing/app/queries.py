"""
Billing Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Customer, Invoice, LineItem, Product


def iso(value) -> str | None:
    # SQLite は日時を文字列で返す
    if value is None:
        return None
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


def _like(search: str) -> str:
    escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped.lower()}%"


# ── 顧客 ─────────────────────────────────────────


def _customer(row) -> Customer:
    return Customer(
        id=row.id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        address=row.address,
        created_at=iso(row.created_at),
    )


async def get_customer(session: AsyncSession, customer_id: str) -> Customer | None:
    result = await session.execute(
        text("SELECT * FROM customers WHERE id = :id"),
        {"id": customer_id},
    )
    row = result.fetchone()
    return _customer(row) if row else None


async def list_customers(
    session: AsyncSession, search: str | None = None
) -> list[Customer]:
    """顧客一覧 (新しい順)。search は名前の部分一致 (大文字小文字を区別しない)。"""
    if search:
        result = await session.execute(
            text("""
                SELECT * FROM customers
                WHERE LOWER(name) LIKE :pattern ESCAPE '\\'
                ORDER BY created_at DESC
            """),
            {"pattern": _like(search)},
        )
    else:
        result = await session.execute(
            text("SELECT * FROM customers ORDER BY created_at DESC"),
        )
    return [_customer(row) for row in result.fetchall()]


async def find_customer_conflict(
    session: AsyncSession,
    email: str,
    phone: str,
    exclude_id: str | None = None,
) -> str | None:
    """同じメール・電話番号の別顧客がいればそのフィールド名を返す。"""
    result = await session.execute(
        text("""
            SELECT id, email, phone FROM customers
            WHERE (email = :email OR phone = :phone)
        """),
        {"email": email, "phone": phone},
    )
    for row in result.fetchall():
        if row.id == exclude_id:
            continue
        return "email" if row.email == email else "phone"
    return None


# ── 商品 ─────────────────────────────────────────


def _product(row) -> Product:
    return Product(
        id=row.id,
        name=row.name,
        description=row.description,
        price=float(row.price),
        stock=row.stock,
        category=row.category,
        created_at=iso(row.created_at),
        updated_at=iso(row.updated_at),
    )


async def get_product(session: AsyncSession, product_id: str) -> Product | None:
    result = await session.execute(
        text("SELECT * FROM products WHERE id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    return _product(row) if row else None


async def get_product_by_name(session: AsyncSession, name: str) -> Product | None:
    result = await session.execute(
        text("SELECT * FROM products WHERE name = :name"),
        {"name": name},
    )
    row = result.fetchone()
    return _product(row) if row else None


async def list_products(
    session: AsyncSession,
    category: str | None = None,
    search: str | None = None,
) -> list[Product]:
    conditions = []
    params: dict = {}
    if category:
        conditions.append("category = :category")
        params["category"] = category
    if search:
        conditions.append("LOWER(name) LIKE :pattern ESCAPE '\\'")
        params["pattern"] = _like(search)
    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    result = await session.execute(
        text(f"SELECT * FROM products {where} ORDER BY created_at DESC"),
        params,
    )
    return [_product(row) for row in result.fetchall()]


async def list_categories(session: AsyncSession) -> list[str]:
    """使用中のカテゴリ一覧"""
    result = await session.execute(
        text("SELECT DISTINCT category FROM products ORDER BY category"),
    )
    return [row.category for row in result.fetchall()]


# ── 請求書 ───────────────────────────────────────


def _invoice(row, items: list[LineItem]) -> Invoice:
    return Invoice(
        id=row.id,
        invoice_number=row.invoice_number,
        customer=row.customer_id,
        customer_name=row.customer_name,
        items=items,
        total=float(row.total),
        tax=float(row.tax),
        grand_total=float(row.grand_total),
        date=row.date,
        status=row.status,
        created_at=iso(row.created_at),
    )


async def _load_items(
    session: AsyncSession, invoice_ids: list[str]
) -> dict[str, list[LineItem]]:
    items: dict[str, list[LineItem]] = {invoice_id: [] for invoice_id in invoice_ids}
    if not invoice_ids:
        return items
    placeholders = ", ".join(f":id{i}" for i in range(len(invoice_ids)))
    result = await session.execute(
        text(f"""
            SELECT * FROM invoice_items
            WHERE invoice_id IN ({placeholders})
            ORDER BY invoice_id, position
        """),
        {f"id{i}": invoice_id for i, invoice_id in enumerate(invoice_ids)},
    )
    for row in result.fetchall():
        items[row.invoice_id].append(
            LineItem(
                product=row.product_id,
                product_name=row.product_name,
                quantity=row.quantity,
                price=float(row.price),
                subtotal=float(row.subtotal),
            )
        )
    return items


async def get_invoice(session: AsyncSession, invoice_id: str) -> Invoice | None:
    result = await session.execute(
        text("SELECT * FROM invoices WHERE id = :id"),
        {"id": invoice_id},
    )
    row = result.fetchone()
    if not row:
        return None
    items = await _load_items(session, [row.id])
    return _invoice(row, items[row.id])


async def list_invoices(session: AsyncSession) -> list[Invoice]:
    """請求書一覧 (新しい順、明細付き)"""
    result = await session.execute(
        text("SELECT * FROM invoices ORDER BY created_at DESC, invoice_number DESC"),
    )
    rows = result.fetchall()
    items = await _load_items(session, [row.id for row in rows])
    return [_invoice(row, items[row.id]) for row in rows]
