"""
Billing Service — 入力検証

ストレージのスキーマ機能には頼らず、変更を行う前に
フィールド単位のエラー一覧を作る。エラーが1つでもあれば
ValidationError を送出する。
"""

import math
import re
from datetime import date
from uuid import UUID

from .errors import ValidationError
from .models import CATEGORIES, DraftItem, InvoiceDraft

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[0-9][0-9\s\-()]{6,19}$")

# products.stock / invoice_items.quantity は 32bit 整数
MAX_QUANTITY = 2**31 - 1


def _error(field: str, message: str) -> dict:
    return {"field": field, "message": message}


def is_valid_id(value) -> bool:
    if not isinstance(value, str):
        return False
    try:
        UUID(value)
    except ValueError:
        return False
    return True


def _is_number(value) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _require_object(payload) -> None:
    if not isinstance(payload, dict):
        raise ValidationError([_error("body", "must be a JSON object")])


def _check_text(payload: dict, field: str, errors: list[dict]) -> str | None:
    value = payload.get(field)
    if not isinstance(value, str) or not value.strip():
        errors.append(_error(field, "is required"))
        return None
    return value.strip()


# ── 請求書 ───────────────────────────────────────


def validate_invoice_request(payload) -> InvoiceDraft:
    """
    請求書作成リクエストを検証して InvoiceDraft を返す。

    customerId / customer、productId / product のどちらのキーも受け付ける。
    在庫台帳に触れる前に呼ばれるので、ここで失敗しても副作用はない。
    """
    _require_object(payload)
    errors: list[dict] = []

    customer_id = payload.get("customerId", payload.get("customer"))
    if customer_id is None or customer_id == "":
        errors.append(_error("customerId", "is required"))
    elif not is_valid_id(customer_id):
        errors.append(_error("customerId", "is not a valid ID"))

    items = payload.get("items")
    draft_items: list[DraftItem] = []
    if not isinstance(items, list) or not items:
        errors.append(_error("items", "must be a non-empty list"))
    else:
        for i, item in enumerate(items):
            prefix = f"items[{i}]"
            if not isinstance(item, dict):
                errors.append(_error(prefix, "must be an object"))
                continue
            item_errors: list[dict] = []

            product_id = item.get("productId", item.get("product"))
            if product_id is None or product_id == "":
                item_errors.append(_error(f"{prefix}.productId", "is required"))
            elif not is_valid_id(product_id):
                item_errors.append(_error(f"{prefix}.productId", "is not a valid ID"))

            quantity = item.get("quantity")
            if not _is_positive_int(quantity):
                item_errors.append(
                    _error(f"{prefix}.quantity", "must be a positive integer")
                )
            elif quantity > MAX_QUANTITY:
                item_errors.append(
                    _error(f"{prefix}.quantity", f"must not exceed {MAX_QUANTITY}")
                )

            price = item.get("price")
            if price is not None and not (_is_number(price) and price >= 0):
                item_errors.append(
                    _error(f"{prefix}.price", "must be a non-negative number")
                )

            if item_errors:
                errors.extend(item_errors)
            else:
                draft_items.append(
                    DraftItem(
                        product_id=product_id,
                        quantity=quantity,
                        price=float(price) if price is not None else None,
                    )
                )

    total = payload.get("total")
    if total is not None and not (_is_number(total) and total >= 0):
        errors.append(_error("total", "must be a non-negative number"))

    invoice_date = payload.get("date")
    if invoice_date is not None:
        try:
            date.fromisoformat(invoice_date)
        except (TypeError, ValueError):
            errors.append(_error("date", "must be an ISO date (YYYY-MM-DD)"))

    if errors:
        raise ValidationError(errors)

    return InvoiceDraft(
        customer_id=customer_id,
        items=draft_items,
        total=float(total) if total is not None else None,
        date=invoice_date,
    )


# ── 顧客 ─────────────────────────────────────────


def validate_customer(payload) -> dict:
    _require_object(payload)
    errors: list[dict] = []
    name = _check_text(payload, "name", errors)
    email = _check_text(payload, "email", errors)
    phone = _check_text(payload, "phone", errors)
    address = _check_text(payload, "address", errors)

    if email and not EMAIL_RE.match(email):
        errors.append(_error("email", "is not a valid email address"))
    if phone and not PHONE_RE.match(phone):
        errors.append(_error("phone", "is not a valid phone number"))

    if errors:
        raise ValidationError(errors)
    return {"name": name, "email": email.lower(), "phone": phone, "address": address}


# ── 商品 ─────────────────────────────────────────


def validate_product(payload, *, creating: bool) -> dict:
    """
    商品の作成・更新を検証する。

    在庫数は作成時にだけ受け付ける。以降の在庫変更は在庫台帳が行う。
    """
    _require_object(payload)
    errors: list[dict] = []
    name = _check_text(payload, "name", errors)
    description = _check_text(payload, "description", errors)

    price = payload.get("price")
    if not (_is_number(price) and price >= 0):
        errors.append(_error("price", "must be a non-negative number"))

    category = payload.get("category")
    if not category:
        errors.append(_error("category", "is required"))
    elif category not in CATEGORIES:
        errors.append(_error("category", "is not a valid category"))

    cleaned = {
        "name": name,
        "description": description,
        "price": float(price) if _is_number(price) else None,
        "category": category,
    }

    if creating:
        stock = payload.get("stock", 0)
        if isinstance(stock, bool) or not isinstance(stock, int) or stock < 0:
            errors.append(_error("stock", "must be a non-negative integer"))
        elif stock > MAX_QUANTITY:
            errors.append(_error("stock", f"must not exceed {MAX_QUANTITY}"))
        cleaned["stock"] = stock
    elif "stock" in payload:
        errors.append(_error("stock", "cannot be changed directly"))

    if errors:
        raise ValidationError(errors)
    return cleaned
