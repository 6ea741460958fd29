"""
Billing Service — ドメインモデル

外部向け JSON は camelCase (invoiceNumber, grandTotal, ...)。
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CATEGORIES = (
    "Engine Parts",
    "Suspension and Steering",
    "Braking System",
    "Electrical Components",
    "Oil",
    "Transmission and Drivetrain",
    "Cooling System",
    "Exhaust System",
    "Body Parts",
    "Interior Components",
    "Filters",
    "Fuel System",
    "Wheels and Tires",
    "Accessories",
    "Maintenance Parts",
    "Lighting and Electrical",
    "Heating and Air Conditioning",
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InvoiceStatus(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    CANCELLED = "cancelled"


class Customer(CamelModel):
    id: str
    name: str
    email: str
    phone: str
    address: str
    created_at: str | None = None


class Product(CamelModel):
    id: str
    name: str
    description: str
    price: float
    stock: int
    category: str
    created_at: str | None = None
    updated_at: str | None = None


class LineItem(CamelModel):
    """請求明細 — 単価は販売時点の値を保持する（後から商品を再参照しない）"""

    product: str
    product_name: str = ""
    quantity: int
    price: float
    subtotal: float


class Invoice(CamelModel):
    id: str
    invoice_number: str
    customer: str
    customer_name: str = ""
    items: list[LineItem] = Field(default_factory=list)
    total: float
    tax: float = 0.0
    grand_total: float
    date: str
    status: InvoiceStatus = InvoiceStatus.PAID
    created_at: str | None = None


# ── 入力 (検証済み) ──────────────────────────────


class DraftItem(BaseModel):
    product_id: str
    quantity: int
    price: float | None = None


class InvoiceDraft(BaseModel):
    """validators.validate_invoice_request の出力"""

    customer_id: str
    items: list[DraftItem]
    total: float | None = None
    date: str | None = None
