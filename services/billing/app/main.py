"""
Billing Service — FastAPI エントリーポイント

自動車部品店の在庫・請求サービス。
顧客・商品の管理と、在庫を引き当てて請求書を発行する API を提供する。

┌──────────┐ POST /api/invoices ┌─────────────┐    ┌──────────────┐
│ Frontend │──────────────────▶│ Coordinator │───▶│ PostgreSQL   │
└──────────┘                    └──────┬──────┘    │ (在庫・請求書) │
                                       │           └──────────────┘
                              commit 後 │
                                       ▼
                        Redis Pub/Sub (invoice_events) / SMS
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as aioredis
from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .config import Settings, configure_logging
from .coordinator import InvoiceCoordinator
from .errors import (
    BillingError,
    CustomerNotFoundError,
    InvoiceNotFoundError,
    ProductNotFoundError,
    ValidationError,
)
from .models import Customer, Invoice, Product
from .notifications import (
    LoggingNotifier,
    NotificationDispatcher,
    Notifier,
    TwilioSmsNotifier,
    normalize_phone,
)
from .schema import create_tables
from .sequence import RedisSequenceAllocator, SqlSequenceAllocator
from .validators import is_valid_id, validate_customer, validate_product

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class SendSmsRequest(BaseModel):
    to: str = ""
    message: str = ""


def _build_notifier(settings: Settings) -> Notifier:
    if settings.sms_enabled:
        return TwilioSmsNotifier(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_phone_number,
        )
    logger.warning("Twilio credentials not configured; SMS will only be logged")
    return LoggingNotifier()


def redis_allocator_factory(redis: aioredis.Redis):
    """UnitOfWork 用。Redis 採番はセッションを使わない。"""

    def factory(_session: AsyncSession) -> RedisSequenceAllocator:
        return RedisSequenceAllocator(redis)

    return factory


def create_app(
    settings: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    redis: aioredis.Redis | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    """
    アプリを組み立てる。

    engine / redis / notifier を渡した場合はそれを使い、終了時に閉じない
    (テストから SQLite や fakeredis を差し込むため)。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or Settings.from_env()
        configure_logging(cfg.log_level)

        db = engine or create_async_engine(cfg.database_url, echo=False)
        redis_pool = redis or aioredis.from_url(
            cfg.redis_url,
            decode_responses=True,
            socket_timeout=cfg.redis_socket_timeout,
            socket_connect_timeout=cfg.redis_socket_timeout,
        )
        await create_tables(db)

        if cfg.sequence_backend == "redis":
            allocator_factory = redis_allocator_factory(redis_pool)
        else:
            allocator_factory = SqlSequenceAllocator

        app.state.settings = cfg
        app.state.async_session = sessionmaker(
            db, class_=AsyncSession, expire_on_commit=False
        )
        app.state.notifier = notifier or _build_notifier(cfg)
        app.state.dispatcher = NotificationDispatcher(
            app.state.notifier, cfg.phone_country_code
        )
        app.state.coordinator = InvoiceCoordinator(
            app.state.async_session,
            cfg,
            app.state.dispatcher,
            redis=redis_pool,
            allocator_factory=allocator_factory,
        )
        yield
        await app.state.coordinator.drain()
        await app.state.dispatcher.drain()
        if redis is None:
            await redis_pool.aclose()
        if engine is None:
            await db.dispose()

    app = FastAPI(title="Billing Service", lifespan=lifespan)

    # ── Error Handlers ───────────────────────────────

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(p) for p in e["loc"] if p != "body") or "body",
                "message": e["msg"],
            }
            for e in exc.errors()
        ]
        return JSONResponse(status_code=400, content=ValidationError(errors).to_dict())

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.exception("Database error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Server error"})

    # ── Invoice Endpoints ────────────────────────────

    @app.post("/api/invoices", response_model=Invoice, status_code=201)
    async def create_invoice(request: Request, payload: Any = Body(...)):
        """在庫を引き当てて請求書を作成する（SMS 通知はバックグラウンド）"""
        return await request.app.state.coordinator.create_invoice(payload)

    @app.get("/api/invoices", response_model=list[Invoice])
    async def list_invoices(request: Request):
        async with request.app.state.async_session() as session:
            return await queries.list_invoices(session)

    @app.get("/api/invoices/{invoice_id}", response_model=Invoice)
    async def get_invoice(request: Request, invoice_id: str):
        if not is_valid_id(invoice_id):
            raise InvoiceNotFoundError(invoice_id)
        async with request.app.state.async_session() as session:
            invoice = await queries.get_invoice(session, invoice_id)
            if not invoice:
                raise InvoiceNotFoundError(invoice_id)
            return invoice

    # ── Customer Endpoints ───────────────────────────

    @app.get("/api/customers", response_model=list[Customer])
    async def list_customers(request: Request, search: str | None = None):
        async with request.app.state.async_session() as session:
            return await queries.list_customers(session, search)

    @app.get("/api/customers/{customer_id}", response_model=Customer)
    async def get_customer(request: Request, customer_id: str):
        if not is_valid_id(customer_id):
            raise CustomerNotFoundError(customer_id)
        async with request.app.state.async_session() as session:
            customer = await queries.get_customer(session, customer_id)
            if not customer:
                raise CustomerNotFoundError(customer_id)
            return customer

    @app.post("/api/customers", response_model=Customer, status_code=201)
    async def create_customer(request: Request, payload: Any = Body(...)):
        data = validate_customer(payload)
        async with request.app.state.async_session() as session:
            return await commands.create_customer(session, data)

    @app.put("/api/customers/{customer_id}", response_model=Customer)
    async def update_customer(request: Request, customer_id: str, payload: Any = Body(...)):
        if not is_valid_id(customer_id):
            raise CustomerNotFoundError(customer_id)
        data = validate_customer(payload)
        async with request.app.state.async_session() as session:
            return await commands.update_customer(session, customer_id, data)

    @app.delete("/api/customers/{customer_id}")
    async def delete_customer(request: Request, customer_id: str):
        if not is_valid_id(customer_id):
            raise CustomerNotFoundError(customer_id)
        async with request.app.state.async_session() as session:
            await commands.delete_customer(session, customer_id)
        return {"message": "Customer deleted"}

    # ── Product Endpoints ────────────────────────────

    @app.get("/api/products", response_model=list[Product])
    async def list_products(
        request: Request, category: str | None = None, search: str | None = None
    ):
        async with request.app.state.async_session() as session:
            return await queries.list_products(session, category, search)

    @app.get("/api/products/{product_id}", response_model=Product)
    async def get_product(request: Request, product_id: str):
        if not is_valid_id(product_id):
            raise ProductNotFoundError(product_id)
        async with request.app.state.async_session() as session:
            product = await queries.get_product(session, product_id)
            if not product:
                raise ProductNotFoundError(product_id)
            return product

    @app.post("/api/products", response_model=Product, status_code=201)
    async def create_product(request: Request, payload: Any = Body(...)):
        data = validate_product(payload, creating=True)
        async with request.app.state.async_session() as session:
            return await commands.create_product(session, data)

    @app.put("/api/products/{product_id}", response_model=Product)
    async def update_product(request: Request, product_id: str, payload: Any = Body(...)):
        if not is_valid_id(product_id):
            raise ProductNotFoundError(product_id)
        data = validate_product(payload, creating=False)
        async with request.app.state.async_session() as session:
            return await commands.update_product(session, product_id, data)

    @app.delete("/api/products/{product_id}")
    async def delete_product(request: Request, product_id: str):
        if not is_valid_id(product_id):
            raise ProductNotFoundError(product_id)
        async with request.app.state.async_session() as session:
            await commands.delete_product(session, product_id)
        return {"message": "Product deleted"}

    @app.get("/api/categories", response_model=list[str])
    async def list_categories(request: Request):
        async with request.app.state.async_session() as session:
            return await queries.list_categories(session)

    # ── SMS ──────────────────────────────────────────

    @app.post("/api/send-sms")
    async def send_sms(request: Request, req: SendSmsRequest):
        """手動 SMS 送信。通知と違い、失敗はそのままエラーで返す。"""
        if not req.to or not req.message:
            raise ValidationError(
                [{"field": "to/message", "message": "Phone number and message are required"}]
            )
        cfg: Settings = request.app.state.settings
        await request.app.state.notifier.notify(
            normalize_phone(req.to, cfg.phone_country_code), req.message
        )
        return {"success": True, "message": "SMS sent successfully"}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "billing-service"}

    return app


app = create_app()
