import asyncio
import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import text

from services.billing.app import commands, queries
from services.billing.app.coordinator import InvoiceCoordinator
from services.billing.app.errors import (
    AllocatorUnavailableError,
    CustomerNotFoundError,
    InsufficientStockError,
    PersistenceError,
    ProductNotFoundError,
    TransactionTimeoutError,
    ValidationError,
)
from services.billing.app.models import InvoiceStatus
from services.billing.app.notifications import NotificationDispatcher
from services.billing.app.sequence import RedisSequenceAllocator
from services.billing.app.unit_of_work import UnitOfWork

from .conftest import RecordingNotifier

pytestmark = pytest.mark.anyio


def request_for(customer, *items, **extra):
    return {
        "customerId": customer.id,
        "items": [
            {"productId": product.id, "quantity": quantity, "price": product.price}
            for product, quantity in items
        ],
        **extra,
    }


async def stock_of(async_session, product):
    async with async_session() as session:
        return (await queries.get_product(session, product.id)).stock


async def invoice_count(async_session):
    async with async_session() as session:
        return len(await queries.list_invoices(session))


# ── 正常系 ───────────────────────────────────────


async def test_first_invoice_debits_stock_and_gets_first_number(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(price=450.0, stock=10)

    invoice = await coordinator.create_invoice(request_for(customer, (product, 3)))

    assert invoice.invoice_number == "INV-00001"
    assert invoice.status == InvoiceStatus.PAID
    assert invoice.customer == customer.id
    assert invoice.grand_total == 3 * 450.0
    assert invoice.total == invoice.grand_total
    assert [(i.product, i.quantity, i.price, i.subtotal) for i in invoice.items] == [
        (product.id, 3, 450.0, 1350.0)
    ]
    assert await stock_of(async_session, product) == 7


async def test_invoice_is_persisted_with_items(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    pads = await make_product(name="Brake Pad Set", price=450.0, stock=10)
    oil = await make_product(name="Engine Oil 1L", price=380.5, stock=30, category="Oil")

    created = await coordinator.create_invoice(
        request_for(customer, (pads, 2), (oil, 4), date="2026-10-18")
    )

    async with async_session() as session:
        stored = await queries.get_invoice(session, created.id)
    assert stored.invoice_number == created.invoice_number
    assert stored.date == "2026-10-18"
    assert [i.product_name for i in stored.items] == ["Brake Pad Set", "Engine Oil 1L"]
    assert stored.total == pytest.approx(sum(i.subtotal for i in stored.items), abs=0.01)
    assert stored.total == pytest.approx(2 * 450.0 + 4 * 380.5)


async def test_invoice_numbers_increase(coordinator, make_customer, make_product):
    customer = await make_customer()
    product = await make_product(stock=10)

    numbers = [
        (await coordinator.create_invoice(request_for(customer, (product, 1)))).invoice_number
        for _ in range(3)
    ]

    assert numbers == ["INV-00001", "INV-00002", "INV-00003"]


async def test_price_defaults_to_catalog_price(coordinator, make_customer, make_product):
    customer = await make_customer()
    product = await make_product(price=199.99, stock=5)

    invoice = await coordinator.create_invoice(
        {"customerId": customer.id, "items": [{"productId": product.id, "quantity": 2}]}
    )

    assert invoice.items[0].price == 199.99
    assert invoice.grand_total == pytest.approx(399.98)


async def test_unit_price_is_captured_at_sale(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(price=450.0, stock=5)

    invoice = await coordinator.create_invoice(
        {
            "customerId": customer.id,
            "items": [{"productId": product.id, "quantity": 1, "price": 400}],
        }
    )

    assert invoice.items[0].price == 400.0
    async with async_session() as session:
        assert (await queries.get_product(session, product.id)).price == 450.0


async def test_tax_is_added_to_grand_total(
    async_session, settings, dispatcher, make_customer, make_product
):
    coordinator = InvoiceCoordinator(
        async_session, settings.model_copy(update={"tax_rate": 0.18}), dispatcher
    )
    customer = await make_customer()
    product = await make_product(price=100.0, stock=5)

    invoice = await coordinator.create_invoice(request_for(customer, (product, 2)))

    assert invoice.total == 200.0
    assert invoice.tax == 36.0
    assert invoice.grand_total == 236.0


async def test_duplicate_products_reserve_sequentially(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(stock=5)

    invoice = await coordinator.create_invoice(request_for(customer, (product, 2), (product, 3)))

    assert len(invoice.items) == 2
    assert await stock_of(async_session, product) == 0


async def test_duplicate_products_exceeding_stock_fail(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(stock=5)

    with pytest.raises(InsufficientStockError) as exc_info:
        await coordinator.create_invoice(request_for(customer, (product, 3), (product, 3)))

    assert exc_info.value.requested == 3
    assert exc_info.value.available == 2
    assert await stock_of(async_session, product) == 5


# ── 失敗系 ───────────────────────────────────────


async def test_insufficient_stock_leaves_everything_untouched(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(stock=2)

    with pytest.raises(InsufficientStockError) as exc_info:
        await coordinator.create_invoice(request_for(customer, (product, 5)))

    assert (exc_info.value.requested, exc_info.value.available) == (5, 2)
    assert await stock_of(async_session, product) == 2
    assert await invoice_count(async_session) == 0

    other = await make_product(name="Wiper Blade", stock=1, category="Accessories")
    invoice = await coordinator.create_invoice(request_for(customer, (other, 1)))
    assert invoice.invoice_number == "INV-00001"


async def test_failed_second_item_releases_first(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    first = await make_product(name="Air Filter", stock=10, category="Filters")
    second = await make_product(name="Radiator", stock=1, category="Cooling System")

    with pytest.raises(InsufficientStockError):
        await coordinator.create_invoice(request_for(customer, (first, 4), (second, 2)))

    assert await stock_of(async_session, first) == 10
    assert await stock_of(async_session, second) == 1
    assert await invoice_count(async_session) == 0


async def test_unknown_customer(coordinator, async_session, make_product):
    product = await make_product(stock=3)

    with pytest.raises(CustomerNotFoundError):
        await coordinator.create_invoice(
            {
                "customerId": str(uuid4()),
                "items": [{"productId": product.id, "quantity": 1}],
            }
        )

    assert await stock_of(async_session, product) == 3


async def test_unknown_product_after_valid_one(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(stock=3)
    missing = str(uuid4())

    with pytest.raises(ProductNotFoundError) as exc_info:
        await coordinator.create_invoice(
            {
                "customerId": customer.id,
                "items": [
                    {"productId": product.id, "quantity": 1},
                    {"productId": missing, "quantity": 1},
                ],
            }
        )

    assert exc_info.value.product_id == missing
    assert await stock_of(async_session, product) == 3


async def test_first_failing_line_decides_the_error(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    short = await make_product(stock=1)

    with pytest.raises(InsufficientStockError) as exc_info:
        await coordinator.create_invoice(
            {
                "customerId": customer.id,
                "items": [
                    {"productId": short.id, "quantity": 5},
                    {"productId": str(uuid4()), "quantity": 1},
                ],
            }
        )

    assert exc_info.value.product_id == short.id
    assert await stock_of(async_session, short) == 1
    assert await invoice_count(async_session) == 0


async def test_validation_error_has_no_side_effects(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(stock=3)

    with pytest.raises(ValidationError):
        await coordinator.create_invoice(
            {
                "customerId": customer.id,
                "items": [
                    {"productId": product.id, "quantity": 1},
                    {"productId": product.id, "quantity": -1},
                ],
            }
        )

    assert await stock_of(async_session, product) == 3


async def test_client_total_mismatch_is_rejected(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(price=450.0, stock=3)

    with pytest.raises(ValidationError) as exc_info:
        await coordinator.create_invoice(request_for(customer, (product, 2), total=850))

    assert exc_info.value.errors[0]["field"] == "total"
    assert await stock_of(async_session, product) == 3


async def test_client_total_within_tolerance_is_accepted(
    coordinator, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(price=33.33, stock=3)

    invoice = await coordinator.create_invoice(request_for(customer, (product, 3), total=99.995))

    assert invoice.total == pytest.approx(99.99)


async def test_allocator_failure_rolls_back_stock(
    async_session, settings, dispatcher, make_customer, make_product
):
    class DownRedis:
        async def incr(self, key):
            raise RedisConnectionError("Connection refused")

    coordinator = InvoiceCoordinator(
        async_session,
        settings,
        dispatcher,
        allocator_factory=lambda _session: RedisSequenceAllocator(DownRedis()),
    )
    customer = await make_customer()
    product = await make_product(stock=10)

    with pytest.raises(AllocatorUnavailableError):
        await coordinator.create_invoice(request_for(customer, (product, 3)))

    assert await stock_of(async_session, product) == 10
    assert await invoice_count(async_session) == 0


async def test_persistence_failure_rolls_back_stock(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(stock=10)

    # 件数ベースで採番していた頃の請求書が INV-00001 を使っている
    async with async_session() as session:
        await session.execute(
            text("""
                INSERT INTO invoices
                    (id, invoice_number, customer_id, customer_name,
                     total, tax, grand_total, date, status, created_at)
                VALUES
                    (:id, 'INV-00001', :customer, 'legacy', 0, 0, 0,
                     '2024-01-01', 'paid', :now)
            """),
            {"id": str(uuid4()), "customer": customer.id, "now": datetime.now(timezone.utc)},
        )
        await session.commit()

    with pytest.raises(PersistenceError):
        await coordinator.create_invoice(request_for(customer, (product, 3)))

    assert await stock_of(async_session, product) == 10
    assert await invoice_count(async_session) == 1


async def test_timeout_rolls_back_stock(
    async_session, settings, dispatcher, make_customer, make_product
):
    class SlowAllocator:
        def __init__(self, session):
            pass

        async def next(self, sequence_name):
            await asyncio.sleep(5)

    coordinator = InvoiceCoordinator(
        async_session,
        settings.model_copy(update={"invoice_timeout_seconds": 0.2}),
        dispatcher,
        allocator_factory=SlowAllocator,
    )
    customer = await make_customer()
    product = await make_product(stock=10)

    with pytest.raises(TransactionTimeoutError):
        await coordinator.create_invoice(request_for(customer, (product, 3)))

    assert await stock_of(async_session, product) == 10
    assert await invoice_count(async_session) == 0


# ── コミット後の副作用 ───────────────────────────


async def test_customer_is_notified_after_commit(
    coordinator, dispatcher, notifier, make_customer, make_product
):
    customer = await make_customer(name="Ravi", phone="98765 43210")
    product = await make_product(price=450.0, stock=10)

    invoice = await coordinator.create_invoice(request_for(customer, (product, 3)))
    await dispatcher.drain()

    assert len(notifier.sent) == 1
    destination, message = notifier.sent[0]
    assert destination == "+919876543210"
    assert message.startswith("Hello Ravi, your invoice from Durai Auto Parts")
    assert invoice.invoice_number in message
    assert "₹1350.00" in message


async def test_notification_failure_does_not_fail_invoice(
    async_session, settings, redis, make_customer, make_product, caplog
):
    failing = NotificationDispatcher(RecordingNotifier(fail=True))
    coordinator = InvoiceCoordinator(async_session, settings, failing, redis=redis)
    customer = await make_customer()
    product = await make_product(stock=10)

    with caplog.at_level(logging.ERROR):
        invoice = await coordinator.create_invoice(request_for(customer, (product, 3)))
        await failing.drain()

    assert invoice.invoice_number == "INV-00001"
    assert await stock_of(async_session, product) == 7
    assert "Failed to send notification" in caplog.text


async def test_no_notification_for_failed_invoice(
    coordinator, dispatcher, notifier, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(stock=1)

    with pytest.raises(InsufficientStockError):
        await coordinator.create_invoice(request_for(customer, (product, 2)))
    await dispatcher.drain()

    assert notifier.sent == []


async def test_invoice_created_event_is_published(
    coordinator, redis, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(stock=10)
    pubsub = redis.pubsub()
    await pubsub.subscribe("invoice_events")

    invoice = await coordinator.create_invoice(request_for(customer, (product, 2)))
    await coordinator.drain()

    message = None
    for _ in range(20):
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
        if message:
            break
    await pubsub.aclose()

    event = json.loads(message["data"])
    assert event["event_type"] == "InvoiceCreated"
    assert event["data"]["invoice_number"] == invoice.invoice_number
    assert event["data"]["items"] == [
        {"product_id": product.id, "quantity": 2, "price": product.price}
    ]


async def test_redis_numbers_skip_after_failure_but_never_repeat(
    async_session, settings, dispatcher, redis, make_customer, make_product, monkeypatch
):
    coordinator = InvoiceCoordinator(
        async_session,
        settings,
        dispatcher,
        redis=redis,
        allocator_factory=lambda _session: RedisSequenceAllocator(redis),
    )
    customer = await make_customer()
    product = await make_product(stock=10)

    first = await coordinator.create_invoice(request_for(customer, (product, 1)))

    async def broken_insert(session, invoice, now):
        raise PersistenceError(f"Failed to save invoice {invoice.invoice_number}")

    with monkeypatch.context() as m:
        m.setattr(commands, "insert_invoice", broken_insert)
        with pytest.raises(PersistenceError):
            await coordinator.create_invoice(request_for(customer, (product, 1)))

    third = await coordinator.create_invoice(request_for(customer, (product, 1)))

    assert (first.invoice_number, third.invoice_number) == ("INV-00001", "INV-00003")
    assert await stock_of(async_session, product) == 8


async def test_slow_event_publish_does_not_delay_invoice(
    async_session, settings, dispatcher, make_customer, make_product
):
    unblock = asyncio.Event()

    class StalledRedis:
        async def publish(self, channel, message):
            await unblock.wait()
            return 0

    coordinator = InvoiceCoordinator(
        async_session, settings, dispatcher, redis=StalledRedis()
    )
    customer = await make_customer()
    product = await make_product(stock=10)

    invoice = await asyncio.wait_for(
        coordinator.create_invoice(request_for(customer, (product, 1))), timeout=2
    )

    assert invoice.invoice_number == "INV-00001"
    unblock.set()
    await coordinator.drain()


async def test_commit_is_not_cut_off_by_the_deadline(
    async_session, settings, dispatcher, make_customer, make_product, monkeypatch
):
    coordinator = InvoiceCoordinator(
        async_session,
        settings.model_copy(update={"invoice_timeout_seconds": 0.2}),
        dispatcher,
    )
    customer = await make_customer()
    product = await make_product(stock=10)
    commit = UnitOfWork.commit

    async def slow_commit(self):
        await asyncio.sleep(0.4)
        await commit(self)

    monkeypatch.setattr(UnitOfWork, "commit", slow_commit)

    invoice = await coordinator.create_invoice(request_for(customer, (product, 3)))

    assert invoice.invoice_number == "INV-00001"
    assert await stock_of(async_session, product) == 7
    assert await invoice_count(async_session) == 1


# ── 同時実行 ─────────────────────────────────────


async def test_concurrent_invoices_never_oversell(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(stock=5)

    results = await asyncio.gather(
        *(coordinator.create_invoice(request_for(customer, (product, 3))) for _ in range(4)),
        return_exceptions=True,
    )

    invoices = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(invoices) == 1
    assert len(failures) == 3
    assert all(isinstance(f, InsufficientStockError) for f in failures)
    assert invoices[0].invoice_number == "INV-00001"
    assert await stock_of(async_session, product) == 2
    assert await invoice_count(async_session) == 1


async def test_concurrent_invoices_get_distinct_numbers(
    coordinator, async_session, make_customer, make_product
):
    customer = await make_customer()
    product = await make_product(stock=10)

    invoices = await asyncio.gather(
        *(coordinator.create_invoice(request_for(customer, (product, 1))) for _ in range(5))
    )

    assert sorted(i.invoice_number for i in invoices) == [
        f"INV-0000{n}" for n in range(1, 6)
    ]
    assert await stock_of(async_session, product) == 5
