"""
Billing Service テスト用フィクスチャ

データベースは一時ファイルの SQLite (aiosqlite)、Redis は fakeredis。
"""

import fakeredis
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from services.billing.app import commands
from services.billing.app.config import Settings
from services.billing.app.coordinator import InvoiceCoordinator
from services.billing.app.errors import NotificationError
from services.billing.app.notifications import NotificationDispatcher
from services.billing.app.schema import create_tables


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, str]] = []

    async def notify(self, destination: str, message: str) -> bool:
        if self.fail:
            raise NotificationError(f"SMS to {destination} failed: transport unreachable")
        self.sent.append((destination, message))
        return True


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    return Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")


@pytest.fixture
async def engine(settings):
    engine = create_async_engine(settings.database_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def async_session(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def redis():
    r = fakeredis.FakeAsyncRedis(decode_responses=True)
    await r.flushall()
    yield r
    await r.aclose()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier)


@pytest.fixture
def coordinator(async_session, settings, dispatcher, redis):
    return InvoiceCoordinator(async_session, settings, dispatcher, redis=redis)


@pytest.fixture
def make_customer(async_session):
    async def _make(**overrides):
        data = {
            "name": "Ravi Kumar",
            "email": "ravi@example.com",
            "phone": "9876543210",
            "address": "12 Mount Road, Chennai",
        }
        data.update(overrides)
        async with async_session() as session:
            return await commands.create_customer(session, data)

    return _make


@pytest.fixture
def make_product(async_session):
    async def _make(name="Brake Pad Set", price=450.0, stock=10, category="Braking System"):
        async with async_session() as session:
            return await commands.create_product(
                session,
                {
                    "name": name,
                    "description": f"{name} for hatchbacks",
                    "price": price,
                    "stock": stock,
                    "category": category,
                },
            )

    return _make
