import os

# Settings are read at import time: point them at a throwaway SQLite file first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_hypemarket.db"
os.environ["SECRET_KEY"] = "test-secret-key-for-hypemarket"
os.environ["APP_ENV"] = "test"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["STRIPE_SECRET_KEY"] = ""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from hypemarket.api.deps import get_gateway, get_notifier
from hypemarket.core.permissions import Role, UserType
from hypemarket.database import AsyncSessionLocal, Base, engine
from hypemarket.main import app
from hypemarket.models.marketplace import Listing
from hypemarket.models.user import User
from tests.factories import FakeGateway, RecordingNotifier, make_listing, make_user


@pytest_asyncio.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as session:
        yield session


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def seller(db) -> User:
    return await make_user(db, role=Role.SELLER, user_type=UserType.SELLER, payout_account_id="acct_seller")


@pytest_asyncio.fixture
async def buyer(db) -> User:
    return await make_user(db, role=Role.BUYER, user_type=UserType.BUYER)


@pytest_asyncio.fixture
async def other_buyer(db) -> User:
    return await make_user(db, role=Role.BUYER, user_type=UserType.BUYER)


@pytest_asyncio.fixture
async def admin(db) -> User:
    return await make_user(db, role=Role.ADMIN, user_type=UserType.BOTH)


@pytest_asyncio.fixture
async def listing(db, seller) -> Listing:
    return await make_listing(db, seller)


@pytest_asyncio.fixture
async def client(db, gateway, notifier):
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
