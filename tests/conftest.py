import os

# Settings are read at import time; configure them before the app is imported.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["TELEMETRY_ENABLED"] = "false"
os.environ["PAYMENTS_EVENTS_SECRET"] = "test_events_secret"
os.environ["PAYMENTS_INTEGRITY_SECRET"] = "test_integrity_secret"
os.environ["PAYMENTS_PUBLIC_KEY"] = "pub_test_key"
os.environ["INTERNAL_ADMIN_KEY"] = "test-internal"
os.environ["REFERENCE_PREFIX"] = "NIDO"

import pytest
import httpx

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

# Import Base + all models so metadata is complete
from marketplace.models import Base

from marketplace.main import app
from marketplace.core.db import get_db
from marketplace.api.deps import get_change_publisher, get_gateway, get_notifier, get_object_store
from marketplace.services.change_feed import ListingChange
from marketplace.services.container import build_services
from marketplace.services.storage import LocalObjectStore

from tests.fixtures_seed import draft_listing, ready_listing, paid_listing  # noqa: F401


def _test_db_url(tmp_path) -> str:
    # DATABASE_URL_TEST points the suite at PostgreSQL; SQLite file otherwise.
    return os.getenv("DATABASE_URL_TEST") or f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


class RecordingPublisher:
    def __init__(self):
        self.changes: list[ListingChange] = []

    async def publish(self, change: ListingChange) -> None:
        self.changes.append(change)


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple] = []

    async def send(self, recipient_email, recipient_name, listing_summary) -> None:
        self.sent.append((recipient_email, recipient_name, listing_summary))


class FakeGateway:
    def __init__(self):
        self.transactions: dict[str, dict] = {}

    async def find_by_reference(self, reference: str):
        return self.transactions.get(reference)


@pytest.fixture
async def async_engine(tmp_path):
    engine = create_async_engine(_test_db_url(tmp_path), future=True)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(bind=async_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(str(tmp_path / "documents"))


@pytest.fixture
def services(db_session, publisher, notifier, object_store, gateway):
    return build_services(
        db_session,
        publisher=publisher,
        notifier=notifier,
        object_store=object_store,
        gateway=gateway,
    )


@pytest.fixture
async def client(session_factory, publisher, notifier, object_store, gateway):
    """
    HTTP client against the test database; every request gets its own session.
    """
    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_change_publisher] = lambda: publisher
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_object_store] = lambda: object_store
    app.dependency_overrides[get_gateway] = lambda: gateway

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
