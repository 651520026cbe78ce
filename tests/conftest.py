"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
import httpx
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool
from models.base import Base
from order_sync.error_categorizer import ErrorCategorizer
from order_sync.extractors.api_fetcher import RemoteRecordFetcher
from order_sync.transformers.order_transformer import OrderTransformer
from order_sync.loaders.order_store import SQLAlchemyOrderStore
from order_sync.loaders.batch_writer import BatchUpsertWriter
from order_sync.retry import RetryExecutor
from order_sync.runner import SyncOrchestrator

# In-memory database shared by every connection of the engine
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Controllable UTC clock for the error categorizer"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingSleep:
    """Async sleep replacement that returns immediately and remembers delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float):
        self.delays.append(seconds)


class FakeOrderAPI:
    """
    Remote order API served through httpx.MockTransport.

    ``failures`` maps a page number to the responses or exceptions returned
    (in order) before that page is served normally.
    """

    def __init__(self, records: List[Dict[str, Any]], failures: Optional[Dict[int, list]] = None):
        self.records = records
        self.failures = {page: list(items) for page, items in (failures or {}).items()}
        self.requests: List[Dict[str, str]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        self.requests.append({**params, "authorization": request.headers.get("Authorization")})

        page = int(params["page"])
        per_page = int(params["per_page"])

        pending = self.failures.get(page)
        if pending:
            failure = pending.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return failure

        start = (page - 1) * per_page
        return httpx.Response(200, json={"data": self.records[start:start + per_page]})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def pages_requested(self) -> List[int]:
        return [int(r["page"]) for r in self.requests]


def make_raw_order(order_id: int, **overrides) -> Dict[str, Any]:
    """Raw order payload as the remote API returns it (camelCase)"""
    record = {
        "id": str(order_id),
        "orderNumber": f"ORD-{order_id:05d}",
        "status": "processed",
        "customerName": f"Customer {order_id}",
        "customerEmail": f"customer{order_id}@example.com",
        "balanceDollarAmount": "1250.555",
        "totalAmountDollarAmount": 5400,
        "rto": "yes",
        "dateOrdered": "2024-05-01T10:00:00Z",
        "dateDelivered": "2024-05-20T15:30:00Z",
        "buildingAddons": [{"name": "Loft", "price": 250}],
        "invoiceURL": f"https://example.com/invoices/{order_id}",
    }
    record.update(overrides)
    return record


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_sleep():
    return RecordingSleep()


@pytest.fixture
def categorizer(clock, no_sleep):
    return ErrorCategorizer(clock=clock, sleep=no_sleep)


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def store(session_factory):
    return SQLAlchemyOrderStore(session_factory, timeout=5.0)


@pytest.fixture
def build_orchestrator(categorizer, no_sleep):
    """Factory wiring a SyncOrchestrator around a FakeOrderAPI and a store"""

    def _build(api: FakeOrderAPI, store, page_size: int = 2, batch_size: int = 2, **kwargs):
        fetcher = RemoteRecordFetcher(
            base_url="https://orders.example.com",
            api_path="api/public",
            endpoint="customer-orders/v1",
            api_token="secret-token",
            categorizer=categorizer,
            page_size=page_size,
            max_pages=50,
            page_delay=0,
            transport=api.transport,
            sleep=no_sleep,
        )
        writer = BatchUpsertWriter(store, RetryExecutor(categorizer), batch_size=batch_size)
        return SyncOrchestrator(
            fetcher=fetcher,
            transformer=OrderTransformer(),
            writer=writer,
            store=store,
            categorizer=categorizer,
            sleep=no_sleep,
            **kwargs
        )

    return _build
