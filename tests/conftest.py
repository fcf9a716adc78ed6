"""
Test Suite Configuration
"""
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shopsync.config.settings import AggregationSettings, SchedulerSettings
from shopsync.database.connection import build_engine, build_session_factory
from shopsync.database.models import Base, JobStatus, Order, OrderLineItem, SyncJob
from shopsync.ingestion.loader import RawRowLoader
from shopsync.ingestion.parsers import CurrencyNormalizer
from shopsync.jobs.store import JobStore
from shopsync.shopify.client import ShopifyClient

SHOP = "test-shop.myshopify.com"
OTHER_SHOP = "other-shop.myshopify.com"


# =============================================================================
# SETTINGS
# =============================================================================

@pytest.fixture
def scheduler_settings() -> SchedulerSettings:
    """Scheduler settings without pauses"""
    return SchedulerSettings(
        batch_size=20,
        wave_pause_seconds=0,
        item_pause_seconds=0,
        invocation_budget_seconds=60,
    )


@pytest.fixture
def aggregation_settings() -> AggregationSettings:
    """Small pages so pagination is exercised"""
    return AggregationSettings(page_size=2, max_reaggregation_depth=2)


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
async def test_engine(tmp_path):
    """Create test database engine, one file per test so sessions get their own connections"""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'shopsync.db'}")
    
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    
    yield engine
    
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(test_engine)


@pytest.fixture
def store(session_factory, scheduler_settings) -> JobStore:
    return JobStore(session_factory=session_factory, scheduler_settings=scheduler_settings)


@pytest.fixture
def loader(session_factory) -> RawRowLoader:
    return RawRowLoader(session_factory=session_factory, chunk_size=2)


@pytest.fixture
def normalizer() -> CurrencyNormalizer:
    return CurrencyNormalizer(
        rates={"DKK": Decimal("1"), "EUR": Decimal("7.5")},
        default_tax_rates={"DKK": Decimal("0.25"), "EUR": Decimal("0.25")},
    )


# =============================================================================
# ROW FACTORIES
# =============================================================================

@pytest.fixture
def add_job(session_factory) -> Callable:
    """Insert a job row directly"""
    async def _add(
        object_type: str = "orders",
        start: date = date(2024, 10, 1),
        end: Optional[date] = None,
        status: JobStatus = JobStatus.PENDING,
        shop: str = SHOP,
        **values,
    ) -> SyncJob:
        job = SyncJob(
            shop=shop,
            object_type=object_type,
            start_date=start,
            end_date=end or start,
            status=status,
            **values,
        )
        async with session_factory() as session:
            session.add(job)
            await session.commit()
        return job
    return _add


@pytest.fixture
def add_line_item(session_factory) -> Callable:
    """Insert a line-item row directly"""
    async def _add(
        order_id: str,
        sku: str,
        created_at: datetime,
        quantity: int = 1,
        price: str = "100",
        shop: str = SHOP,
        **values,
    ) -> OrderLineItem:
        row = OrderLineItem(
            shop=shop,
            order_id=order_id,
            sku=sku,
            currency="DKK",
            created_at_original=created_at,
            quantity=quantity,
            price_base=Decimal(price),
            updated_at=values.pop("updated_at", created_at),
            **values,
        )
        async with session_factory() as session:
            session.add(row)
            await session.commit()
        return row
    return _add


@pytest.fixture
def add_order(session_factory) -> Callable:
    """Insert an order row directly"""
    async def _add(order_id: str, created_at: datetime, shop: str = SHOP, **values) -> Order:
        row = Order(
            shop=shop,
            order_id=order_id,
            currency="DKK",
            created_at_original=created_at,
            updated_at=values.pop("updated_at", created_at),
            **values,
        )
        async with session_factory() as session:
            session.add(row)
            await session.commit()
        return row
    return _add


# =============================================================================
# FAKE UPSTREAM
# =============================================================================

class FakeShopify:
    """
    Scripted upstream platform for httpx.MockTransport.
    
    GraphQL requests are answered by the first handler whose key occurs in
    the query text; REST paths and download URLs map to canned responses.
    """
    
    def __init__(self):
        self.graphql_handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self.rest: Dict[str, Any] = {}
        self.downloads: Dict[str, str] = {}
        self.requests: List[httpx.Request] = []
        self.graphql_calls: List[str] = []
    
    def on_graphql(self, key: str, responder: Callable[[Dict[str, Any]], Any]) -> None:
        self.graphql_handlers[key] = responder
    
    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url in self.downloads:
            return httpx.Response(200, text=self.downloads[url])
        
        path = request.url.path
        if path.endswith("/graphql.json"):
            payload = json.loads(request.content)
            query = payload["query"]
            for key, responder in self.graphql_handlers.items():
                if key in query:
                    self.graphql_calls.append(key)
                    result = responder(payload.get("variables") or {})
                    if isinstance(result, httpx.Response):
                        return result
                    return httpx.Response(200, json={"data": result})
            return httpx.Response(400, json={"errors": [{"message": "unexpected query"}]})
        
        for suffix, body in self.rest.items():
            if path.endswith(suffix):
                if isinstance(body, httpx.Response):
                    return body
                return httpx.Response(200, json=body)
        return httpx.Response(404, json={"errors": "Not Found"})
    
    def client(self, shop: str = SHOP) -> ShopifyClient:
        return ShopifyClient(
            shop,
            "test-token",
            api_version="2024-10",
            max_retries=3,
            backoff_multiplier=0,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def fake_shopify() -> FakeShopify:
    return FakeShopify()
