"""Test fixtures for the referral tracker test suite."""

import asyncio
import os
from collections.abc import AsyncGenerator
from uuid import uuid4

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment variables BEFORE importing app modules
os.environ.update({
    "DATABASE_URL": "sqlite+aiosqlite://",
    "DEFAULT_DESTINATION": "https://default.example.com",
    "SALT": "s",
    "PIN": "1234",
    "GEO_API_KEY": "test-geo-key",
    "GEO_PROVIDER_URL": "http://geo.test",
    "BLOCKED_IPS": "6.6.6.6",
    "ENVIRONMENT": "test",
    "LOG_LEVEL": "WARNING",
})

from app.config import Settings  # noqa: E402
from app.database import build_session_factory, drop_db, get_session, init_db  # noqa: E402
from app.main import create_app  # noqa: E402
from app.models.ref_event import RefEvent  # noqa: E402
from app.services.event_store import now_ns  # noqa: E402
from app.utils.access_scope import derive_scope  # noqa: E402

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite://")

IPSTACK_PAYLOAD = {
    "ip": "9.9.9.9",
    "continent_name": "North America",
    "country_name": "United States",
    "region_name": "California",
    "city": "Berkeley",
    "zip": "94709",
    "latitude": 37.8767,
    "longitude": -122.2676,
}


class GeoProviderStub:
    """Records provider calls and answers with a canned payload."""

    def __init__(self):
        self.calls: list[httpx.Request] = []
        self.payload: object = IPSTACK_PAYLOAD
        self.status_code = 200
        self.exception: Exception | None = None
        self.delay: float | None = None
        self.completed = 0

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exception:
            raise self.exception
        self.completed += 1
        return httpx.Response(self.status_code, json=self.payload)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def settings() -> Settings:
    """Settings for the test environment."""
    return Settings()


@pytest.fixture
def geo_provider() -> GeoProviderStub:
    return GeoProviderStub()


@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    """Provide a session on a fresh database that is discarded after each test."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        # One shared connection keeps the in-memory database alive
        engine = create_async_engine(
            TEST_DATABASE_URL,
            echo=False,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_async_engine(TEST_DATABASE_URL, echo=False)
    await init_db(engine)

    factory = build_session_factory(engine)
    async with factory() as session:
        yield session
        await session.rollback()

    await drop_db(engine)
    await engine.dispose()


@pytest.fixture
async def client(
    db: AsyncSession,
    settings: Settings,
    geo_provider: GeoProviderStub,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client with database session override."""
    app = create_app(settings, geo_client=geo_provider.client())

    async def override_get_session():
        yield db

    app.dependency_overrides[get_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    await app.state.geo_resolver.aclose()
    await app.state.engine.dispose()


async def add_event(db: AsyncSession, **kwargs) -> RefEvent:
    """Helper to store an event directly, bypassing the pipeline."""
    defaults = {
        "id": str(uuid4()),
        "created_at": now_ns(),
        "name": "promo",
        "destination": "https://example.com",
        "request_address": "9.9.9.9",
        "user_agent": "Mozilla/5.0",
        "access_scope_hash": derive_scope("1234", "s"),
    }
    defaults.update(kwargs)
    event = RefEvent(**defaults)
    db.add(event)
    await db.flush()
    return event


LOCATED = {
    "continent": "Europe",
    "country": "Germany",
    "region": "Berlin",
    "city": "Berlin",
    "postal_code": "10115",
    "latitude": 52.52,
    "longitude": 13.405,
}
