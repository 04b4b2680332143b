"""Integration test fixtures: the FastAPI app over an in-memory database."""

from collections.abc import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from konfirmpay.api.app import create_app
from konfirmpay.api.dependencies import get_db_session
from konfirmpay.config import Settings
from konfirmpay.models import Base
from konfirmpay.verification.config import CallbackSecurityConfig, VerificationConfig
from konfirmpay.verification.events import EventEmitter, EventRecorder
from konfirmpay.verification.gateway import AsyncStubGateway
from tests.conftest import seed_merchants


def make_settings(**verification) -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        database_url_sync="sqlite://",
        host="127.0.0.1",
        port=8000,
        debug=True,
        create_schema=False,
        log_level="INFO",
        gateway="stub",
        verification=VerificationConfig(**verification),
        daraja=None,
    )


@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test, seeded with the fixture merchants."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.run_sync(seed_merchants)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Session for assertions made directly against the database."""
    async with AsyncSession(test_engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def stub_gateway() -> AsyncStubGateway:
    return AsyncStubGateway()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


ClientFactory = Callable[..., AsyncClient]


@pytest_asyncio.fixture
async def client_factory(
    test_engine: AsyncEngine,
    stub_gateway: AsyncStubGateway,
    recorder: EventRecorder,
) -> AsyncGenerator[ClientFactory, None]:
    """Build test clients for apps with custom verification settings."""
    clients: list[AsyncClient] = []

    def factory(**verification) -> AsyncClient:
        emitter = EventEmitter()
        emitter.on_all(recorder)
        app = create_app(make_settings(**verification), gateway=stub_gateway, emitter=emitter)

        async def override_db() -> AsyncGenerator[AsyncSession, None]:
            async with AsyncSession(test_engine, expire_on_commit=False, autoflush=False) as session:
                yield session

        app.dependency_overrides[get_db_session] = override_db
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://test")
        clients.append(client)
        return client

    yield factory
    for client in clients:
        await client.aclose()


@pytest_asyncio.fixture
async def client(client_factory: ClientFactory) -> AsyncClient:
    """Client for an app with default settings."""
    return client_factory()


@pytest_asyncio.fixture
async def chaining_client(client_factory: ClientFactory) -> AsyncClient:
    return client_factory(merchant_chaining=True)


@pytest_asyncio.fixture
async def guarded_client(client_factory: ClientFactory) -> AsyncClient:
    """Client for an app that requires the callback token."""
    return client_factory(callback_security=CallbackSecurityConfig(token="s3cret"))
