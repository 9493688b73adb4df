"""Test configuration: in-memory SQLite database and an ASGI test client."""
import os
import uuid

# Provide default settings so tests run without a .env file.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("ROUND_OFF_TO_RUPEE", "false")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import pharmabill.models  # noqa: E402,F401
from pharmabill.api.deps import get_inventory, get_provider  # noqa: E402
from pharmabill.core.tenant_context import TenantContext  # noqa: E402
from pharmabill.database import Base, custom_json_dumps, get_db  # noqa: E402
from pharmabill.main import app  # noqa: E402
from tests.factories import RecordingInventory  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        json_serializer=custom_json_dumps,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def tenant() -> TenantContext:
    return TenantContext(tenant_id=uuid.uuid4(), seller_org_id=uuid.uuid4())


@pytest.fixture
def tenant_headers(tenant) -> dict:
    return {
        "X-Tenant-ID": str(tenant.tenant_id),
        "X-Seller-Org-ID": str(tenant.seller_org_id),
    }


@pytest.fixture
def inventory() -> RecordingInventory:
    return RecordingInventory()


@pytest.fixture
async def client(session_factory, inventory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_inventory] = lambda: inventory
    app.dependency_overrides[get_provider] = lambda: None
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.clear()
