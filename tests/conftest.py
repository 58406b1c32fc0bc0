"""Shared test fixtures."""

import os

# Tests never talk to Redis; rate limit counters stay in memory
os.environ.setdefault("ATELIER_REDIS_ENABLED", "false")

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from atelier.api.middleware.rate_limit import limiter
from atelier.db.base import Base
# Import all models to register with Base.metadata
import atelier.db.models  # noqa: F401
from atelier.db.models.job import JobRow
from atelier.db.models.tenant import BillingCycleRow, TenantRow
from atelier.integrations.storage import LocalObjectStore
from atelier.services.admission import AdmissionController
from atelier.workers.base import HandlerContext
from atelier.workers.queue import JobQueue

LEASE_SECONDS = 60


@pytest.fixture(autouse=True)
def reset_rate_limits():
    """Start every test with empty rate limit counters."""
    limiter.reset()


@pytest.fixture
async def db_engine(tmp_path):
    """File-backed SQLite engine so concurrent sessions get separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'atelier_test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed_tenant(session_factory):
    """Insert a tenant (and optionally a current billing cycle)."""

    async def _seed(
        tenant_id: str = "tnt_active",
        billing_status: str = "active",
        usage_limit: int | None = None,
        with_cycle: bool = False,
        customer_id: str | None = None,
        subscription_id: str | None = None,
    ) -> TenantRow:
        now = datetime.now(timezone.utc)
        tenant = TenantRow(
            tenant_id=tenant_id,
            name=f"Tenant {tenant_id}",
            billing_status=billing_status,
            stripe_customer_id=customer_id,
            stripe_subscription_id=subscription_id,
        )
        async with session_factory() as session:
            session.add(tenant)
            await session.flush()
            if with_cycle or usage_limit is not None:
                session.add(BillingCycleRow(
                    cycle_id=f"cyc_{tenant_id}",
                    tenant_id=tenant_id,
                    period_start=now - timedelta(days=1),
                    period_end=now + timedelta(days=29),
                    usage_limit=usage_limit,
                    stripe_subscription_id=subscription_id,
                ))
            await session.commit()
        return tenant

    return _seed


@pytest.fixture
def count_jobs(session_factory):
    async def _count() -> int:
        async with session_factory() as session:
            result = await session.execute(select(func.count()).select_from(JobRow))
            return int(result.scalar_one())

    return _count


@pytest.fixture
def queue(session_factory):
    return JobQueue(
        session_factory,
        AdmissionController(),
        lease_timeout_seconds=LEASE_SECONDS,
        max_attempts=3,
    )


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStore(tmp_path / "uploads", "/uploads")


class FakeAIProvider:
    """In-memory stand-in for the OpenAI-compatible provider."""

    image_model = "fake-image-model"

    def __init__(self, failures: list[Exception] | None = None):
        self.failures = list(failures or [])
        self.calls: list[tuple] = []

    def _maybe_fail(self):
        if self.failures:
            raise self.failures.pop(0)

    async def generate_image(self, prompt: str, size: str, model: str | None = None) -> bytes:
        self.calls.append(("generate", prompt, size, model))
        self._maybe_fail()
        return b"\x89PNG generated " + prompt.encode("utf-8")

    async def edit_image(self, image: bytes, prompt: str, size: str, mask: bytes | None = None) -> bytes:
        self.calls.append(("edit", prompt, size, mask is not None))
        self._maybe_fail()
        return b"\x89PNG edited " + image[:16]

    async def describe_image(self, image_url: str, detail: str = "auto") -> str:
        self.calls.append(("describe", image_url[:32], detail))
        self._maybe_fail()
        return "A small red fox sitting in snow."

    async def download(self, url: str) -> bytes:
        self.calls.append(("download", url))
        self._maybe_fail()
        return b"remote-bytes"

    async def aclose(self) -> None:
        pass


@pytest.fixture
def ai_provider_factory():
    """Build a provider that raises the given exceptions on its first calls."""
    return FakeAIProvider


@pytest.fixture
def ai_provider():
    return FakeAIProvider()


@pytest.fixture
def handler_context(storage, ai_provider):
    return HandlerContext(storage=storage, ai_provider=ai_provider, storage_base_url="/uploads")


@pytest.fixture
def app(db_engine, session_factory, storage):
    """Create a test application instance backed by the test database."""
    from atelier.main import create_app

    _app = create_app()
    _app.state.db_engine = db_engine
    _app.state.db_session_factory = session_factory
    _app.state.redis = None
    _app.state.storage = storage
    return _app


@pytest.fixture
async def client(app):
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
