import os

# Set required env vars BEFORE any app imports trigger Settings()
os.environ.setdefault("OPERATOR_API_KEY", "test-operator-key")
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import json
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from catalog_sync.database import Base, get_db
from catalog_sync.main import app
from catalog_sync.repositories.mappings import MappingRepository
from catalog_sync.schemas import MappingIn
from catalog_sync.services.conditions import MappingConfigurationProvider
from catalog_sync.services.engine import RequestPacer, SyncEngine
from catalog_sync.services.product_api import ApiResponse, parse_item
from catalog_sync.services.scheduler import get_engine

TEST_OPERATOR_KEY = "test-operator-key"
START = datetime(2026, 3, 1, 12, 0, 0)


class FakeClock:
    """Settable naive-UTC clock."""
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class FakeProductApi:
    """
    Scripted product API. `outcomes[external_id]` is a list consumed one per
    call: a dict becomes a JSON payload, an exception is raised.
    """
    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.calls = []

    async def get_item(self, external_id, region, resources, endpoint="items"):
        self.calls.append(external_id)
        script = self.outcomes[external_id]
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, Exception):
            raise outcome
        return ApiResponse(payload=json.dumps(outcome).encode(), status=200)

    def parse_item(self, payload):
        return parse_item(payload)


class InMemoryCancelFlags:
    def __init__(self):
        self.flags = set()

    async def set(self, job_name):
        self.flags.add(job_name)
        return True

    async def is_set(self, job_name):
        return job_name in self.flags

    async def clear(self, job_name):
        self.flags.discard(job_name)


def product(external_id, price="29.99", **extra):
    return {"external_id": external_id, "price": price, "currency": "USD", **extra}


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def cancel_flags():
    return InMemoryCancelFlags()


@pytest.fixture
def make_engine(session_factory, clock, monotonic, cancel_flags):
    def _make(api, **kwargs):
        kwargs.setdefault("cancel_flags", cancel_flags)
        kwargs.setdefault("request_pacer", RequestPacer(0))
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("monotonic", monotonic)
        kwargs.setdefault("config", MappingConfigurationProvider())
        return SyncEngine(session_factory, api, **kwargs)
    return _make


@pytest.fixture
def seed(session_factory, clock):
    async def _seed(*pairs, **fields):
        async with session_factory() as session:
            repo = MappingRepository(session, clock)
            for local_id, external_id in pairs:
                await repo.upsert(MappingIn(local_id=local_id, external_id=external_id, **fields))
            await session.commit()
    return _seed


@pytest.fixture
def api():
    return FakeProductApi()


@pytest_asyncio.fixture
async def client(session_factory, make_engine, api):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    engine = make_engine(api)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_engine] = lambda: engine

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Operator-Key": TEST_OPERATOR_KEY},
    ) as c:
        yield c

    app.dependency_overrides.clear()
