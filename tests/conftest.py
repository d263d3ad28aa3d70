"""Shared test fixtures: async SQLite engine, runtime, test client, auth helpers."""

import os

# Set env vars BEFORE importing app modules (config reads at import time)
os.environ.setdefault("COPYCHIEF_SECRET_KEY", "test-secret-key-for-tests")
os.environ.setdefault("COPYCHIEF_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["COPYCHIEF_TESTING"] = "1"  # Bypass rate limiter middleware in tests

import asyncio
import sys

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from copychief.database import Base, get_db  # noqa: E402
from copychief.main import app  # noqa: E402
from copychief.api.auth import _rate_limit_store  # noqa: E402
from copychief.middleware.rate_limiter import _buckets as _middleware_buckets  # noqa: E402
from copychief.models import Account  # noqa: E402
from copychief.retry import RetryPolicy  # noqa: E402
from copychief.runtime import build_runtime  # noqa: E402
from copychief.services.connections import InMemoryConnectionStore  # noqa: E402
from copychief.services.provider import CompletionChunk, Usage  # noqa: E402

# Use SelectorEventLoop on Windows to avoid ProactorEventLoop cleanup hangs
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# One shared in-memory SQLite connection for the app, the ledger and the tests
test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


class FakeProvider:
    """Scripted completion provider that records every call."""

    model = "fake-model"

    def __init__(self, chunks=None, usage=None, error=None, gate=None):
        self.chunks = ["Hello", " world"] if chunks is None else chunks
        self.usage = usage
        self.error = error
        self.gate = gate  # asyncio.Event; when set, streaming pauses until it fires
        self.calls: list[tuple[str, list[dict]]] = []

    async def stream(self, system, messages):
        self.calls.append((system, messages))
        for i, text in enumerate(self.chunks):
            if self.gate is not None and i == 1:
                await self.gate.wait()
            yield CompletionChunk(text=text)
        if self.error is not None:
            raise self.error
        if self.usage is not None:
            yield CompletionChunk(usage=Usage(*self.usage))


@pytest.fixture(autouse=True)
async def setup_db():
    """Create all tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def clear_rate_limits():
    """Clear in-memory rate limit stores between tests (auth + middleware)."""
    _rate_limit_store.clear()
    _middleware_buckets.clear()
    yield
    _rate_limit_store.clear()
    _middleware_buckets.clear()


async def _override_get_db():
    async with TestSession() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise

app.dependency_overrides[get_db] = _override_get_db


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
async def runtime(provider):
    """A runtime wired to the test database, started and stopped around each test.

    ASGITransport does not run the lifespan handler, so the app gets this
    runtime directly.
    """
    rt = build_runtime(
        TestSession,
        provider=provider,
        store=InMemoryConnectionStore(),
        commit_policy=RetryPolicy(max_attempts=2, base_delay=0.0),
    )
    await rt.start()
    app.state.runtime = rt
    yield rt
    await rt.stop()


@pytest.fixture
async def client(runtime):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
async def db():
    async with TestSession() as session:
        yield session


async def create_test_user(
    client: AsyncClient,
    email: str = "test@example.com",
    password: str = "testpass123",
    full_name: str = "Test User",
) -> dict:
    """Helper: sign up a user and return the token response."""
    resp = await client.post("/api/v1/auth/signup", json={
        "email": email,
        "password": password,
        "full_name": full_name,
    })
    assert resp.status_code == 201, f"Signup failed: {resp.text}"
    return resp.json()


def auth_headers(token: str) -> dict:
    """Helper: return Authorization header dict."""
    return {"Authorization": f"Bearer {token}"}


async def current_account_id(client: AsyncClient, token: str) -> int:
    resp = await client.get("/api/v1/auth/me", headers=auth_headers(token))
    assert resp.status_code == 200, resp.text
    return resp.json()["id"]


async def create_account(
    email: str = "ledger@example.com",
    monthly: int = 100_000,
    extra: int = 0,
    consumed: int = 0,
    allowance: int | None = None,
    is_admin: bool = False,
) -> int:
    """Helper: insert an account row directly with the given balance."""
    from datetime import datetime, timezone

    async with TestSession() as session:
        account = Account(
            email=email,
            hashed_password="x",
            is_admin=is_admin,
            monthly_allowance=allowance if allowance is not None else monthly + consumed,
            monthly_tokens=monthly,
            extra_tokens=extra,
            total_tokens_used=consumed,
            tokens_reset_at=datetime.now(timezone.utc),
        )
        session.add(account)
        await session.commit()
        return account.id


async def set_balance(account_id: int, **values) -> None:
    async with TestSession() as session:
        await session.execute(update(Account).where(Account.id == account_id).values(**values))
        await session.commit()
