import time
from datetime import datetime
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from models.credit_account import CreditAccount
from models.job import Job
from models.project import Project
from models.user import User
from services import credits
from services.job_queue import get_publisher
from services.kv_store import get_store


class InMemoryStore:
    """Async stand-in for the subset of the Redis API the guards use. TTLs are recorded, not enforced."""

    def __init__(self):
        self.values: Dict[str, Any] = {}
        self.ttls: Dict[str, int] = {}

    async def get(self, key: str):
        return self.values.get(key)

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False):
        if nx and key in self.values:
            return None
        self.values[key] = str(value)
        if ex is not None:
            self.ttls[key] = int(ex)
        return True

    async def incrby(self, key: str, amount: int) -> int:
        current = int(self.values.get(key, 0)) + int(amount)
        self.values[key] = str(current)
        return current

    async def incr(self, key: str) -> int:
        return await self.incrby(key, 1)

    async def decrby(self, key: str, amount: int) -> int:
        return await self.incrby(key, -int(amount))

    async def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = int(seconds)
        return key in self.values

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def ping(self) -> bool:
        return True


class RecordingPublisher:
    """Queue publisher that records messages instead of sending them."""

    delivers_over_http = False

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.messages: List[Dict[str, Any]] = []

    async def publish(self, body: Dict[str, Any], *, retries: Optional[int] = None) -> str:
        if self.error is not None:
            raise self.error
        self.messages.append(body)
        return f"msg-{len(self.messages)}"


def access_token(user_id: str, *, email: Optional[str] = None, role: str = "authenticated", ttl: int = 3600) -> str:
    """Sign a token the way the hosted auth provider does."""
    now = int(time.time())
    claims = {"sub": user_id, "aud": settings.JWT_AUDIENCE, "role": role, "iat": now, "exp": now + ttl}
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


async def seed_account(
    session_maker,
    user_id: str,
    *,
    total: int = 0,
    used: int = 0,
    project_id: Optional[str] = None,
    email: Optional[str] = None,
) -> None:
    async with session_maker() as session:
        session.add(User(id=user_id, email=email or f"{user_id}@example.com"))
        await session.flush()
        session.add(CreditAccount(user_id=user_id, credits_total=total, credits_used=used))
        if project_id:
            session.add(Project(id=project_id, user_id=user_id, name="Main site", domain="example.com"))
        await session.commit()


async def read_balance(session_maker, user_id: str) -> Dict[str, int]:
    async with session_maker() as session:
        account = await session.get(CreditAccount, user_id)
        total = int(account.credits_total) if account else 0
        used = int(account.credits_used) if account else 0
        return {"total": total, "used": used, "remaining": max(total - used, 0)}


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker

    await engine.dispose()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest_asyncio.fixture
async def api_client(session_maker, store, publisher):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    async def override_get_store():
        yield store

    async def override_get_publisher():
        yield publisher

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_store] = override_get_store
    app.dependency_overrides[get_publisher] = override_get_publisher
    with patch("services.job_worker.async_session_maker", session_maker):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_store, None)
    app.dependency_overrides.pop(get_publisher, None)


@pytest.fixture(autouse=True)
def disable_rate_limits():
    """Keep per-client rate limits out of the way between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    yield
    app.state.disable_rate_limits = previous


async def seed_job(
    session_maker,
    user_id: str,
    project_id: str,
    *,
    key: str,
    cost: int = 3,
    debit: bool = True,
    status: str = "queued",
    created_at: Optional[datetime] = None,
    started_at: Optional[datetime] = None,
) -> str:
    """Insert a job row, optionally backed by a real ledger debit under the same key."""
    if debit:
        async with session_maker() as session:
            result = await credits.deduct(
                user_id, cost, feature="live_refresh", description="Live refresh", idempotency_key=key, db=session
            )
            assert result.success

    job = Job(
        user_id=user_id,
        project_id=project_id,
        status=status,
        provider="test-provider",
        credits_charged=cost,
        idempotency_key=key,
    )
    if created_at is not None:
        job.created_at = created_at
    if started_at is not None:
        job.started_at = started_at

    async with session_maker() as session:
        session.add(job)
        await session.commit()
        return job.id
