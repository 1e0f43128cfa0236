import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from bizinsights.config import settings
from bizinsights.database import get_db
from bizinsights.dependencies import get_current_user
from bizinsights.main import app
from bizinsights.models import Base
from bizinsights.models.enums import MemberRole
from bizinsights.models.organization import Organization
from bizinsights.models.organization_member import OrganizationMember
from bizinsights.models.user import User

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_ENCRYPTION_KEY = "test-encryption-key-0123456789abcdef"
TEST_SHOPIFY_SECRET = "shpss_test_secret"


class FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._ops: list[tuple] = []

    def zremrangebyscore(self, key, low, high):
        self._ops.append(("zremrangebyscore", key, low, high))

    def zadd(self, key, mapping):
        self._ops.append(("zadd", key, mapping))

    def zcard(self, key):
        self._ops.append(("zcard", key))

    def expire(self, key, seconds):
        self._ops.append(("expire", key, seconds))

    async def execute(self) -> list:
        results = []
        for op, key, *args in self._ops:
            zset = self._redis._zsets.setdefault(key, {})
            if op == "zremrangebyscore":
                low, high = args
                stale = [m for m, score in zset.items() if low <= score <= high]
                for member in stale:
                    del zset[member]
                results.append(len(stale))
            elif op == "zadd":
                zset.update(args[0])
                results.append(len(args[0]))
            elif op == "zcard":
                results.append(len(zset))
            else:
                self._redis._ttls[key] = args[0]
                results.append(True)
        self._ops.clear()
        return results


class FakeRedis:
    """In-memory Redis mock for testing."""

    def __init__(self):
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self._zsets: dict[str, dict[str, float]] = {}

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = str(value)
        if ex:
            self._ttls[key] = ex
        return True

    async def setex(self, key: str, seconds: int, value: str) -> None:
        await self.set(key, value, ex=seconds)

    async def expire(self, key: str, seconds: int) -> None:
        self._ttls[key] = seconds

    def pipeline(self) -> FakePipeline:
        return FakePipeline(self)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


@pytest.fixture(autouse=True)
def configured_settings(monkeypatch):
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setattr(settings, "SHOPIFY_API_KEY", "shopify-client-id")
    monkeypatch.setattr(settings, "SHOPIFY_API_SECRET", TEST_SHOPIFY_SECRET)
    monkeypatch.setattr(settings, "APP_URL", "https://api.bizinsights.test")
    monkeypatch.setattr(settings, "FRONTEND_URL", "https://app.bizinsights.test")
    monkeypatch.setattr(settings, "SMTP_HOST", "")
    monkeypatch.setattr(settings, "RATE_LIMIT_PER_MINUTE", 1000)
    return settings


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False
    )
    async with session_factory() as session:
        yield session


async def _make_user(db_session: AsyncSession, email: str, name: str) -> User:
    user = User(
        id=uuid.uuid4(),
        email=email,
        display_name=name,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


async def _make_organization(
    db_session: AsyncSession, name: str, slug: str, owner: User
) -> Organization:
    organization = Organization(id=uuid.uuid4(), name=name, slug=slug)
    db_session.add(organization)
    await db_session.flush()
    db_session.add(
        OrganizationMember(
            organization_id=organization.id, user_id=owner.id, role=MemberRole.OWNER
        )
    )
    await db_session.commit()
    await db_session.refresh(organization)
    return organization


@pytest.fixture
async def test_user(db_session: AsyncSession) -> User:
    return await _make_user(db_session, "owner@example.com", "Store Owner")


@pytest.fixture
async def second_user(db_session: AsyncSession) -> User:
    return await _make_user(db_session, "other@example.com", "Other Owner")


@pytest.fixture
async def organization(db_session: AsyncSession, test_user: User) -> Organization:
    return await _make_organization(db_session, "Demo Store", "demo-store", test_user)


@pytest.fixture
async def other_organization(db_session: AsyncSession, second_user: User) -> Organization:
    return await _make_organization(db_session, "Other Store", "other-store", second_user)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
async def client(db_engine, test_user: User, fake_redis: FakeRedis) -> AsyncGenerator[AsyncClient, None]:
    session_factory = async_sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False
    )

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_get_current_user():
        return test_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.state.redis = fake_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
