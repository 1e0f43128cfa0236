import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bizinsights.config import settings
from bizinsights.database import get_db
from bizinsights.main import app
from bizinsights.models.enums import MemberRole
from bizinsights.models.organization import Organization
from bizinsights.models.user import User
from bizinsights.services import organization_service
from bizinsights.services.auth_service import (
    hash_password,
    issue_tokens,
    refresh_tokens,
    verify_password,
)


@pytest.fixture
async def email_user(db_session: AsyncSession) -> User:
    """Create a user with email/password auth."""
    user = User(
        id=uuid.uuid4(),
        email="emailuser@example.com",
        display_name="Email User",
        password_hash=hash_password("TestPass123!"),
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest.fixture
async def anon_client(db_engine, fake_redis) -> AsyncGenerator[AsyncClient, None]:
    """Client that authenticates with real bearer tokens."""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = override_get_db
    app.state.redis = fake_redis

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Tokens ───────────────────────────────────────────────────────────


def test_issue_tokens():
    user_id = uuid.uuid4()
    tokens = issue_tokens(user_id)
    assert tokens["token_type"] == "bearer"
    assert tokens["expires_in"] == settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60

    access = jwt.decode(tokens["access_token"], settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    refresh = jwt.decode(tokens["refresh_token"], settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    assert access["sub"] == str(user_id)
    assert access["type"] == "access"
    assert refresh["type"] == "refresh"
    assert refresh["jti"]


def test_password_hashing():
    hashed = hash_password("TestPass123!")
    assert hashed != "TestPass123!"
    assert verify_password("TestPass123!", hashed)
    assert not verify_password("WrongPass123!", hashed)


@pytest.mark.asyncio
async def test_refresh_rotates_and_revokes(fake_redis):
    redis = fake_redis
    tokens = issue_tokens(uuid.uuid4())

    rotated = await refresh_tokens(tokens["refresh_token"], redis)
    assert rotated["refresh_token"] != tokens["refresh_token"]

    with pytest.raises(ValueError, match="revoked"):
        await refresh_tokens(tokens["refresh_token"], redis)


@pytest.mark.asyncio
async def test_refresh_rejects_access_token(fake_redis):
    tokens = issue_tokens(uuid.uuid4())
    with pytest.raises(ValueError, match="Not a refresh token"):
        await refresh_tokens(tokens["access_token"], fake_redis)


@pytest.mark.asyncio
async def test_refresh_rejects_garbage(fake_redis):
    with pytest.raises(ValueError, match="Invalid refresh token"):
        await refresh_tokens("not.a.token", fake_redis)


# ── Register / login ─────────────────────────────────────────────────


async def test_register_creates_owned_organization(client: AsyncClient, db_session: AsyncSession):
    """Registering returns tokens plus a default organization owned by the new user."""
    response = await client.post(
        "/api/auth/register",
        json={
            "email": "NewUser@Example.com",
            "password": "SecurePass123!",
            "display_name": "New User",
        },
    )
    assert response.status_code == 201
    data = response.json()
    assert data["token_type"] == "bearer"
    assert data["user"]["email"] == "newuser@example.com"
    assert data["organization"]["name"] == "New User's Organization"
    assert data["organization"]["slug"] == "new-user-s-organization"
    assert data["organization"]["role"] == "OWNER"

    claims = jwt.decode(data["access_token"], settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    rows = await organization_service.list_for_user(db_session, uuid.UUID(claims["sub"]))
    assert [(str(org.id), role) for org, role in rows] == [
        (data["organization"]["id"], MemberRole.OWNER)
    ]


async def test_register_with_organization_name(client: AsyncClient):
    response = await client.post(
        "/api/auth/register",
        json={
            "email": "owner@example.com",
            "password": "SecurePass123!",
            "organization_name": "Demo Store",
        },
    )
    assert response.status_code == 201
    assert response.json()["organization"]["slug"] == "demo-store"


async def test_register_duplicate_email(client: AsyncClient, db_session: AsyncSession):
    """Emails are unique regardless of case, and a rejected signup creates no organization."""
    await client.post(
        "/api/auth/register",
        json={"email": "dup@example.com", "password": "SecurePass123!"},
    )
    response = await client.post(
        "/api/auth/register",
        json={"email": "DUP@example.com", "password": "AnotherPass123!"},
    )
    assert response.status_code == 409

    count = await db_session.execute(select(func.count(Organization.id)))
    assert count.scalar() == 1


async def test_register_weak_password(client: AsyncClient):
    response = await client.post(
        "/api/auth/register",
        json={"email": "weak@example.com", "password": "short"},
    )
    assert response.status_code == 422


async def test_login(client: AsyncClient, email_user: User):
    response = await client.post(
        "/api/auth/login",
        json={"email": "EmailUser@example.com", "password": "TestPass123!"},
    )
    assert response.status_code == 200
    claims = jwt.decode(
        response.json()["access_token"], settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM]
    )
    assert claims["sub"] == str(email_user.id)


async def test_login_wrong_password(client: AsyncClient, email_user: User):
    response = await client.post(
        "/api/auth/login",
        json={"email": "emailuser@example.com", "password": "WrongPassword!"},
    )
    assert response.status_code == 401


async def test_login_nonexistent_email(client: AsyncClient):
    response = await client.post(
        "/api/auth/login",
        json={"email": "nobody@example.com", "password": "AnyPassword123!"},
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"


async def test_refresh_endpoint(client: AsyncClient, email_user: User):
    tokens = issue_tokens(email_user.id)

    response = await client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert response.status_code == 200

    replay = await client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert replay.status_code == 401


async def test_register_then_use_organization(anon_client: AsyncClient):
    """A fresh account reaches its organization's endpoints with no further setup."""
    reg = await anon_client.post(
        "/api/auth/register",
        json={"email": "flow@example.com", "password": "SecurePass123!"},
    )
    headers = {"Authorization": f"Bearer {reg.json()['access_token']}"}
    organization_id = reg.json()["organization"]["id"]

    me = await anon_client.get("/api/auth/me", headers=headers)
    assert me.status_code == 200
    data = me.json()
    assert data["email"] == "flow@example.com"
    assert data["display_name"] == "flow"
    assert [o["id"] for o in data["organizations"]] == [organization_id]
    assert data["organizations"][0]["name"] == "flow's Organization"

    integrations = await anon_client.get(
        "/api/integrations", params={"organizationId": organization_id}, headers=headers
    )
    assert integrations.status_code == 200
    assert integrations.json() == []


# ── get_current_user ─────────────────────────────────────────────────


async def test_me_requires_token(anon_client: AsyncClient):
    response = await anon_client.get("/api/auth/me")
    assert response.status_code == 401


async def test_me_rejects_refresh_token(anon_client: AsyncClient, test_user: User):
    tokens = issue_tokens(test_user.id)
    response = await anon_client.get(
        "/api/auth/me", headers={"Authorization": f"Bearer {tokens['refresh_token']}"}
    )
    assert response.status_code == 401


async def test_me_rejects_expired_token(anon_client: AsyncClient, test_user: User):
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {"sub": str(test_user.id), "type": "access", "iat": now - timedelta(hours=2), "exp": now - timedelta(hours=1)},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    response = await anon_client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


async def test_me_rejects_unknown_user(anon_client: AsyncClient):
    tokens = issue_tokens(uuid.uuid4())
    response = await anon_client.get(
        "/api/auth/me", headers={"Authorization": f"Bearer {tokens['access_token']}"}
    )
    assert response.status_code == 401


async def test_protected_route_requires_token(anon_client: AsyncClient, organization):
    response = await anon_client.get(
        "/api/integrations", params={"organizationId": str(organization.id)}
    )
    assert response.status_code == 401
