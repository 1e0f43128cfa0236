"""Accounts and the JWT access/refresh pair.

Registering also creates the account's first organization, so a new user can
call the organization-scoped API with nothing but the returned tokens.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bizinsights.config import settings
from bizinsights.models.organization import Organization
from bizinsights.models.user import User
from bizinsights.services import organization_service

logger = logging.getLogger(__name__)


class AuthError(ValueError):
    """Account failure whose message is safe to return to the client."""


class EmailAlreadyRegistered(AuthError):
    pass


class InvalidCredentials(AuthError):
    pass


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def _encode(user_id: str | uuid.UUID, token_type: str, lifetime: timedelta, **claims) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "type": token_type,
        "iat": now,
        "exp": now + lifetime,
        **claims,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def issue_tokens(user_id: str | uuid.UUID) -> dict:
    """Access token for API calls plus a single-use refresh token."""
    return {
        "access_token": _encode(
            user_id, "access", timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        ),
        "refresh_token": _encode(
            user_id,
            "refresh",
            timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
            jti=str(uuid.uuid4()),
        ),
        "token_type": "bearer",
        "expires_in": settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    }


def _revoked_key(jti: str) -> str:
    return f"bizinsights:revoked_refresh:{jti}"


async def refresh_tokens(refresh_token: str, redis_client) -> dict:
    """Exchange a refresh token for a new pair; the old one is revoked in Redis."""
    try:
        payload = jwt.decode(
            refresh_token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        raise AuthError("Invalid refresh token")

    if payload.get("type") != "refresh":
        raise AuthError("Not a refresh token")

    jti = payload.get("jti")
    if jti:
        # First presenter wins
        claimed = await redis_client.set(
            _revoked_key(jti), "1", ex=settings.REFRESH_TOKEN_EXPIRE_DAYS * 86400, nx=True
        )
        if not claimed:
            logger.warning("Replayed refresh token for user %s", payload.get("sub"))
            raise AuthError("Refresh token has been revoked")

    return issue_tokens(payload["sub"])


def default_organization_name(user: User) -> str:
    return f"{user.display_name}'s Organization"


async def register_user(
    db: AsyncSession,
    email: str,
    password: str,
    display_name: str | None = None,
    organization_name: str | None = None,
) -> tuple[User, Organization]:
    """Create the account and its first organization, owned by the new user."""
    email = email.strip().lower()
    existing = await db.execute(select(User.id).where(func.lower(User.email) == email))
    if existing.first() is not None:
        raise EmailAlreadyRegistered("An account with this email already exists")

    user = User(
        email=email,
        display_name=display_name or email.split("@")[0],
        password_hash=hash_password(password),
    )
    db.add(user)
    await db.flush()

    organization = await organization_service.create_organization(
        db, organization_name or default_organization_name(user), user
    )
    await db.refresh(user)
    logger.info("Registered user %s with organization %s", user.id, organization.id)
    return user, organization


async def authenticate(db: AsyncSession, email: str, password: str) -> User:
    result = await db.execute(select(User).where(User.email == email.strip().lower()))
    user = result.scalar_one_or_none()

    if user is None or user.password_hash is None:
        raise InvalidCredentials("Invalid email or password")
    if not verify_password(password, user.password_hash):
        raise InvalidCredentials("Invalid email or password")
    return user
