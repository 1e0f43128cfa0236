"""Durable store for in-flight OAuth authorizations.

The pending session lives on the Integration row itself (metadata keys plus
the indexed ``oauth_state`` column), so any instance of the API can complete
a flow started on another one.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bizinsights.config import settings
from bizinsights.models.enums import IntegrationStatus, Platform
from bizinsights.models.integration import PENDING_OAUTH_KEYS, Integration
from bizinsights.services import integration_service
from bizinsights.services.crypto_service import random_token
from bizinsights.services.oauth_errors import Expired, InvalidState, ShopMismatch
from bizinsights.timeutils import parse_iso, utcnow

logger = logging.getLogger(__name__)

STATE_BYTES = 32  # 64 hex characters
NONCE_BYTES = 16


@dataclass
class PendingSession:
    integration_id: uuid.UUID
    organization_id: uuid.UUID
    platform: Platform
    state: str
    nonce: str | None
    shop: str | None
    user_id: str | None
    issued_at: datetime


async def begin(
    db: AsyncSession,
    organization_id: uuid.UUID,
    platform: Platform,
    shop_or_account: str | None,
    user_id: uuid.UUID,
) -> tuple[str, str]:
    """Start an authorization attempt, replacing any earlier pending one.

    Returns the ``(state, nonce)`` pair to embed in the provider URL.
    """
    integration = await integration_service.get_or_create_integration(
        db, organization_id, platform
    )

    state = random_token(STATE_BYTES)
    nonce = random_token(NONCE_BYTES)

    metadata = dict(integration.metadata_json or {})
    metadata.update(
        oauth_state=state,
        oauth_nonce=nonce,
        oauth_shop=shop_or_account,
        oauth_user_id=str(user_id),
        oauth_initiated_at=utcnow().isoformat(),
    )
    integration.metadata_json = metadata
    integration.oauth_state = state
    integration.status = IntegrationStatus.DISCONNECTED

    await db.flush()
    logger.info(
        "OAuth flow started for %s (organization %s)", platform.value, organization_id
    )
    return state, nonce


async def consume(
    db: AsyncSession,
    platform: Platform,
    state: str,
    shop: str | None = None,
    now: datetime | None = None,
) -> PendingSession:
    """Claim a pending session exactly once.

    The claim is a single conditional UPDATE matching both the stored state
    and the row version, so of two concurrent callbacks carrying the same
    state only one can succeed; the other sees ``InvalidState``.
    """
    now = now or utcnow()

    result = await db.execute(
        select(Integration).where(
            Integration.platform == platform,
            Integration.oauth_state == state,
        )
    )
    integration = result.scalar_one_or_none()
    if integration is None:
        raise InvalidState()

    metadata = dict(integration.metadata_json or {})
    if shop is not None and metadata.get("oauth_shop") != shop:
        raise ShopMismatch()

    issued_at = parse_iso(metadata.get("oauth_initiated_at"))
    ttl = timedelta(seconds=settings.OAUTH_STATE_TTL_SECONDS)
    if issued_at is None or now - issued_at > ttl:
        raise Expired()

    session = PendingSession(
        integration_id=integration.id,
        organization_id=integration.organization_id,
        platform=platform,
        state=state,
        nonce=metadata.get("oauth_nonce"),
        shop=metadata.get("oauth_shop"),
        user_id=metadata.get("oauth_user_id"),
        issued_at=issued_at,
    )

    cleared = {**metadata, **{key: None for key in PENDING_OAUTH_KEYS}}
    claim = await db.execute(
        update(Integration)
        .where(
            Integration.id == integration.id,
            Integration.oauth_state == state,
            Integration.version == integration.version,
        )
        .values(
            {
                Integration.oauth_state: None,
                Integration.metadata_json: cleared,
                Integration.version: Integration.version + 1,
            }
        )
        .execution_options(synchronize_session=False)
    )
    if claim.rowcount != 1:
        logger.warning("OAuth state for %s was claimed concurrently", platform.value)
        raise InvalidState()

    await db.refresh(integration)
    return session
