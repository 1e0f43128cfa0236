import json
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bizinsights.models.enums import IntegrationStatus, Platform
from bizinsights.models.integration import PENDING_OAUTH_KEYS, Integration
from bizinsights.services.crypto_service import decrypt, encrypt, mask_secret
from bizinsights.timeutils import utcnow

logger = logging.getLogger(__name__)


async def get_integration(
    db: AsyncSession, organization_id: uuid.UUID, platform: Platform
) -> Integration | None:
    result = await db.execute(
        select(Integration).where(
            Integration.organization_id == organization_id,
            Integration.platform == platform,
        )
    )
    return result.scalar_one_or_none()


async def get_or_create_integration(
    db: AsyncSession, organization_id: uuid.UUID, platform: Platform
) -> Integration:
    """Upsert the single Integration slot for (organization, platform)."""
    integration = await get_integration(db, organization_id, platform)
    if integration is not None:
        return integration

    integration = Integration(
        organization_id=organization_id,
        platform=platform,
        status=IntegrationStatus.DISCONNECTED,
        metadata_json={},
    )
    db.add(integration)
    await db.flush()
    await db.refresh(integration)
    return integration


async def list_integrations(
    db: AsyncSession, organization_id: uuid.UUID
) -> list[Integration]:
    result = await db.execute(
        select(Integration)
        .where(Integration.organization_id == organization_id)
        .order_by(Integration.created_at)
    )
    return list(result.scalars().all())


async def persist_connection(
    db: AsyncSession,
    integration: Integration,
    access_token: str,
    shop_domain: str | None = None,
    metadata_updates: dict | None = None,
) -> Integration:
    """Store an encrypted token and flip the integration to CONNECTED.

    Encryption happens before any attribute is touched, so an EncryptionError
    leaves the row exactly as it was. Status, token and cleared pending keys
    are written in one versioned flush.
    """
    ciphertext = encrypt(access_token)

    metadata = dict(integration.metadata_json or {})
    metadata.update({key: None for key in PENDING_OAUTH_KEYS})
    if metadata_updates:
        metadata.update(metadata_updates)

    now = utcnow()
    integration.encrypted_access_token = ciphertext
    integration.status = IntegrationStatus.CONNECTED
    integration.oauth_state = None
    integration.metadata_json = metadata
    integration.connected_at = now
    integration.last_error = None
    if shop_domain:
        integration.shop_domain = shop_domain

    await db.flush()
    await db.refresh(integration)
    logger.info(
        "Integration %s connected (%s)", integration.id, integration.platform.value
    )
    return integration


def merge_metadata(integration: Integration, updates: dict) -> None:
    """Assign a new dict so the JSON column change is picked up on flush."""
    integration.metadata_json = {**(integration.metadata_json or {}), **updates}


def access_token_for(integration: Integration) -> str:
    """Decrypt the stored token. Raises DecryptionError on tampering or key change."""
    if not integration.encrypted_access_token:
        raise ValueError(f"{integration.platform.value} integration has no stored token")
    return decrypt(integration.encrypted_access_token)


async def disconnect(db: AsyncSession, integration: Integration) -> Integration:
    """Revert to DISCONNECTED and drop the token. The row itself is kept."""
    metadata = dict(integration.metadata_json or {})
    metadata.update({key: None for key in PENDING_OAUTH_KEYS})
    metadata.pop("encrypted_refresh_token", None)
    metadata["disconnected_at"] = utcnow().isoformat()

    integration.status = IntegrationStatus.DISCONNECTED
    integration.encrypted_access_token = None
    integration.oauth_state = None
    integration.metadata_json = metadata

    await db.flush()
    await db.refresh(integration)
    logger.info(
        "Integration %s disconnected (%s)", integration.id, integration.platform.value
    )
    return integration


async def connect_stripe_with_keys(
    db: AsyncSession,
    organization_id: uuid.UUID,
    secret_key: str,
    publishable_key: str,
    account: dict,
) -> Integration:
    """Key-based Stripe connection. Only a masked publishable key is kept in clear."""
    integration = await get_or_create_integration(db, organization_id, Platform.STRIPE)
    return await persist_connection(
        db,
        integration,
        access_token=secret_key,
        shop_domain=account.get("id"),
        metadata_updates={
            "connection_type": "api_key",
            "account_id": account.get("id"),
            "account_name": (account.get("business_profile") or {}).get("name"),
            "country": account.get("country"),
            "default_currency": account.get("default_currency"),
            "publishable_key": mask_secret(publishable_key),
            "live_mode": secret_key.startswith("sk_live_"),
        },
    )


def parse_service_account_key(raw_key: str) -> dict:
    """Validate a Google service-account JSON key."""
    try:
        key = json.loads(raw_key)
    except json.JSONDecodeError:
        raise ValueError("Service account key must be valid JSON")
    if not isinstance(key, dict) or not key.get("client_email") or not key.get("private_key"):
        raise ValueError("Invalid service account key format")
    return key


async def connect_google_service_account(
    db: AsyncSession,
    organization_id: uuid.UUID,
    property_id: str,
    raw_key: str,
) -> Integration:
    key = parse_service_account_key(raw_key)
    integration = await get_or_create_integration(
        db, organization_id, Platform.GOOGLE_ANALYTICS
    )
    return await persist_connection(
        db,
        integration,
        access_token=raw_key,
        shop_domain=property_id,
        metadata_updates={
            "connection_type": "service_account",
            "property_id": property_id,
            "client_email": key["client_email"],
        },
    )


async def connect_woocommerce(
    db: AsyncSession,
    organization_id: uuid.UUID,
    site_url: str,
    consumer_key: str,
    consumer_secret: str,
) -> Integration:
    """WooCommerce REST keys are stored as one encrypted ``key:secret`` pair."""
    site_url = site_url.strip().rstrip("/")
    if not site_url.startswith("https://"):
        raise ValueError("WooCommerce site URL must use https")
    if not consumer_key.startswith("ck_") or not consumer_secret.startswith("cs_"):
        raise ValueError("Invalid WooCommerce consumer key or secret")

    integration = await get_or_create_integration(
        db, organization_id, Platform.WOOCOMMERCE
    )
    return await persist_connection(
        db,
        integration,
        access_token=f"{consumer_key}:{consumer_secret}",
        shop_domain=site_url.removeprefix("https://"),
        metadata_updates={"connection_type": "api_key", "site_url": site_url},
    )
