import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bizinsights.config import settings
from bizinsights.models.data_point import DataPoint
from bizinsights.models.enums import IntegrationStatus, Platform
from bizinsights.models.integration import Integration
from bizinsights.models.webhook_event import WebhookEvent
from bizinsights.services import integration_service
from bizinsights.services.crypto_service import hmac_verify
from bizinsights.services.sync_service import PAID_STATUSES
from bizinsights.timeutils import parse_iso, utcnow

logger = logging.getLogger(__name__)

ORDER_TOPICS = {"orders/create", "orders/updated", "orders/paid"}
UNINSTALL_TOPIC = "app/uninstalled"


def verify_shopify_webhook(body: bytes, signature: str | None) -> bool:
    """Check ``X-Shopify-Hmac-Sha256``: base64 HMAC-SHA256 of the raw body.

    Fails closed when no API secret is configured.
    """
    return hmac_verify(body, signature, settings.SHOPIFY_API_SECRET, encoding="base64")


def verify_facebook_signature(body: bytes, header: str | None) -> bool:
    """Check ``X-Hub-Signature-256`` (``sha256=<hex>``)."""
    if not header or not header.startswith("sha256="):
        return False
    return hmac_verify(body, header.removeprefix("sha256="), settings.FACEBOOK_APP_SECRET)


def shop_from_domain(domain: str | None) -> str | None:
    if not domain:
        return None
    return domain.strip().lower().removesuffix(".myshopify.com")


async def record_webhook_event(
    db: AsyncSession,
    platform: Platform,
    topic: str,
    external_id: str | None,
    payload: dict,
    shop_domain: str | None = None,
) -> tuple[WebhookEvent, bool]:
    """Store an inbound delivery. Returns ``(event, is_new)``; redeliveries are not new."""
    if external_id:
        result = await db.execute(
            select(WebhookEvent).where(
                WebhookEvent.platform == platform,
                WebhookEvent.external_id == external_id,
            )
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            logger.info("Duplicate %s webhook %s ignored", platform.value, external_id)
            return existing, False

    event = WebhookEvent(
        platform=platform,
        topic=topic,
        external_id=external_id,
        shop_domain=shop_domain,
        payload=payload,
    )
    db.add(event)
    await db.flush()
    return event, True


async def _find_shopify_integration(
    db: AsyncSession, shop: str | None
) -> Integration | None:
    if not shop:
        return None
    result = await db.execute(
        select(Integration).where(
            Integration.platform == Platform.SHOPIFY,
            Integration.shop_domain == shop,
        )
    )
    return result.scalars().first()


async def _upsert_order_point(
    db: AsyncSession, integration: Integration, order: dict
) -> DataPoint | None:
    """Only paid orders count as revenue; an order leaving that state drops its point."""
    external_id = str(order["id"])
    result = await db.execute(
        select(DataPoint).where(
            DataPoint.integration_id == integration.id,
            DataPoint.metric_type == "order",
            DataPoint.external_id == external_id,
        )
    )
    existing = list(result.scalars().all())
    if order.get("financial_status") not in PAID_STATUSES:
        for stale in existing:
            await db.delete(stale)
        await db.flush()
        return None

    point = existing[0] if existing else None
    if point is None:
        point = DataPoint(
            organization_id=integration.organization_id,
            integration_id=integration.id,
            metric_type="order",
            external_id=external_id,
        )
        db.add(point)

    point.value = float(order.get("total_price") or 0)
    point.date_recorded = parse_iso(order.get("created_at")) or utcnow()
    point.metadata_json = {
        "currency": order.get("currency"),
        "orderNumber": order.get("order_number"),
        "financialStatus": order.get("financial_status"),
        "source": "webhook",
    }
    await db.flush()
    return point


async def process_shopify_event(
    db: AsyncSession,
    event: WebhookEvent,
) -> None:
    """Apply a verified Shopify webhook to the matching integration."""
    integration = await _find_shopify_integration(db, event.shop_domain)
    if integration is None:
        logger.warning("Shopify webhook for unknown shop %s", event.shop_domain)
        event.processed_at = utcnow()
        await db.flush()
        return

    event.integration_id = integration.id

    if event.topic in ORDER_TOPICS and integration.status != IntegrationStatus.DISCONNECTED:
        if event.payload.get("id") is not None:
            await _upsert_order_point(db, integration, event.payload)
    elif event.topic == UNINSTALL_TOPIC:
        logger.info("Shopify app uninstalled for shop %s", event.shop_domain)
        await integration_service.disconnect(db, integration)
    else:
        logger.debug("Shopify webhook topic %s recorded only", event.topic)

    event.processed_at = utcnow()
    await db.flush()
