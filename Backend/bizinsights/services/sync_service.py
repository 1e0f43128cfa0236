"""Pull provider data into DataPoints.

One syncer per platform fetches raw records and turns them into point dicts;
``sync_integration`` replaces the integration's points for the sync window
and records the outcome on the Integration row. A failed sync never raises:
it marks the integration ERROR and raises an INTEGRATION alert instead.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import httpx
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bizinsights.config import settings
from bizinsights.models.data_point import DataPoint
from bizinsights.models.enums import IntegrationStatus, Platform
from bizinsights.models.integration import Integration
from bizinsights.schemas.alert import IntegrationHealth
from bizinsights.services import alert_generator, alert_service, integration_service
from bizinsights.services.crypto_service import DecryptionError
from bizinsights.timeutils import as_utc, parse_iso, utcnow

logger = logging.getLogger(__name__)

INITIAL_WINDOW = timedelta(days=30)
# New-customer counts always look back this far, independent of the sync window
ACQUISITION_WINDOW = timedelta(days=30)
PAID_STATUSES = ("paid", "partially_paid")


class SyncFailed(Exception):
    """A provider rejected a sync request."""


@dataclass
class SyncResult:
    platform: str
    success: bool
    counts: dict[str, int] = field(default_factory=dict)
    error: str | None = None


def _point(metric_type, value, date_recorded, external_id=None, **metadata) -> dict:
    return {
        "metric_type": metric_type,
        "value": float(value),
        "date_recorded": date_recorded,
        "external_id": external_id,
        "metadata": metadata,
    }


class ShopifySync:
    """Orders, products and customer count from the Shopify Admin REST API."""

    async def fetch(
        self,
        integration: Integration,
        access_token: str,
        since: datetime,
        now: datetime,
        http_client: httpx.AsyncClient,
    ) -> tuple[list[dict], dict[str, int]]:
        base = (
            f"https://{integration.shop_domain}.myshopify.com"
            f"/admin/api/{settings.SHOPIFY_API_VERSION}"
        )
        headers = {"X-Shopify-Access-Token": access_token}

        orders = await self._get(
            http_client,
            f"{base}/orders.json",
            headers,
            {"status": "any", "created_at_min": since.isoformat(), "limit": 250},
        )
        products = await self._get(http_client, f"{base}/products.json", headers, {"limit": 250})
        customers = await self._get(http_client, f"{base}/customers/count.json", headers)
        recent_customers = await self._get(
            http_client,
            f"{base}/customers.json",
            headers,
            {"created_at_min": (now - ACQUISITION_WINDOW).isoformat(), "limit": 250},
        )

        points = []
        revenue = 0.0
        paid_orders = [
            o for o in orders.get("orders", []) if o.get("financial_status") in PAID_STATUSES
        ]
        for order in paid_orders:
            total = float(order.get("total_price") or 0)
            revenue += total
            points.append(
                _point(
                    "order",
                    total,
                    parse_iso(order.get("created_at")) or now,
                    str(order["id"]),
                    currency=order.get("currency"),
                    orderNumber=order.get("order_number"),
                    source="sync",
                )
            )
        points.append(_point("revenue", round(revenue, 2), now, orders=len(paid_orders)))

        product_list = products.get("products", [])
        inventory_total = 0
        for product in product_list:
            variants = product.get("variants", [])
            stock = sum(int(v.get("inventory_quantity") or 0) for v in variants)
            inventory_total += stock
            points.append(
                _point(
                    "product_inventory",
                    stock,
                    now,
                    str(product["id"]),
                    productName=product.get("title"),
                    sku=variants[0].get("sku") if variants else None,
                    platform="shopify",
                )
            )
        points.append(_point("products_total", len(product_list), now))
        points.append(_point("inventory_total", inventory_total, now))

        customer_count = int(customers.get("count", 0))
        points.append(_point("customers_total", customer_count, now))

        # First-time buyers among recently created customers
        new_customers = returning_customers = 0
        for customer in recent_customers.get("customers", []):
            orders_count = int(customer.get("orders_count") or 0)
            if orders_count == 1:
                new_customers += 1
            elif orders_count > 1:
                returning_customers += 1
        points.append(_point("customers_new", new_customers, now, period="30_days"))
        points.append(_point("customers_returning", returning_customers, now, period="30_days"))

        counts = {
            "orders": len(paid_orders),
            "products": len(product_list),
            "customers": customer_count,
        }
        return points, counts

    @staticmethod
    async def _get(client, url, headers, params=None) -> dict:
        response = await client.get(url, headers=headers, params=params)
        if response.status_code >= 400:
            logger.error("Shopify API %s returned %d", url, response.status_code)
            raise SyncFailed(f"Shopify API returned {response.status_code}")
        try:
            return response.json()
        except ValueError:
            logger.error("Shopify API %s returned a body that is not JSON", url)
            raise SyncFailed("Shopify API returned an unreadable response") from None


class StripeSync:
    """Succeeded charges and customers from the Stripe REST API."""

    API_BASE = "https://api.stripe.com/v1"

    async def fetch(self, integration, access_token, since, now, http_client):
        headers = {"Authorization": f"Bearer {access_token}"}

        charges = await self._get(
            http_client,
            "charges",
            headers,
            {"limit": 100, "created[gte]": int(since.timestamp())},
        )
        customers = await self._get(http_client, "customers", headers, {"limit": 100})

        points = []
        revenue_by_currency: dict[str, float] = {}
        succeeded = [c for c in charges.get("data", []) if c.get("status") == "succeeded"]
        for charge in succeeded:
            # Stripe amounts are in the smallest currency unit
            amount = (charge.get("amount") or 0) / 100
            currency = (charge.get("currency") or "usd").upper()
            revenue_by_currency[currency] = revenue_by_currency.get(currency, 0.0) + amount
            points.append(
                _point(
                    "payment",
                    amount,
                    datetime.fromtimestamp(charge.get("created", now.timestamp()), tz=timezone.utc),
                    charge["id"],
                    currency=currency,
                    source="sync",
                )
            )
        for currency, total in revenue_by_currency.items():
            points.append(_point("stripe_revenue", round(total, 2), now, currency=currency))

        customer_list = customers.get("data", [])
        customer_count = len(customer_list)
        points.append(_point("stripe_customers_total", customer_count, now))
        acquired_after = (now - ACQUISITION_WINDOW).timestamp()
        new_customers = sum(1 for c in customer_list if (c.get("created") or 0) >= acquired_after)
        points.append(_point("stripe_customers_new", new_customers, now, period="30_days"))

        return points, {"payments": len(succeeded), "customers": customer_count}

    async def _get(self, client, resource, headers, params) -> dict:
        response = await client.get(f"{self.API_BASE}/{resource}", headers=headers, params=params)
        if response.status_code >= 400:
            logger.error("Stripe API /%s returned %d", resource, response.status_code)
            raise SyncFailed(f"Stripe API returned {response.status_code}")
        try:
            return response.json()
        except ValueError:
            logger.error("Stripe API /%s returned a body that is not JSON", resource)
            raise SyncFailed("Stripe API returned an unreadable response") from None


class PendingSync:
    """Platforms whose data import is not built yet."""

    async def fetch(self, integration, access_token, since, now, http_client):
        logger.info("No data import for %s yet", integration.platform.value)
        return [], {}


_SYNCERS = {
    Platform.SHOPIFY: ShopifySync(),
    Platform.STRIPE: StripeSync(),
}


def get_syncer(platform: Platform):
    return _SYNCERS.get(platform, PendingSync())


async def _replace_points(
    db: AsyncSession, integration: Integration, points: list[dict], since: datetime
) -> None:
    """Swap the window's synced points (and older copies of re-fetched records) for the fresh ones.

    Points written by webhooks are left alone and win over synced copies of
    the same record.
    """
    external_ids = [p["external_id"] for p in points if p["external_id"]]
    result = await db.execute(
        select(DataPoint).where(
            DataPoint.integration_id == integration.id,
            or_(
                DataPoint.date_recorded >= since,
                DataPoint.external_id.in_(external_ids),
            ),
        )
    )
    webhook_ids = set()
    for point in result.scalars().all():
        if (point.metadata_json or {}).get("source") == "webhook":
            webhook_ids.add((point.metric_type, point.external_id))
        else:
            await db.delete(point)

    for point in points:
        if (point["metric_type"], point["external_id"]) in webhook_ids:
            continue
        db.add(
            DataPoint(
                organization_id=integration.organization_id,
                integration_id=integration.id,
                metric_type=point["metric_type"],
                value=point["value"],
                date_recorded=point["date_recorded"],
                external_id=point["external_id"],
                metadata_json=point["metadata"],
            )
        )
    await db.flush()


async def _record_failure(
    db: AsyncSession, integration: Integration, error: str, now: datetime
) -> SyncResult:
    metadata = dict(integration.metadata_json or {})
    failures = int(metadata.get("consecutive_failures", 0)) + 1
    metadata["consecutive_failures"] = failures

    integration.status = IntegrationStatus.ERROR
    integration.last_error = error
    integration.metadata_json = metadata
    await db.flush()

    health = IntegrationHealth(
        id=integration.id,
        platform=integration.platform.value,
        status=IntegrationStatus.ERROR.value,
        last_sync_at=as_utc(integration.last_sync_at),
        error_count=failures,
        last_error=error,
    )
    for draft in alert_generator.generate_integration_alerts(
        integration.organization_id, [health], now
    ):
        await alert_service.create_or_merge_alert(db, draft, now=now)

    return SyncResult(platform=integration.platform.slug, success=False, error=error)


async def sync_integration(
    db: AsyncSession,
    integration: Integration,
    http_client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
) -> SyncResult:
    """Run one sync for a connected integration."""
    if integration.status == IntegrationStatus.DISCONNECTED or not integration.encrypted_access_token:
        raise ValueError(f"{integration.platform.value} integration is not connected")

    now = now or utcnow()
    since = as_utc(integration.last_sync_at) or now - INITIAL_WINDOW
    syncer = get_syncer(integration.platform)

    should_close = False
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        should_close = True

    try:
        access_token = integration_service.access_token_for(integration)
        points, counts = await syncer.fetch(integration, access_token, since, now, http_client)
    except DecryptionError:
        logger.error("Stored token for integration %s could not be decrypted", integration.id)
        return await _record_failure(
            db, integration, "Stored credentials are unreadable; reconnect the integration", now
        )
    except SyncFailed as exc:
        return await _record_failure(db, integration, str(exc), now)
    except httpx.HTTPError as exc:
        logger.error("Sync request for integration %s failed: %s", integration.id, exc)
        return await _record_failure(db, integration, f"Request failed: {type(exc).__name__}", now)
    except (KeyError, TypeError, ValueError) as exc:
        logger.exception(
            "Could not read %s data for integration %s", integration.platform.value, integration.id
        )
        return await _record_failure(
            db,
            integration,
            f"Unexpected {integration.platform.value} data: {type(exc).__name__}",
            now,
        )
    finally:
        if should_close:
            await http_client.aclose()

    await _replace_points(db, integration, points, since)

    metadata = dict(integration.metadata_json or {})
    metadata["consecutive_failures"] = 0
    integration.metadata_json = metadata
    integration.status = IntegrationStatus.CONNECTED
    integration.last_sync_at = now
    integration.last_error = None
    await db.flush()
    await db.refresh(integration)

    logger.info("Synced %s for integration %s: %s", integration.platform.value, integration.id, counts)
    return SyncResult(platform=integration.platform.slug, success=True, counts=counts)
