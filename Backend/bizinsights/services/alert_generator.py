"""Rule families that turn business metrics into alert drafts.

Every function here is a pure transform: metrics in, ``AlertDraft`` list out,
no database or network access. Persistence (and deduplication) is the job of
``alert_service.create_or_merge_alert``.
"""

import uuid
from datetime import datetime, timedelta, timezone

from bizinsights.models.enums import AlertSeverity, AlertType
from bizinsights.schemas.alert import (
    AlertDraft,
    CustomerData,
    IntegrationHealth,
    InventoryItem,
    PerformanceData,
    SystemCheck,
)

# Inventory (units on hand)
OUT_OF_STOCK = 0
CRITICAL_STOCK = 5
LOW_STOCK = 15
NOTICE_STOCK = 25
INVENTORY_ALERT_TTL = timedelta(hours=24)

# Performance (percent change vs previous period)
REVENUE_CRITICAL_DROP = -20.0
REVENUE_HIGH_DROP = -10.0
ORDERS_HIGH_DROP = -30.0
CONVERSION_CRITICAL = 0.5
CONVERSION_LOW = 1.0

# Integration health (hours since last sync)
STALE_HIGH_HOURS = 72
STALE_MEDIUM_HOURS = 48

# Customers
CHURN_CRITICAL = 25.0
CHURN_HIGH = 15.0
NEW_CUSTOMERS_LOW = 5
AOV_HIGH_DROP = -25.0
AOV_MEDIUM_DROP = -15.0

# System checks (milliseconds)
SYSTEM_SLOW_MS = 2000
SYSTEM_CRITICAL_MS = 5000


def percent_change(current: float, previous: float) -> float | None:
    """Relative change in percent, or None when there is no baseline."""
    if not previous:
        return None
    return (current - previous) / previous * 100


def generate_inventory_alerts(
    organization_id: uuid.UUID,
    items: list[InventoryItem],
    now: datetime | None = None,
) -> list[AlertDraft]:
    now = now or datetime.now(timezone.utc)
    drafts = []

    for item in items:
        stock = item.current_stock
        if stock <= OUT_OF_STOCK:
            severity = AlertSeverity.CRITICAL
            title = f"{item.product_name} is out of stock"
            description = "This product has no inventory remaining and needs immediate restocking."
        elif stock <= CRITICAL_STOCK:
            severity = AlertSeverity.HIGH
            title = f"{item.product_name} is critically low in stock"
            description = f"Only {stock} units remaining. Consider restocking soon."
        elif stock <= LOW_STOCK:
            severity = AlertSeverity.MEDIUM
            title = f"{item.product_name} is running low"
            description = f"{stock} units remaining. You may want to reorder."
        elif stock <= NOTICE_STOCK:
            severity = AlertSeverity.LOW
            title = f"{item.product_name} inventory notice"
            description = f"{stock} units remaining. Monitor for potential restocking."
        else:
            continue

        if stock <= CRITICAL_STOCK:
            threshold = CRITICAL_STOCK
        elif stock <= LOW_STOCK:
            threshold = LOW_STOCK
        else:
            threshold = NOTICE_STOCK

        drafts.append(
            AlertDraft(
                organization_id=organization_id,
                type=AlertType.INVENTORY,
                severity=severity,
                title=title,
                description=description,
                metadata={
                    "productId": item.product_id,
                    "productName": item.product_name,
                    "currentStock": stock,
                    "threshold": threshold,
                    "platform": item.platform,
                    "sku": item.sku,
                },
                action_url=f"/dashboard/products?filter={item.product_id}",
                action_label="View Product",
                expires_at=now + INVENTORY_ALERT_TTL,
            )
        )

    return drafts


def generate_performance_alerts(
    organization_id: uuid.UUID, data: PerformanceData
) -> list[AlertDraft]:
    drafts = []

    revenue_change = percent_change(data.current_revenue, data.previous_revenue)
    if revenue_change is not None and revenue_change < REVENUE_HIGH_DROP:
        critical = revenue_change < REVENUE_CRITICAL_DROP
        drafts.append(
            AlertDraft(
                organization_id=organization_id,
                type=AlertType.PERFORMANCE,
                severity=AlertSeverity.CRITICAL if critical else AlertSeverity.HIGH,
                title="Significant Revenue Decline" if critical else "Revenue Decline Alert",
                description=(
                    f"Revenue has dropped by {abs(revenue_change):.1f}% compared to the previous period."
                    if critical
                    else f"Revenue has decreased by {abs(revenue_change):.1f}% this period."
                ),
                metadata={
                    "metricName": "revenue",
                    "currentValue": data.current_revenue,
                    "previousValue": data.previous_revenue,
                    "threshold": REVENUE_CRITICAL_DROP if critical else REVENUE_HIGH_DROP,
                    "period": data.period,
                    "changePercent": round(revenue_change, 2),
                },
                action_url="/dashboard/analytics?tab=performance",
                action_label="View Analytics",
            )
        )

    order_change = percent_change(data.current_orders, data.previous_orders)
    if order_change is not None and order_change < ORDERS_HIGH_DROP:
        drafts.append(
            AlertDraft(
                organization_id=organization_id,
                type=AlertType.PERFORMANCE,
                severity=AlertSeverity.HIGH,
                title="Order Volume Drop",
                description=f"Order count has decreased by {abs(order_change):.1f}% this period.",
                metadata={
                    "metricName": "orders",
                    "currentValue": data.current_orders,
                    "previousValue": data.previous_orders,
                    "threshold": ORDERS_HIGH_DROP,
                    "period": data.period,
                    "changePercent": round(order_change, 2),
                },
                action_url="/dashboard/analytics?tab=performance",
                action_label="View Analytics",
            )
        )

    if data.conversion_rate is not None and data.conversion_rate < CONVERSION_LOW:
        conversion_change = percent_change(
            data.conversion_rate, data.previous_conversion_rate or 0.0
        )
        drafts.append(
            AlertDraft(
                organization_id=organization_id,
                type=AlertType.PERFORMANCE,
                severity=(
                    AlertSeverity.CRITICAL
                    if data.conversion_rate < CONVERSION_CRITICAL
                    else AlertSeverity.HIGH
                ),
                title="Low Conversion Rate",
                description=(
                    f"Conversion rate is {data.conversion_rate:.2f}%, which is below optimal levels."
                ),
                metadata={
                    "metricName": "conversion_rate",
                    "currentValue": data.conversion_rate,
                    "previousValue": data.previous_conversion_rate,
                    "threshold": CONVERSION_LOW,
                    "period": data.period,
                    "changePercent": round(conversion_change, 2) if conversion_change is not None else None,
                },
                action_url="/dashboard/analytics?tab=performance",
                action_label="Analyze Conversion",
            )
        )

    return drafts


def generate_integration_alerts(
    organization_id: uuid.UUID,
    integrations: list[IntegrationHealth],
    now: datetime | None = None,
) -> list[AlertDraft]:
    now = now or datetime.now(timezone.utc)
    drafts = []

    for integration in integrations:
        last_sync = integration.last_sync_at
        if last_sync is not None and last_sync.tzinfo is None:
            last_sync = last_sync.replace(tzinfo=timezone.utc)

        if integration.status == "ERROR":
            drafts.append(
                AlertDraft(
                    organization_id=organization_id,
                    type=AlertType.INTEGRATION,
                    severity=AlertSeverity.HIGH,
                    title=f"{integration.platform} Integration Failed",
                    description=(
                        f"The {integration.platform} integration has failed and needs attention."
                    ),
                    metadata={
                        "platform": integration.platform,
                        "integrationId": str(integration.id),
                        "errorCode": integration.status,
                        "lastError": integration.last_error,
                        "lastSuccessfulSync": last_sync.isoformat() if last_sync else None,
                        "retryCount": integration.error_count,
                    },
                    action_url=f"/dashboard/integrations/{integration.id}",
                    action_label="Fix Integration",
                )
            )

        if last_sync is None:
            continue

        hours_since_sync = (now - last_sync).total_seconds() / 3600
        if hours_since_sync > STALE_MEDIUM_HOURS:
            drafts.append(
                AlertDraft(
                    organization_id=organization_id,
                    type=AlertType.INTEGRATION,
                    severity=(
                        AlertSeverity.HIGH
                        if hours_since_sync > STALE_HIGH_HOURS
                        else AlertSeverity.MEDIUM
                    ),
                    title=f"{integration.platform} Data is Stale",
                    description=(
                        f"Data hasn't been synced for {round(hours_since_sync)} hours. "
                        "Your analytics may be outdated."
                    ),
                    metadata={
                        "platform": integration.platform,
                        "integrationId": str(integration.id),
                        "lastSuccessfulSync": last_sync.isoformat(),
                        "hoursSinceSync": round(hours_since_sync, 1),
                    },
                    action_url=f"/dashboard/integrations/{integration.id}",
                    action_label="Sync Now",
                )
            )

    return drafts


def generate_customer_alerts(
    organization_id: uuid.UUID, data: CustomerData
) -> list[AlertDraft]:
    drafts = []

    if data.churn_rate is not None and data.churn_rate > CHURN_HIGH:
        critical = data.churn_rate > CHURN_CRITICAL
        drafts.append(
            AlertDraft(
                organization_id=organization_id,
                type=AlertType.CUSTOMER,
                severity=AlertSeverity.CRITICAL if critical else AlertSeverity.HIGH,
                title="High Customer Churn Rate",
                description=(
                    f"Customer churn rate is {data.churn_rate:.1f}%, indicating customers "
                    "are leaving at a concerning rate."
                ),
                metadata={
                    "metric": "churn_rate",
                    "value": data.churn_rate,
                    "riskLevel": "high" if critical else "medium",
                },
                action_url="/dashboard/analytics?tab=customers",
                action_label="Analyze Churn",
            )
        )

    if data.new_customers is not None and data.new_customers < NEW_CUSTOMERS_LOW:
        none_acquired = data.new_customers == 0
        drafts.append(
            AlertDraft(
                organization_id=organization_id,
                type=AlertType.CUSTOMER,
                severity=AlertSeverity.HIGH if none_acquired else AlertSeverity.MEDIUM,
                title="Low New Customer Acquisition",
                description=(
                    f"Only {data.new_customers} new customers acquired recently. "
                    "Consider reviewing marketing strategies."
                ),
                metadata={
                    "metric": "new_customers",
                    "value": data.new_customers,
                    "riskLevel": "high" if none_acquired else "low",
                },
                action_url="/dashboard/analytics?tab=customers",
                action_label="View Customer Analytics",
            )
        )

    aov_change = percent_change(data.average_order_value, data.previous_average_order_value)
    if aov_change is not None and aov_change < AOV_MEDIUM_DROP:
        steep = aov_change < AOV_HIGH_DROP
        drafts.append(
            AlertDraft(
                organization_id=organization_id,
                type=AlertType.CUSTOMER,
                severity=AlertSeverity.HIGH if steep else AlertSeverity.MEDIUM,
                title="Declining Average Order Value",
                description=(
                    f"Average order value has decreased by {abs(aov_change):.1f}%. "
                    "Consider upselling strategies."
                ),
                metadata={
                    "metric": "average_order_value",
                    "value": data.average_order_value,
                    "previousValue": data.previous_average_order_value,
                    "changePercent": round(aov_change, 2),
                    "riskLevel": "high" if steep else "medium",
                },
                action_url="/dashboard/analytics?tab=customers",
                action_label="Analyze AOV",
            )
        )

    return drafts


def generate_system_alerts(
    organization_id: uuid.UUID, checks: list[SystemCheck]
) -> list[AlertDraft]:
    drafts = []
    for check in checks:
        if check.status == "healthy" and check.response_time_ms <= SYSTEM_SLOW_MS:
            continue
        critical = check.status == "down" or check.response_time_ms > SYSTEM_CRITICAL_MS
        if check.status == "down":
            description = f"{check.name} is not responding."
        else:
            description = (
                f"{check.name} is experiencing performance issues with response time "
                f"of {round(check.response_time_ms)}ms."
            )
        drafts.append(
            AlertDraft(
                organization_id=organization_id,
                type=AlertType.SYSTEM,
                severity=AlertSeverity.CRITICAL if critical else AlertSeverity.MEDIUM,
                title=f"{check.name} Performance Issue",
                description=description,
                metadata={
                    "service": check.name,
                    "status": check.status,
                    "responseTime": round(check.response_time_ms),
                    "threshold": SYSTEM_SLOW_MS,
                },
            )
        )
    return drafts
