"""Alert persistence and lifecycle.

``create_or_merge_alert`` is the only way alerts are written: a draft with
the same (organization, type, title) as an ACTIVE/ACKNOWLEDGED alert created
within the last hour refreshes that row instead of inserting a new one.

Lifecycle::

    ACTIVE --acknowledge--> ACKNOWLEDGED --resolve--> RESOLVED
    ACTIVE | ACKNOWLEDGED --dismiss--> DISMISSED
    ACTIVE | ACKNOWLEDGED --expires_at passed--> RESOLVED  (swept on read)

RESOLVED and DISMISSED are terminal.
"""

import logging
import time
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bizinsights.models.alert import Alert
from bizinsights.models.data_point import DataPoint
from bizinsights.models.enums import (
    AlertSeverity,
    AlertStatus,
    AlertType,
    IntegrationStatus,
    MemberRole,
)
from bizinsights.models.integration import Integration
from bizinsights.models.organization import Organization
from bizinsights.models.organization_member import OrganizationMember
from bizinsights.models.user import User
from bizinsights.schemas.alert import (
    AlertDraft,
    CustomerData,
    IntegrationHealth,
    InventoryItem,
    PerformanceData,
    SystemCheck,
)
from bizinsights.services import alert_generator
from bizinsights.services.email_service import send_alert_email
from bizinsights.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

DEDUP_WINDOW = timedelta(hours=1)
OPEN_STATUSES = (AlertStatus.ACTIVE, AlertStatus.ACKNOWLEDGED)
NOTIFY_SEVERITIES = (AlertSeverity.HIGH, AlertSeverity.CRITICAL)
PERIOD = timedelta(days=30)
NEW_CUSTOMER_METRICS = ("customers_new", "stripe_customers_new")

# action -> (allowed source states, target state, timestamp/actor column prefix)
TRANSITIONS = {
    "acknowledge": ((AlertStatus.ACTIVE,), AlertStatus.ACKNOWLEDGED, "acknowledged"),
    "resolve": (OPEN_STATUSES, AlertStatus.RESOLVED, "resolved"),
    "dismiss": (OPEN_STATUSES, AlertStatus.DISMISSED, "dismissed"),
}

_severity_rank = case(
    {severity: severity.rank for severity in AlertSeverity},
    value=Alert.severity,
)


class InvalidTransition(ValueError):
    """The requested lifecycle action is not allowed from the alert's current state."""


class AlertNotFound(LookupError):
    pass


# ---------------------------------------------------------------------------
# Create / merge
# ---------------------------------------------------------------------------


async def create_or_merge_alert(
    db: AsyncSession,
    draft: AlertDraft,
    now: datetime | None = None,
    notify: bool = True,
) -> tuple[Alert, bool]:
    """Persist a draft, merging into a recent open duplicate.

    Returns ``(alert, created)``.
    """
    now = now or utcnow()

    result = await db.execute(
        select(Alert)
        .where(
            Alert.organization_id == draft.organization_id,
            Alert.type == draft.type,
            Alert.title == draft.title,
            Alert.status.in_(OPEN_STATUSES),
            Alert.created_at >= now - DEDUP_WINDOW,
        )
        .order_by(Alert.created_at.desc())
        .limit(1)
    )
    existing = result.scalar_one_or_none()

    if existing is not None:
        existing.description = draft.description
        existing.metadata_json = dict(draft.metadata)
        existing.updated_at = now
        await db.flush()
        await db.refresh(existing)
        return existing, False

    alert = Alert(
        organization_id=draft.organization_id,
        user_id=draft.user_id,
        type=draft.type,
        severity=draft.severity,
        status=AlertStatus.ACTIVE,
        title=draft.title,
        description=draft.description,
        metadata_json=dict(draft.metadata),
        action_url=draft.action_url,
        action_label=draft.action_label,
        expires_at=draft.expires_at,
        created_at=now,
        updated_at=now,
    )
    db.add(alert)
    await db.flush()
    await db.refresh(alert)

    if notify and alert.severity in NOTIFY_SEVERITIES:
        await notify_alert(db, alert)

    return alert, True


async def notify_alert(db: AsyncSession, alert: Alert) -> int:
    """Email organization owners and admins. Returns the number of messages sent."""
    result = await db.execute(
        select(User.email, Organization.name)
        .select_from(User)
        .join(OrganizationMember, OrganizationMember.user_id == User.id)
        .join(Organization, Organization.id == OrganizationMember.organization_id)
        .where(
            OrganizationMember.organization_id == alert.organization_id,
            OrganizationMember.role.in_((MemberRole.OWNER, MemberRole.ADMIN)),
        )
    )
    rows = result.all()
    sent = 0
    for email, organization_name in rows:
        if await send_alert_email(email, alert, organization_name):
            sent += 1
    return sent


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def resolve_expired_alerts(
    db: AsyncSession, organization_id: uuid.UUID, now: datetime | None = None
) -> int:
    """Sweep open alerts whose ``expires_at`` has passed into RESOLVED."""
    now = now or utcnow()
    result = await db.execute(
        update(Alert)
        .where(
            Alert.organization_id == organization_id,
            Alert.status.in_(OPEN_STATUSES),
            Alert.expires_at.is_not(None),
            Alert.expires_at <= now,
        )
        .values(status=AlertStatus.RESOLVED, resolved_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(
            "Auto-resolved %d expired alerts for organization %s",
            result.rowcount,
            organization_id,
        )
    return result.rowcount


async def get_alert(
    db: AsyncSession, alert_id: uuid.UUID, organization_id: uuid.UUID
) -> Alert:
    result = await db.execute(
        select(Alert).where(
            Alert.id == alert_id, Alert.organization_id == organization_id
        )
        .execution_options(populate_existing=True)
    )
    alert = result.scalar_one_or_none()
    if alert is None:
        raise AlertNotFound(f"Alert {alert_id} not found")
    return alert


async def transition_alert(
    db: AsyncSession,
    alert_id: uuid.UUID,
    organization_id: uuid.UUID,
    action: str,
    actor_id: uuid.UUID,
    now: datetime | None = None,
) -> Alert:
    if action not in TRANSITIONS:
        raise InvalidTransition(f"Unknown alert action: {action}")

    now = now or utcnow()
    # An alert that expired in the meantime is already RESOLVED
    await resolve_expired_alerts(db, organization_id, now)
    alert = await get_alert(db, alert_id, organization_id)

    allowed, target, prefix = TRANSITIONS[action]
    if alert.status not in allowed:
        raise InvalidTransition(
            f"Cannot {action} an alert that is {alert.status.value.lower()}"
        )

    alert.status = target
    setattr(alert, f"{prefix}_at", now)
    setattr(alert, f"{prefix}_by", actor_id)
    alert.updated_at = now

    await db.flush()
    await db.refresh(alert)
    return alert


async def acknowledge_alert(db, alert_id, organization_id, actor_id, now=None) -> Alert:
    return await transition_alert(db, alert_id, organization_id, "acknowledge", actor_id, now)


async def resolve_alert(db, alert_id, organization_id, actor_id, now=None) -> Alert:
    return await transition_alert(db, alert_id, organization_id, "resolve", actor_id, now)


async def dismiss_alert(db, alert_id, organization_id, actor_id, now=None) -> Alert:
    return await transition_alert(db, alert_id, organization_id, "dismiss", actor_id, now)


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------


async def list_alerts(
    db: AsyncSession,
    organization_id: uuid.UUID,
    type: AlertType | None = None,
    severity: AlertSeverity | None = None,
    status: AlertStatus | None = None,
    limit: int = 100,
    offset: int = 0,
    now: datetime | None = None,
) -> list[Alert]:
    """Active and historical alerts, most severe and newest first."""
    await resolve_expired_alerts(db, organization_id, now)

    query = select(Alert).where(Alert.organization_id == organization_id)
    if type is not None:
        query = query.where(Alert.type == type)
    if severity is not None:
        query = query.where(Alert.severity == severity)
    if status is not None:
        query = query.where(Alert.status == status)

    result = await db.execute(
        query.order_by(_severity_rank.desc(), Alert.created_at.desc())
        .limit(limit)
        .offset(offset)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_alert_summary(
    db: AsyncSession, organization_id: uuid.UUID, now: datetime | None = None
) -> dict:
    await resolve_expired_alerts(db, organization_id, now)

    total = (
        await db.execute(
            select(func.count(Alert.id)).where(Alert.organization_id == organization_id)
        )
    ).scalar() or 0

    active = (
        await db.execute(
            select(func.count(Alert.id)).where(
                Alert.organization_id == organization_id,
                Alert.status == AlertStatus.ACTIVE,
            )
        )
    ).scalar() or 0

    by_type_rows = (
        await db.execute(
            select(Alert.type, func.count(Alert.id))
            .where(Alert.organization_id == organization_id)
            .group_by(Alert.type)
        )
    ).all()

    by_severity_rows = (
        await db.execute(
            select(Alert.severity, func.count(Alert.id))
            .where(
                Alert.organization_id == organization_id,
                Alert.status == AlertStatus.ACTIVE,
            )
            .group_by(Alert.severity)
        )
    ).all()

    critical = (
        await db.execute(
            select(Alert)
            .where(
                Alert.organization_id == organization_id,
                Alert.severity == AlertSeverity.CRITICAL,
                Alert.status == AlertStatus.ACTIVE,
            )
            .order_by(Alert.created_at.desc())
            .limit(5)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()

    return {
        "total": total,
        "active": active,
        "by_type": {alert_type.value: count for alert_type, count in by_type_rows},
        "by_severity": {sev.value: count for sev, count in by_severity_rows},
        "critical": list(critical),
    }


# ---------------------------------------------------------------------------
# Rule evaluation over stored data
# ---------------------------------------------------------------------------


async def _load_points(
    db: AsyncSession,
    organization_id: uuid.UUID,
    metric_types: tuple[str, ...],
    since: datetime,
) -> list[DataPoint]:
    result = await db.execute(
        select(DataPoint).where(
            DataPoint.organization_id == organization_id,
            DataPoint.metric_type.in_(metric_types),
            DataPoint.date_recorded >= since,
        )
    )
    return list(result.scalars().all())


async def collect_inventory(
    db: AsyncSession, organization_id: uuid.UUID
) -> list[InventoryItem]:
    """Latest stock level per product from synced ``product_inventory`` points."""
    result = await db.execute(
        select(DataPoint)
        .where(
            DataPoint.organization_id == organization_id,
            DataPoint.metric_type == "product_inventory",
        )
        .order_by(DataPoint.date_recorded.desc())
    )
    latest: dict[str, InventoryItem] = {}
    for point in result.scalars().all():
        product_id = point.external_id or str(point.id)
        if product_id in latest:
            continue
        meta = point.metadata_json or {}
        latest[product_id] = InventoryItem(
            product_id=product_id,
            product_name=meta.get("productName") or f"Product {product_id}",
            current_stock=int(point.value),
            platform=meta.get("platform", "shopify"),
            sku=meta.get("sku"),
        )
    return list(latest.values())


async def collect_period_metrics(
    db: AsyncSession, organization_id: uuid.UUID, now: datetime
) -> tuple[PerformanceData, CustomerData]:
    """Current vs previous 30-day revenue, orders and customer counts.

    Aggregated in Python for cross-database compatibility.
    """
    current_start = now - PERIOD
    previous_start = now - 2 * PERIOD

    points = await _load_points(
        db,
        organization_id,
        ("order", "payment") + NEW_CUSTOMER_METRICS,
        previous_start,
    )

    revenue = defaultdict(float)
    orders = defaultdict(int)
    new_customers: dict[str, DataPoint] = {}
    for point in points:
        bucket = "current" if as_utc(point.date_recorded) >= current_start else "previous"
        if point.metric_type in ("order", "payment"):
            revenue[bucket] += point.value
            orders[bucket] += 1
        elif bucket == "current":
            # Acquisition counts are 30-day snapshots; keep the latest per source
            latest = new_customers.get(point.metric_type)
            if latest is None or as_utc(point.date_recorded) > as_utc(latest.date_recorded):
                new_customers[point.metric_type] = point

    def average(bucket: str) -> float:
        return revenue[bucket] / orders[bucket] if orders[bucket] else 0.0

    performance = PerformanceData(
        current_revenue=round(revenue["current"], 2),
        previous_revenue=round(revenue["previous"], 2),
        current_orders=orders["current"],
        previous_orders=orders["previous"],
    )
    customer_data = CustomerData(
        new_customers=(
            int(sum(p.value for p in new_customers.values())) if new_customers else None
        ),
        average_order_value=round(average("current"), 2),
        previous_average_order_value=round(average("previous"), 2),
    )
    return performance, customer_data


async def collect_integration_health(
    db: AsyncSession, organization_id: uuid.UUID
) -> list[IntegrationHealth]:
    result = await db.execute(
        select(Integration).where(
            Integration.organization_id == organization_id,
            Integration.status != IntegrationStatus.DISCONNECTED,
        )
    )
    return [
        IntegrationHealth(
            id=integration.id,
            platform=integration.platform.value,
            status=integration.status.value,
            last_sync_at=as_utc(integration.last_sync_at),
            error_count=(integration.metadata_json or {}).get("consecutive_failures", 0),
            last_error=integration.last_error,
        )
        for integration in result.scalars().all()
    ]


async def collect_system_checks(db: AsyncSession) -> list[SystemCheck]:
    """Round-trip time of the primary database."""
    started = time.perf_counter()
    await db.execute(select(1))
    elapsed_ms = (time.perf_counter() - started) * 1000
    return [SystemCheck(name="Database", response_time_ms=elapsed_ms)]


async def run_alert_checks(
    db: AsyncSession, organization_id: uuid.UUID, now: datetime | None = None
) -> list[Alert]:
    """Evaluate every rule family for an organization and persist the results."""
    now = now or utcnow()

    inventory = await collect_inventory(db, organization_id)
    performance, customers = await collect_period_metrics(db, organization_id, now)
    integrations = await collect_integration_health(db, organization_id)
    system_checks = await collect_system_checks(db)

    drafts = [
        *alert_generator.generate_inventory_alerts(organization_id, inventory, now),
        *alert_generator.generate_performance_alerts(organization_id, performance),
        *alert_generator.generate_integration_alerts(organization_id, integrations, now),
        *alert_generator.generate_customer_alerts(organization_id, customers),
        *alert_generator.generate_system_alerts(organization_id, system_checks),
    ]

    alerts = []
    for draft in drafts:
        alert, _ = await create_or_merge_alert(db, draft, now=now)
        alerts.append(alert)

    logger.info(
        "Alert checks for organization %s produced %d alerts", organization_id, len(alerts)
    )
    return alerts
