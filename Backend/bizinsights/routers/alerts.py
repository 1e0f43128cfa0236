import uuid
from collections import Counter

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from bizinsights.database import get_db
from bizinsights.dependencies import get_current_user, require_membership
from bizinsights.models.enums import AlertSeverity, AlertStatus, AlertType
from bizinsights.models.user import User
from bizinsights.schemas.alert import (
    AlertAction,
    AlertGenerateRequest,
    AlertGenerateResponse,
    AlertListResponse,
    AlertResponse,
    AlertSummary,
)
from bizinsights.services import alert_service

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("", response_model=AlertListResponse)
async def list_alerts(
    organization_id: uuid.UUID = Query(alias="organizationId"),
    type: AlertType | None = None,
    severity: AlertSeverity | None = None,
    alert_status: AlertStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Alerts for an organization, most severe first. Expired alerts are resolved on read."""
    await require_membership(db, organization_id, user)
    alerts = await alert_service.list_alerts(
        db,
        organization_id,
        type=type,
        severity=severity,
        status=alert_status,
        limit=limit,
        offset=offset,
    )
    return AlertListResponse(
        alerts=[AlertResponse.model_validate(a) for a in alerts], count=len(alerts)
    )


@router.post("", response_model=AlertResponse)
async def update_alert(
    data: AlertAction,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Acknowledge, resolve or dismiss an alert."""
    await require_membership(db, data.organization_id, user)
    try:
        alert = await alert_service.transition_alert(
            db, data.alert_id, data.organization_id, data.action, user.id
        )
    except alert_service.AlertNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alert not found")
    except alert_service.InvalidTransition as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return alert


@router.get("/summary", response_model=AlertSummary)
async def alert_summary(
    organization_id: uuid.UUID = Query(alias="organizationId"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await require_membership(db, organization_id, user)
    summary = await alert_service.get_alert_summary(db, organization_id)
    return AlertSummary(
        total=summary["total"],
        active=summary["active"],
        by_type=summary["by_type"],
        by_severity=summary["by_severity"],
        critical=[AlertResponse.model_validate(a) for a in summary["critical"]],
    )


@router.post("/generate", response_model=AlertGenerateResponse)
async def generate_alerts(
    data: AlertGenerateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Run every alert rule against the organization's synced data."""
    await require_membership(db, data.organization_id, user)
    alerts = await alert_service.run_alert_checks(db, data.organization_id)
    return AlertGenerateResponse(
        created_or_updated=len(alerts),
        by_type=dict(Counter(a.type.value for a in alerts)),
    )
