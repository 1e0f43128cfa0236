import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from bizinsights.models.enums import AlertSeverity, AlertStatus, AlertType


# ── Generator inputs ──────────────────────────────────────────────


class InventoryItem(BaseModel):
    product_id: str
    product_name: str
    current_stock: int
    platform: str = "shopify"
    sku: str | None = None


class PerformanceData(BaseModel):
    current_revenue: float
    previous_revenue: float
    current_orders: int
    previous_orders: int
    conversion_rate: float | None = None  # percent, e.g. 1.8
    previous_conversion_rate: float | None = None
    period: str = "30_days"


class IntegrationHealth(BaseModel):
    id: uuid.UUID
    platform: str
    status: str
    last_sync_at: datetime | None = None
    error_count: int = 0
    last_error: str | None = None


class CustomerData(BaseModel):
    churn_rate: float | None = None  # percent
    new_customers: int | None = None
    returning_customers: int = 0
    average_order_value: float = 0.0
    previous_average_order_value: float = 0.0


class SystemCheck(BaseModel):
    name: str
    status: Literal["healthy", "degraded", "down"] = "healthy"
    response_time_ms: float = 0.0


# ── Drafts and API models ─────────────────────────────────────────


class AlertDraft(BaseModel):
    """An alert computed by a rule, not yet deduplicated or persisted."""

    organization_id: uuid.UUID
    type: AlertType
    severity: AlertSeverity
    title: str
    description: str
    metadata: dict = Field(default_factory=dict)
    action_url: str | None = None
    action_label: str | None = None
    expires_at: datetime | None = None
    user_id: uuid.UUID | None = None


class AlertResponse(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    user_id: uuid.UUID | None
    type: AlertType
    severity: AlertSeverity
    status: AlertStatus
    title: str
    description: str
    metadata: dict = Field(validation_alias="metadata_json")
    action_url: str | None
    action_label: str | None
    created_at: datetime
    updated_at: datetime
    acknowledged_at: datetime | None
    acknowledged_by: uuid.UUID | None
    resolved_at: datetime | None
    resolved_by: uuid.UUID | None
    dismissed_at: datetime | None
    dismissed_by: uuid.UUID | None
    expires_at: datetime | None

    model_config = {"from_attributes": True}


class AlertAction(BaseModel):
    alert_id: uuid.UUID = Field(alias="alertId")
    organization_id: uuid.UUID = Field(alias="organizationId")
    action: Literal["acknowledge", "resolve", "dismiss"]

    model_config = {"populate_by_name": True}


class AlertListResponse(BaseModel):
    alerts: list[AlertResponse]
    count: int


class AlertSummary(BaseModel):
    total: int
    active: int
    by_type: dict[str, int]
    by_severity: dict[str, int]
    critical: list[AlertResponse]


class AlertGenerateRequest(BaseModel):
    organization_id: uuid.UUID = Field(alias="organizationId")

    model_config = {"populate_by_name": True}


class AlertGenerateResponse(BaseModel):
    created_or_updated: int
    by_type: dict[str, int]
