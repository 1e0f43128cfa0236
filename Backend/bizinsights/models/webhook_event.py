import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from bizinsights.models.base import Base
from bizinsights.models.enums import Platform


class WebhookEvent(Base):
    """Inbound provider webhook, kept for audit and redelivery detection."""

    __tablename__ = "webhook_events"

    platform: Mapped[Platform] = mapped_column(Enum(Platform, native_enum=False, length=32), nullable=False)
    topic: Mapped[str] = mapped_column(String(100), nullable=False)  # "orders/create", "app/uninstalled", ...
    external_id: Mapped[str | None] = mapped_column(String(255))  # provider delivery id
    shop_domain: Mapped[str | None] = mapped_column(String(255))
    integration_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("integrations.id", ondelete="SET NULL"), index=True
    )
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("platform", "external_id", name="uq_webhook_events_delivery"),
    )
