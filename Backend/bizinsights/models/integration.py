import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from bizinsights.models.base import Base
from bizinsights.models.enums import IntegrationStatus, Platform

# Keys of the in-flight OAuth session kept in Integration.metadata_json
PENDING_OAUTH_KEYS = (
    "oauth_state",
    "oauth_nonce",
    "oauth_shop",
    "oauth_user_id",
    "oauth_initiated_at",
)


class Integration(Base):
    __tablename__ = "integrations"

    organization_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    platform: Mapped[Platform] = mapped_column(
        Enum(Platform, native_enum=False, length=32), nullable=False
    )
    status: Mapped[IntegrationStatus] = mapped_column(
        Enum(IntegrationStatus, native_enum=False, length=16),
        default=IntegrationStatus.DISCONNECTED,
    )
    encrypted_access_token: Mapped[str | None] = mapped_column(Text)  # AES-256-GCM ciphertext
    shop_domain: Mapped[str | None] = mapped_column(String(255), index=True)  # sanitized shop / account id
    oauth_state: Mapped[str | None] = mapped_column(String(128), index=True)  # pending CSRF state
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    last_error: Mapped[str | None] = mapped_column(String(1024))
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "platform", name="uq_integrations_org_platform"),
    )
    __mapper_args__ = {"version_id_col": version}

    @property
    def is_connected(self) -> bool:
        return self.status == IntegrationStatus.CONNECTED and bool(self.encrypted_access_token)
