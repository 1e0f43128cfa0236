import uuid
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from bizinsights.models.enums import IntegrationStatus, Platform


class IntegrationResponse(BaseModel):
    id: uuid.UUID
    organization_id: uuid.UUID
    platform: Platform
    status: IntegrationStatus
    shop_domain: str | None
    metadata: dict = Field(validation_alias="metadata_json")
    last_error: str | None
    last_sync_at: datetime | None
    connected_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("metadata", mode="before")
    @classmethod
    def hide_secrets(cls, value: dict | None) -> dict:
        # Pending OAuth fields and encrypted material stay server-side
        return {
            key: item
            for key, item in (value or {}).items()
            if not key.startswith(("oauth_", "encrypted_"))
        }


class AuthorizeRequest(BaseModel):
    organization_id: uuid.UUID = Field(alias="organizationId")
    shop: str | None = Field(default=None, max_length=255)

    model_config = {"populate_by_name": True}


class AuthorizeResponse(BaseModel):
    authorize_url: str


class OrganizationScopedRequest(BaseModel):
    organization_id: uuid.UUID = Field(alias="organizationId")

    model_config = {"populate_by_name": True}


class StripeConnectRequest(OrganizationScopedRequest):
    secret_key: str = Field(alias="secretKey", pattern=r"^sk_(test|live)_\w+$")
    publishable_key: str = Field(alias="publishableKey", pattern=r"^pk_(test|live)_\w+$")


class GoogleServiceAccountRequest(OrganizationScopedRequest):
    property_id: str = Field(alias="propertyId", min_length=1, max_length=64)
    service_account_key: str = Field(alias="serviceAccountKey", min_length=2)


class WooCommerceConnectRequest(OrganizationScopedRequest):
    site_url: str = Field(alias="siteUrl", min_length=1, max_length=2048)
    consumer_key: str = Field(alias="consumerKey")
    consumer_secret: str = Field(alias="consumerSecret")


class SyncResponse(BaseModel):
    platform: str
    success: bool
    counts: dict[str, int]
    error: str | None = None
