import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from bizinsights.models.enums import MemberRole


class OrganizationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class OrganizationResponse(BaseModel):
    id: uuid.UUID
    name: str
    slug: str
    role: MemberRole
    created_at: datetime
