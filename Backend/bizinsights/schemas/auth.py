import uuid
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field

from bizinsights.schemas.organization import OrganizationResponse


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    display_name: str | None = Field(default=None, max_length=255)
    organization_name: str | None = Field(default=None, min_length=1, max_length=255)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class UserResponse(BaseModel):
    id: uuid.UUID
    email: str
    display_name: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class RegisterResponse(TokenResponse):
    user: UserResponse
    organization: OrganizationResponse


class MeResponse(UserResponse):
    organizations: list[OrganizationResponse] = []
