from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from bizinsights.database import get_db
from bizinsights.dependencies import get_current_user
from bizinsights.models.enums import MemberRole
from bizinsights.models.user import User
from bizinsights.schemas.auth import (
    LoginRequest,
    MeResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
    UserResponse,
)
from bizinsights.schemas.organization import OrganizationResponse
from bizinsights.services import auth_service, organization_service
from bizinsights.services.auth_service import AuthError, EmailAlreadyRegistered

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=RegisterResponse, status_code=201)
async def register(data: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """Create an account together with its first organization."""
    try:
        user, organization = await auth_service.register_user(
            db,
            email=data.email,
            password=data.password,
            display_name=data.display_name,
            organization_name=data.organization_name,
        )
    except EmailAlreadyRegistered as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return RegisterResponse(
        **auth_service.issue_tokens(user.id),
        user=UserResponse.model_validate(user),
        organization=OrganizationResponse(
            id=organization.id,
            name=organization.name,
            slug=organization.slug,
            role=MemberRole.OWNER,
            created_at=organization.created_at,
        ),
    )


@router.post("/login", response_model=TokenResponse)
async def login(data: LoginRequest, db: AsyncSession = Depends(get_db)):
    try:
        user = await auth_service.authenticate(db, data.email, data.password)
    except AuthError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    return TokenResponse(**auth_service.issue_tokens(user.id))


@router.post("/refresh", response_model=TokenResponse)
async def refresh(data: RefreshRequest, request: Request):
    """Rotate the refresh token. Each refresh token works once."""
    try:
        tokens = await auth_service.refresh_tokens(data.refresh_token, request.app.state.redis)
    except AuthError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    return TokenResponse(**tokens)


@router.get("/me", response_model=MeResponse)
async def get_me(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    rows = await organization_service.list_for_user(db, user.id)
    return MeResponse(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        created_at=user.created_at,
        organizations=[
            OrganizationResponse(
                id=org.id, name=org.name, slug=org.slug, role=role, created_at=org.created_at
            )
            for org, role in rows
        ],
    )
